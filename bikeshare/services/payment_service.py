"""
Payment Settlement Engine

A ride is paid through exactly one of three rails:

    card:   Stripe PaymentIntent, confirmed against the gateway's status
    crypto: wallet transaction, confirmed by a chain receipt
    qr:     static payload shown to the rider, confirmed by an explicit mark-as-paid

Status only ever moves pending -> completed | failed. The move is a
compare-and-swap on the payment row, and only the caller that wins it credits
loyalty points and stamps the reservation as settled.
"""

import logging
import uuid
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from bikeshare.clock import utcnow
from bikeshare.errors import (
    AlreadySettledError,
    AmountMismatchError,
    ConflictError,
    ExternalServiceError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from bikeshare.extensions import db, rollback_on_error
from bikeshare.models.payment import PAYMENT_METHODS, Payment
from bikeshare.models.reservation import Reservation
from bikeshare.services import loyalty_service
from bikeshare.services.pricing import CENTS, quote_crypto
from bikeshare.services.reservation_service import lock_reservation
from bikeshare.signals import payment_settled

logger = logging.getLogger(__name__)

LIVE_STATUSES = ("pending", "completed")


def _parse_amount(amount):
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError("amount must be a number") from e
    if not value.is_finite():
        raise ValidationError("amount must be a number")
    return value.quantize(CENTS)


def qr_payload_for(reservation_id, now):
    return f"QR_FOR_{reservation_id}_{int(now.timestamp())}"


def start_payment(reservation_id, method, amount=None, gateway=None, now=None):
    """
    Open a pending payment for a completed ride.

    A pending payment on the same rail is handed back unchanged, so a client
    retrying after a timeout does not create a second charge.
    """
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Unsupported payment method: {method}", allowed=list(PAYMENT_METHODS))
    now = now or utcnow()
    config = current_app.config

    try:
        reservation = lock_reservation(reservation_id)
        if reservation.status != "completed":
            raise IllegalTransitionError("Ride must be completed before payment")

        cost = Decimal(reservation.cost).quantize(CENTS)
        if amount is not None and _parse_amount(amount) != cost:
            raise AmountMismatchError(
                "Payment amount does not match the ride cost",
                reservation_id=str(reservation_id),
                expected=str(cost),
                received=str(amount),
            )

        live = Payment.query.filter(
            Payment.reservation_id == reservation.reservation_id,
            Payment.status.in_(LIVE_STATUSES),
        ).first()
        if live and live.status == "completed":
            raise AlreadySettledError("Ride has already been paid", payment_id=str(live.payment_id))
        if live and live.method == method:
            db.session.rollback()
            return live
        if live:
            raise ConflictError(
                f"A {live.method} payment is already pending for this ride",
                payment_id=str(live.payment_id),
            )

        payment = Payment(
            payment_id=uuid.uuid4(),
            reservation_id=reservation.reservation_id,
            user_id=reservation.user_id,
            method=method,
            amount=cost,
            currency=config["PAYMENT_CURRENCY"],
            status="pending",
            created_at=now,
        )

        # claim the live-payment slot before any charge exists at the gateway
        db.session.add(payment)
        db.session.flush()

        if method == "card":
            payment.external_ref = gateway.create_charge(
                cost,
                payment.currency,
                metadata={
                    "payment_id": str(payment.payment_id),
                    "reservation_id": str(reservation.reservation_id),
                },
            )
        elif method == "crypto":
            payment.crypto_amount = quote_crypto(cost, config["LKR_PER_USD"], config["USD_PER_ETH"])
        else:
            payment.qr_payload = qr_payload_for(reservation.reservation_id, now)

        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        raise ConflictError(
            "A payment is already in progress for this ride", reservation_id=str(reservation_id)
        ) from e
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Payment %s started: %s %s %s for reservation %s",
        payment.payment_id, method, payment.amount, payment.currency, reservation_id,
    )
    return payment


def _bind_transaction(payment, tx_hash):
    """Attach tx_hash to a crypto payment once; a different hash later is a conflict."""
    if payment.external_ref and payment.external_ref != tx_hash:
        raise ConflictError(
            "Payment is bound to a different transaction", payment_id=str(payment.payment_id)
        )
    if payment.external_ref:
        return

    with rollback_on_error() as session:
        session.execute(
            update(Payment)
            .where(Payment.payment_id == payment.payment_id, Payment.external_ref.is_(None))
            .values(external_ref=tx_hash)
            .execution_options(synchronize_session=False)
        )
        session.commit()

    bound = db.session.get(Payment, payment.payment_id, populate_existing=True)
    if bound.external_ref != tx_hash:
        raise ConflictError(
            "Payment is bound to a different transaction", payment_id=str(payment.payment_id)
        )


def _rail_outcome(payment, external_ref, gateway, chain):
    """
    Ask the payment's rail whether a positive confirmation holds.
    Returns "completed", "failed", or None when the rail has not decided yet.
    """
    if payment.method == "card":
        status = gateway.get_charge_status(payment.external_ref)
        if status == "succeeded":
            return "completed"
        if status == "failed":
            return "failed"
        return None

    if payment.method == "crypto":
        tx_hash = external_ref or payment.external_ref
        if not tx_hash:
            raise ValidationError("A transaction hash is required to confirm a crypto payment")
        _bind_transaction(payment, tx_hash)
        receipt = chain.get_transaction_receipt(tx_hash)
        if not receipt.confirmed:
            logger.info("Transaction %s for payment %s not confirmed yet", tx_hash, payment.payment_id)
            return None
        return "completed"

    return "completed"


def confirm_payment(payment_id, success, external_ref=None, gateway=None, chain=None,
                    mailer=None, address=None, now=None):
    """
    Settle a pending payment. Repeating a confirmation that already happened
    returns the payment unchanged; contradicting it raises AlreadySettledError.
    A rail that has not decided yet leaves the payment pending.
    """
    now = now or utcnow()
    payment = db.session.get(Payment, payment_id, populate_existing=True)
    if not payment:
        raise NotFoundError("Payment not found", payment_id=str(payment_id))

    target = "completed" if success else "failed"
    if payment.status != "pending":
        if payment.status == target:
            return payment
        raise AlreadySettledError(
            f"Payment is already {payment.status}", payment_id=str(payment_id), status=payment.status
        )

    if success:
        target = _rail_outcome(payment, external_ref, gateway, chain)
        if target is None:
            return db.session.get(Payment, payment_id, populate_existing=True)
        loyalty_service.ensure_account(payment.user_id)

    with rollback_on_error() as session:
        result = session.execute(
            update(Payment)
            .where(Payment.payment_id == payment.payment_id, Payment.status == "pending")
            .values(status=target, settled_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            current = db.session.get(Payment, payment_id, populate_existing=True)
            if current.status == target:
                return current
            raise AlreadySettledError(
                f"Payment is already {current.status}", payment_id=str(payment_id), status=current.status
            )

        if target == "completed":
            reservation = session.get(Reservation, payment.reservation_id)
            reservation.settled_at = now
            loyalty_service.accrue(
                reservation.user_id,
                reservation.distance_km,
                reservation.reservation_id,
                now=now,
                commit=False,
            )
        session.commit()

    payment = db.session.get(Payment, payment_id, populate_existing=True)
    logger.info("Payment %s settled as %s", payment_id, payment.status)

    if payment.status == "completed":
        if mailer is not None and address:
            try:
                mailer.send_receipt(address, payment)
            except ExternalServiceError as e:
                logger.warning("Receipt for payment %s not sent: %s", payment_id, e.message)
        payment_settled.send(payment)

    return payment


def get_payment(payment_id):
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found", payment_id=str(payment_id))
    return payment


def payments_for_reservation(reservation_id):
    return (
        Payment.query.filter_by(reservation_id=reservation_id)
        .order_by(Payment.created_at.desc())
        .all()
    )
