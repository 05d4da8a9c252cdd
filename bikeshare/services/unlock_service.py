"""
Unlock Authenticator
Issues and verifies the single-use challenge that moves a reservation from
upcoming to active.

    qr:    the rider scans the bike's sticker; the decoded payload must match
           the reserved bike's qr_code while a QR challenge is live.
    email: a numeric code is mailed to the rider and checked against its
           bcrypt hash.
"""

import hmac
import logging
import secrets
from collections import namedtuple
from datetime import timedelta

from flask import current_app

from bikeshare.clock import as_utc, utcnow
from bikeshare.errors import (
    ConflictError,
    ExpiredChallengeError,
    IllegalTransitionError,
    InvalidCodeError,
    ValidationError,
)
from bikeshare.extensions import rollback_on_error
from bikeshare.models.reservation import Reservation
from bikeshare.models.unlock_challenge import UNLOCK_METHODS, UnlockChallenge
from bikeshare.services.reservation_service import (
    apply_transition,
    dispatch_bike_command,
    lock_bike,
    lock_reservation,
    notify_transition,
    transition_error,
    transition_guard,
)

logger = logging.getLogger(__name__)

ChallengeRef = namedtuple("ChallengeRef", ["challenge_id", "method", "expires_at", "token"])


def _validate_method(method):
    if method not in UNLOCK_METHODS:
        raise ValidationError(f"Unknown unlock method: {method}", allowed=list(UNLOCK_METHODS))


def _generate_code(digits):
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


def issue_unlock_challenge(reservation_id, method, mailer=None, address=None, now=None):
    """
    Create a fresh challenge for an upcoming reservation, superseding any
    earlier one. For email the code is dispatched before the commit, so a
    failed dispatch leaves no orphan challenge behind.
    """
    _validate_method(method)
    if method == "email" and not address:
        raise ValidationError("An email address is required for email unlock")
    now = now or utcnow()
    config = current_app.config

    with rollback_on_error() as session:
        reservation = lock_reservation(reservation_id)
        if reservation.status != "upcoming":
            raise transition_error(reservation, "active")

        UnlockChallenge.query.filter_by(
            reservation_id=reservation.reservation_id, consumed=False
        ).update({"consumed": True})

        challenge = UnlockChallenge(
            reservation_id=reservation.reservation_id,
            method=method,
            expires_at=now + timedelta(seconds=config["UNLOCK_CHALLENGE_TTL_SECONDS"]),
            created_at=now,
        )
        token = None
        if method == "qr":
            token = secrets.token_urlsafe(24)
            challenge.secret = token
        else:
            code = _generate_code(config["UNLOCK_CODE_DIGITS"])
            challenge.set_code(code)

        session.add(challenge)
        session.flush()

        if method == "email":
            mailer.send(address, code)

        session.commit()

    logger.info("Issued %s unlock challenge for reservation %s", method, reservation_id)
    return ChallengeRef(challenge.challenge_id, method, as_utc(challenge.expires_at), token)


def _check_window(reservation, now):
    early = timedelta(minutes=current_app.config["UNLOCK_EARLY_MINUTES"])
    if now < as_utc(reservation.start_time) - early:
        raise IllegalTransitionError("Too early to unlock this reservation")
    if now >= as_utc(reservation.end_time):
        raise IllegalTransitionError("Reservation window has ended")


def _payload_matches(challenge, reservation, payload):
    if challenge.method == "qr":
        return hmac.compare_digest(payload.encode("utf-8"), reservation.bike.qr_code.encode("utf-8"))
    return challenge.check_code(payload)


def verify_unlock(reservation_id, method, payload, bike_commands=None, now=None):
    """
    Verify a challenge response. Success consumes the challenge and activates
    the reservation; a wrong answer is counted and may be retried until the
    challenge expires or runs out of attempts.
    """
    _validate_method(method)
    now = now or utcnow()
    payload = (payload or "").strip()
    failure = None

    with transition_guard(reservation_id, "active") as lock:
        reservation = lock()
        if reservation.status != "upcoming":
            raise transition_error(reservation, "active")
        _check_window(reservation, now)

        challenge = (
            UnlockChallenge.query.filter_by(
                reservation_id=reservation.reservation_id, method=method, consumed=False
            )
            .order_by(UnlockChallenge.created_at.desc())
            .first()
        )
        if not challenge or challenge.is_expired(now):
            raise ExpiredChallengeError("Unlock challenge expired, request a new one")

        if not payload or not _payload_matches(challenge, reservation, payload):
            challenge.attempts += 1
            if challenge.attempts >= current_app.config["UNLOCK_MAX_ATTEMPTS"]:
                challenge.consumed = True
                failure = ExpiredChallengeError("Too many wrong attempts, request a new code")
            else:
                failure = InvalidCodeError(
                    "Invalid unlock code" if method == "email" else "QR code does not match the reserved bike"
                )
        else:
            in_use = Reservation.query.filter(
                Reservation.bike_id == reservation.bike_id,
                Reservation.status == "active",
                Reservation.reservation_id != reservation.reservation_id,
            ).first()
            if in_use:
                raise ConflictError("Bike is still in use by another ride")

            challenge.consumed = True
            apply_transition(reservation, "active")
            reservation.actual_start = now

            bike = lock_bike(reservation.bike_id)
            bike.status = "active"
            reservation.last_lat = bike.lat if bike.lat is not None else reservation.pickup_lat
            reservation.last_lng = bike.lng if bike.lng is not None else reservation.pickup_lng
            reservation.last_point_at = now

    if failure:
        raise failure

    notify_transition(reservation, "upcoming")
    dispatch_bike_command(bike_commands, bike, "unlock")
    return reservation
