"""
Loyalty Ledger
Points are earned at 1 per whole kilometre of a paid ride and spent on rewards.
The account balance is a cached running sum of the ledger and never goes negative.
"""

import logging
import math
from collections import namedtuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from bikeshare.clock import utcnow
from bikeshare.errors import InsufficientPointsError, NotFoundError, ValidationError
from bikeshare.extensions import db, rollback_on_error
from bikeshare.models.loyalty import LoyaltyAccount, LoyaltyLedgerEntry

logger = logging.getLogger(__name__)

Reward = namedtuple("Reward", ["code", "description", "points_cost", "unlock_threshold"])

REWARDS = {
    "ride_discount_20": Reward("ride_discount_20", "20% discount on your next ride", 10, 50),
    "free_weekend_ride": Reward("free_weekend_ride", "Free weekend ride", 20, 100),
}


def ride_idempotency_key(reservation_id):
    return f"ride:{reservation_id}"


def ensure_account(user_id):
    """Create the account in its own transaction; a concurrent creator may win the insert."""
    account = db.session.get(LoyaltyAccount, user_id)
    if account:
        return account
    try:
        db.session.add(LoyaltyAccount(user_id=user_id, points_balance=0))
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
    return db.session.get(LoyaltyAccount, user_id)


def get_account(user_id):
    return ensure_account(user_id)


def _refreshed(user_id):
    return db.session.get(LoyaltyAccount, user_id, populate_existing=True)


def accrue(user_id, distance_km, reservation_id, now=None, commit=True):
    """
    Credit floor(distance_km) points for a completed ride. Keyed to the
    reservation, so a second call for the same ride credits nothing and returns 0.

    With commit=False the credit joins the caller's transaction (payment settlement).
    """
    now = now or utcnow()
    points = int(math.floor(distance_km or 0))
    key = ride_idempotency_key(reservation_id)

    if commit:
        ensure_account(user_id)

    with rollback_on_error() as session:
        if LoyaltyLedgerEntry.query.filter_by(idempotency_key=key).first():
            return 0
        if points <= 0:
            return 0

        session.add(LoyaltyLedgerEntry(
            user_id=user_id,
            delta=points,
            reason=f"Ride {reservation_id} ({distance_km:.2f} km)",
            source="ride",
            ref_id=str(reservation_id),
            idempotency_key=key,
            created_at=now,
        ))
        session.execute(
            update(LoyaltyAccount)
            .where(LoyaltyAccount.user_id == user_id)
            .values(points_balance=LoyaltyAccount.points_balance + points, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if commit:
            session.commit()

    logger.info("Credited %s loyalty points to user %s for reservation %s", points, user_id, reservation_id)
    return points


def redeem(user_id, points_cost, reason, source="redemption", now=None):
    """
    Debit points_cost if and only if the balance covers it. The check and the
    debit are a single conditional UPDATE, so concurrent redemptions cannot
    overdraw the account.
    """
    if not isinstance(points_cost, int) or isinstance(points_cost, bool) or points_cost <= 0:
        raise ValidationError("points_cost must be a positive integer")
    now = now or utcnow()
    ensure_account(user_id)

    with rollback_on_error() as session:
        result = session.execute(
            update(LoyaltyAccount)
            .where(
                LoyaltyAccount.user_id == user_id,
                LoyaltyAccount.points_balance >= points_cost,
            )
            .values(points_balance=LoyaltyAccount.points_balance - points_cost, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            balance = _refreshed(user_id).points_balance
            raise InsufficientPointsError(
                "Insufficient loyalty points", current_balance=balance, required=points_cost
            )

        session.add(LoyaltyLedgerEntry(
            user_id=user_id,
            delta=-points_cost,
            reason=reason or "Reward redemption",
            source=source,
            created_at=now,
        ))
        session.commit()

    logger.info("User %s redeemed %s points (%s)", user_id, points_cost, reason)
    return _refreshed(user_id)


def redeem_reward(user_id, reward_code, now=None):
    reward = REWARDS.get(reward_code)
    if not reward:
        raise NotFoundError("Reward not found", reward_code=reward_code)

    account = get_account(user_id)
    if account.points_balance < reward.unlock_threshold:
        raise InsufficientPointsError(
            f"{reward.description} unlocks at {reward.unlock_threshold} points",
            current_balance=account.points_balance,
            required=reward.unlock_threshold,
        )
    return redeem(user_id, reward.points_cost, reward.description, source="reward", now=now)


def ledger_entries(user_id, limit=50, offset=0):
    return (
        LoyaltyLedgerEntry.query.filter_by(user_id=user_id)
        .order_by(LoyaltyLedgerEntry.created_at.desc(), LoyaltyLedgerEntry.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def recalculate_balance(user_id, now=None):
    """Rebuild the cached balance from the ledger."""
    now = now or utcnow()
    ensure_account(user_id)

    with rollback_on_error() as session:
        account = (
            LoyaltyAccount.query.with_for_update()
            .filter_by(user_id=user_id)
            .populate_existing()
            .first()
        )
        total = session.query(func.coalesce(func.sum(LoyaltyLedgerEntry.delta), 0)).filter(
            LoyaltyLedgerEntry.user_id == user_id
        ).scalar()
        total = int(total or 0)

        if account.points_balance != total:
            logger.warning(
                "Loyalty balance drift for user %s: cached %s, ledger %s",
                user_id, account.points_balance, total,
            )
            account.points_balance = total
            account.updated_at = now
        session.commit()

    return account
