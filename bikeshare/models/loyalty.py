"""
Loyalty Models
points_balance is a cached running sum of the append-only ledger.
"""

from datetime import datetime, timezone

from bikeshare.clock import as_utc
from bikeshare.extensions import db


class LoyaltyAccount(db.Model):
    __tablename__ = "loyalty_accounts"

    user_id = db.Column(db.Uuid(as_uuid=True), primary_key=True)
    points_balance = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.CheckConstraint("points_balance >= 0", name="ck_loyalty_balance_non_negative"),
    )

    def to_dict(self):
        return {
            "user_id":        str(self.user_id),
            "points_balance": self.points_balance,
            "updated_at":     as_utc(self.updated_at).isoformat() if self.updated_at else None,
        }


class LoyaltyLedgerEntry(db.Model):
    __tablename__ = "loyalty_ledger"

    id = db.Column(db.BigInteger().with_variant(db.Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = db.Column(
        db.Uuid(as_uuid=True),
        db.ForeignKey("loyalty_accounts.user_id"),
        nullable=False
    )
    delta = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(128), nullable=False)
    source = db.Column(db.String(32), nullable=False)       # 'ride' | 'redemption' | 'reward'
    ref_id = db.Column(db.String(64), nullable=True)        # reservation id for ride credits
    idempotency_key = db.Column(db.String(96), nullable=True, unique=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        db.Index("idx_loyalty_ledger_user_created", "user_id", "created_at"),
    )

    def to_dict(self):
        return {
            "id":         self.id,
            "delta":      self.delta,
            "reason":     self.reason,
            "source":     self.source,
            "ref_id":     self.ref_id,
            "created_at": as_utc(self.created_at).isoformat(),
        }
