"""
Payment Model
Status: pending | completed | failed (monotonic, pending is the only non-terminal state)
"""

import uuid
from datetime import datetime, timezone

from bikeshare.clock import as_utc
from bikeshare.extensions import db

PAYMENT_METHODS = ("card", "crypto", "qr")
PAYMENT_STATUSES = ("pending", "completed", "failed")

_LIVE_PREDICATE = "status IN ('pending', 'completed')"


class Payment(db.Model):
    __tablename__ = "payments"

    payment_id = db.Column(db.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    reservation_id = db.Column(
        db.Uuid(as_uuid=True),
        db.ForeignKey("reservations.reservation_id"),
        nullable=False
    )
    user_id = db.Column(db.Uuid(as_uuid=True), nullable=False)
    method = db.Column(db.Enum(*PAYMENT_METHODS, name="payment_method"), nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(8), nullable=False)
    status = db.Column(
        db.Enum(*PAYMENT_STATUSES, name="payment_status"),
        nullable=False,
        default="pending"
    )
    # gateway charge id (card) or transaction hash (crypto)
    external_ref = db.Column(db.String(128), nullable=True)
    qr_payload = db.Column(db.Text, nullable=True)
    crypto_amount = db.Column(db.Numeric(18, 6), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    reservation = db.relationship("Reservation", backref=db.backref("payments", lazy=True))

    __table_args__ = (
        # one live (pending or paid) payment per ride; failed attempts may be retried
        db.Index(
            "uq_payments_reservation_live",
            "reservation_id",
            unique=True,
            postgresql_where=db.text(_LIVE_PREDICATE),
            sqlite_where=db.text(_LIVE_PREDICATE),
        ),
    )

    def to_dict(self):
        return {
            "payment_id":     str(self.payment_id),
            "reservation_id": str(self.reservation_id),
            "user_id":        str(self.user_id),
            "method":         self.method,
            "amount":         float(self.amount),
            "currency":       self.currency,
            "status":         self.status,
            "external_ref":   self.external_ref,
            "qr_payload":     self.qr_payload,
            "crypto_amount":  str(self.crypto_amount) if self.crypto_amount is not None else None,
            "created_at":     as_utc(self.created_at).isoformat(),
            "settled_at":     as_utc(self.settled_at).isoformat() if self.settled_at else None,
        }
