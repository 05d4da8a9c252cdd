"""
UnlockChallenge Model
Single-use, time-limited secret gating upcoming -> active.
method: qr (opaque token) | email (bcrypt hash of the emailed code)
"""

import uuid
from datetime import datetime, timezone

import bcrypt

from bikeshare.clock import as_utc
from bikeshare.extensions import db

UNLOCK_METHODS = ("qr", "email")


class UnlockChallenge(db.Model):
    __tablename__ = "unlock_challenges"

    challenge_id = db.Column(db.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    reservation_id = db.Column(
        db.Uuid(as_uuid=True),
        db.ForeignKey("reservations.reservation_id"),
        nullable=False,
        index=True
    )
    method = db.Column(db.Enum(*UNLOCK_METHODS, name="unlock_method"), nullable=False)
    secret = db.Column(db.Text, nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    consumed = db.Column(db.Boolean, nullable=False, default=False)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )

    def set_code(self, code):
        self.secret = bcrypt.hashpw(code.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    def check_code(self, code):
        return bcrypt.checkpw(code.encode('utf-8'), self.secret.encode('utf-8'))

    def is_expired(self, now):
        return as_utc(self.expires_at) <= now

    def to_dict(self):
        return {
            "challenge_id":   str(self.challenge_id),
            "reservation_id": str(self.reservation_id),
            "method":         self.method,
            "expires_at":     as_utc(self.expires_at).isoformat(),
            "consumed":       self.consumed,
        }
