"""
Bike Model
Status: available | reserved | active | maintenance
"""

import uuid
from datetime import datetime, timezone

from bikeshare.extensions import db

BIKE_STATUSES = ("available", "reserved", "active", "maintenance")


class Bike(db.Model):
    __tablename__ = "bikes"

    bike_id = db.Column(db.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = db.Column(db.String(32), unique=True, nullable=False)
    # identity printed on the frame's QR sticker
    qr_code = db.Column(db.String(128), unique=True, nullable=False)
    lat = db.Column(db.Float, nullable=True)
    lng = db.Column(db.Float, nullable=True)
    status = db.Column(
        db.Enum(*BIKE_STATUSES, name="bike_status"),
        nullable=False,
        default="available"
    )
    battery_level = db.Column(db.Integer, nullable=False, default=100)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=True,
        onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        db.CheckConstraint("battery_level BETWEEN 0 AND 100", name="ck_bikes_battery_level"),
    )

    def to_dict(self):
        return {
            "bike_id":       str(self.bike_id),
            "name":          self.name,
            "status":        self.status,
            "battery_level": self.battery_level,
            "location":      {"lat": self.lat, "lng": self.lng} if self.lat is not None else None,
        }
