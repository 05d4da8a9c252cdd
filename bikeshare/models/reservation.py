"""
Reservation Model
Status: upcoming | active | completed | cancelled
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import DDL, event

from bikeshare.clock import as_utc
from bikeshare.extensions import db

RESERVATION_STATUSES = ("upcoming", "active", "completed", "cancelled")
OPEN_STATUSES = ("upcoming", "active")

_OPEN_PREDICATE = "status IN ('upcoming', 'active')"


def _iso(value):
    return as_utc(value).isoformat() if value else None


class Reservation(db.Model):
    __tablename__ = "reservations"

    reservation_id = db.Column(db.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    bike_id = db.Column(db.Uuid(as_uuid=True), db.ForeignKey("bikes.bike_id"), nullable=False)
    user_id = db.Column(db.Uuid(as_uuid=True), nullable=False)
    status = db.Column(
        db.Enum(*RESERVATION_STATUSES, name="reservation_status"),
        nullable=False,
        default="upcoming"
    )
    # requested window, half-open [start_time, end_time)
    start_time = db.Column(db.DateTime(timezone=True), nullable=False)
    end_time = db.Column(db.DateTime(timezone=True), nullable=False)
    actual_start = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_end = db.Column(db.DateTime(timezone=True), nullable=True)
    pickup_lat = db.Column(db.Float, nullable=True)
    pickup_lng = db.Column(db.Float, nullable=True)

    distance_km = db.Column(db.Float, nullable=False, default=0.0)
    cost = db.Column(db.Numeric(10, 2), nullable=True)
    duration_seconds = db.Column(db.Integer, nullable=True)

    # ride tracking cursor
    last_lat = db.Column(db.Float, nullable=True)
    last_lng = db.Column(db.Float, nullable=True)
    last_point_at = db.Column(db.DateTime(timezone=True), nullable=True)

    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )
    version = db.Column(db.Integer, nullable=False)

    bike = db.relationship("Bike", backref=db.backref("reservations", lazy=True))

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.CheckConstraint("end_time > start_time", name="ck_reservations_window"),
        # a user holds at most one upcoming/active reservation
        db.Index(
            "uq_reservations_user_open",
            "user_id",
            unique=True,
            postgresql_where=db.text(_OPEN_PREDICATE),
            sqlite_where=db.text(_OPEN_PREDICATE),
        ),
        db.Index("idx_reservations_bike_status", "bike_id", "status"),
    )

    @property
    def is_open(self):
        return self.status in OPEN_STATUSES

    def to_dict(self):
        return {
            "reservation_id":   str(self.reservation_id),
            "bike_id":          str(self.bike_id),
            "user_id":          str(self.user_id),
            "status":           self.status,
            "start_time":       _iso(self.start_time),
            "end_time":         _iso(self.end_time),
            "actual_start":     _iso(self.actual_start),
            "actual_end":       _iso(self.actual_end),
            "pickup_location":  (
                {"lat": self.pickup_lat, "lng": self.pickup_lng}
                if self.pickup_lat is not None else None
            ),
            "distance_km":      round(self.distance_km or 0.0, 3),
            "cost":             float(self.cost) if self.cost is not None else None,
            "duration_seconds": self.duration_seconds,
            "settled_at":       _iso(self.settled_at),
            "created_at":       _iso(self.created_at),
        }


# Overlap backstop for concurrent writers across processes. PostgreSQL only:
# needs btree_gist for the uuid equality inside a gist index.
event.listen(
    Reservation.__table__,
    "after_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)
event.listen(
    Reservation.__table__,
    "after_create",
    DDL(
        "ALTER TABLE reservations ADD CONSTRAINT reservations_no_overlap_per_bike "
        "EXCLUDE USING gist (bike_id WITH =, tstzrange(start_time, end_time, '[)') WITH &&) "
        f"WHERE ({_OPEN_PREDICATE})"
    ).execute_if(dialect="postgresql"),
)
