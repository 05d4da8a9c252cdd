"""
Availability Checker
A bike is free for [start, end) when no upcoming/active reservation overlaps it.
"""

from bikeshare.clock import as_utc
from bikeshare.errors import InvalidIntervalError
from bikeshare.models.reservation import OPEN_STATUSES, Reservation


def validate_interval(start, end):
    if start is None or end is None:
        raise InvalidIntervalError("start and end are required")
    if end <= start:
        raise InvalidIntervalError("end must be after start", start=start.isoformat(), end=end.isoformat())


def find_conflicts(bike_id, start, end, exclude_reservation_id=None):
    """Open reservations on the bike whose window overlaps [start, end)."""
    validate_interval(start, end)

    query = Reservation.query.filter(
        Reservation.bike_id == bike_id,
        Reservation.status.in_(OPEN_STATUSES),
        Reservation.start_time < end,
        Reservation.end_time > start,
    )
    if exclude_reservation_id is not None:
        query = query.filter(Reservation.reservation_id != exclude_reservation_id)
    return query.order_by(Reservation.start_time.asc()).all()


def is_available(bike_id, start, end, exclude_reservation_id=None):
    return not find_conflicts(bike_id, start, end, exclude_reservation_id)


def free_windows(bike_id, window_start, window_end):
    """
    Gaps inside [window_start, window_end) not covered by open reservations,
    as (start, end) pairs. Used to offer an alternate time after a conflict.
    """
    busy = find_conflicts(bike_id, window_start, window_end)

    gaps = []
    cursor = window_start
    for reservation in busy:
        booked_start = as_utc(reservation.start_time)
        booked_end = as_utc(reservation.end_time)
        if booked_start > cursor:
            gaps.append((cursor, booked_start))
        cursor = max(cursor, booked_end)
    if cursor < window_end:
        gaps.append((cursor, window_end))
    return gaps

