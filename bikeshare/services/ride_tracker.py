"""
Ride Tracker
Accumulates distance while a reservation is active and freezes distance and
cost when the ride ends.
"""

import logging
from collections import namedtuple
from decimal import Decimal

from flask import current_app

from bikeshare.clock import as_utc, utcnow
from bikeshare.services.geo import haversine_km
from bikeshare.services.pricing import compute_cost
from bikeshare.services.reservation_service import (
    apply_transition,
    dispatch_bike_command,
    lock_bike,
    notify_transition,
    release_bike,
    transition_guard,
)

logger = logging.getLogger(__name__)

RideSummary = namedtuple("RideSummary", ["reservation_id", "distance_km", "cost", "duration_seconds"])


def record_ride_progress(reservation_id, point, recorded_at=None):
    """
    Add the great-circle distance from the last reported point to `point`.
    Points older than the last one are ignored; a jump faster than
    RIDE_MAX_SPEED_KMH moves the cursor without counting distance.
    """
    recorded_at = as_utc(recorded_at) if recorded_at else utcnow()

    with transition_guard(reservation_id, expected_status="active") as lock:
        reservation = lock()
        last_at = as_utc(reservation.last_point_at)
        if last_at and recorded_at < last_at:
            logger.debug("Ignoring out-of-order point for reservation %s", reservation_id)
            return reservation

        if reservation.last_lat is not None and reservation.last_lng is not None:
            segment_km = haversine_km(reservation.last_lat, reservation.last_lng, point.lat, point.lng)
            elapsed_hours = (recorded_at - last_at).total_seconds() / 3600 if last_at else 0
            max_speed = current_app.config["RIDE_MAX_SPEED_KMH"]

            if elapsed_hours > 0 and segment_km / elapsed_hours <= max_speed:
                reservation.distance_km = (reservation.distance_km or 0.0) + segment_km
            elif segment_km > 0:
                logger.warning("Discarding %.3f km jump on reservation %s", segment_km, reservation_id)

        reservation.last_lat = point.lat
        reservation.last_lng = point.lng
        reservation.last_point_at = recorded_at

        bike = lock_bike(reservation.bike_id)
        bike.lat, bike.lng = point.lat, point.lng

    return reservation


def end_ride(reservation_id, bike_commands=None, now=None):
    """
    Freeze distance and cost, complete the reservation and release the bike.
    Fails with IllegalTransitionError (and changes nothing) unless the ride is active.
    """
    now = now or utcnow()
    config = current_app.config

    with transition_guard(reservation_id, "completed") as lock:
        reservation = lock()
        old_status = apply_transition(reservation, "completed")

        distance_km = round(reservation.distance_km or 0.0, 3)
        cost = compute_cost(distance_km, config["RATE_PER_KM"], config["MINIMUM_FARE"])

        reservation.distance_km = distance_km
        reservation.cost = cost
        reservation.actual_end = now
        started = as_utc(reservation.actual_start) or now
        reservation.duration_seconds = max(0, int((now - started).total_seconds()))

        bike = lock_bike(reservation.bike_id)
        if reservation.last_lat is not None:
            bike.lat, bike.lng = reservation.last_lat, reservation.last_lng
        release_bike(bike, now, exclude_reservation_id=reservation.reservation_id)

    notify_transition(reservation, old_status)
    dispatch_bike_command(bike_commands, bike, "lock")

    return RideSummary(
        reservation_id=reservation.reservation_id,
        distance_km=distance_km,
        cost=Decimal(cost),
        duration_seconds=reservation.duration_seconds,
    )
