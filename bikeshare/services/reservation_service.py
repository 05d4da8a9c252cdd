"""
Reservation Lifecycle
Owns reservation state and the bike status that follows from it.

    upcoming -> active      (unlock verified, see unlock_service)
    active -> completed     (end ride, see ride_tracker)
    upcoming|active -> cancelled
"""

import logging
from contextlib import contextmanager
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from bikeshare.clock import utcnow
from bikeshare.errors import (
    AlreadyActiveError,
    AlreadyCancelledError,
    ConflictError,
    ExternalServiceError,
    IllegalTransitionError,
    InvalidIntervalError,
    NotFoundError,
)
from bikeshare.extensions import db
from bikeshare.models.bike import Bike
from bikeshare.models.reservation import OPEN_STATUSES, Reservation
from bikeshare.models.unlock_challenge import UnlockChallenge
from bikeshare.services import availability
from bikeshare.signals import reservation_transitioned

logger = logging.getLogger(__name__)

VALID_TRANSITIONS = {
    "upcoming": {"active", "cancelled"},
    "active": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

OVERLAP_MESSAGE = "Bike is already booked for part of this time"
USER_OPEN_MESSAGE = "You already have an upcoming or active reservation"


# --- state machine ----------------------------------------------------------

def transition_error(reservation, new_status):
    if reservation.status == "cancelled":
        return AlreadyCancelledError(
            "Reservation has been cancelled", reservation_id=str(reservation.reservation_id)
        )
    if reservation.status == "active" and new_status == "active":
        return AlreadyActiveError(
            "Reservation is already active", reservation_id=str(reservation.reservation_id)
        )
    return IllegalTransitionError(f"Cannot transition from {reservation.status} to {new_status}")


def state_error(reservation, expected_status):
    if reservation.status == "cancelled":
        return AlreadyCancelledError(
            "Reservation has been cancelled", reservation_id=str(reservation.reservation_id)
        )
    return IllegalTransitionError(f"Reservation is {reservation.status}, not {expected_status}")


def apply_transition(reservation, new_status):
    """Move reservation to new_status in the session; returns the previous status."""
    allowed = VALID_TRANSITIONS.get(reservation.status, set())
    if new_status not in allowed:
        raise transition_error(reservation, new_status)
    old_status = reservation.status
    reservation.status = new_status
    return old_status


def lock_reservation(reservation_id):
    """SELECT ... FOR UPDATE on the reservation row."""
    reservation = (
        Reservation.query.with_for_update()
        .filter_by(reservation_id=reservation_id)
        .populate_existing()
        .first()
    )
    if not reservation:
        raise NotFoundError("Reservation not found", reservation_id=str(reservation_id))
    return reservation


def lock_bike(bike_id):
    bike = Bike.query.with_for_update().filter_by(bike_id=bike_id).populate_existing().first()
    if not bike:
        raise NotFoundError("Bike not found", bike_id=str(bike_id))
    return bike


@contextmanager
def transition_guard(reservation_id, new_status=None, expected_status=None):
    """
    Run a reservation change and commit it. Yields a function that takes the
    reservation row lock and returns the reservation.

    new_status names the transition being made. Updates that keep the status,
    like ride progress, pass expected_status instead: the only state they may
    run in.

    A concurrent writer that bumped the row version first wins. If it moved the
    reservation to another state the loser gets the typed error for that state,
    otherwise a ConflictError asking for a retry.
    """
    seen = []

    def lock():
        reservation = lock_reservation(reservation_id)
        if expected_status and reservation.status != expected_status:
            raise state_error(reservation, expected_status)
        seen.append(reservation.status)
        return reservation

    try:
        yield lock
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        current = db.session.get(Reservation, reservation_id, populate_existing=True)
        if not seen or current.status == seen[0]:
            raise ConflictError("Reservation was modified concurrently, retry")
        logger.info(
            "Reservation %s moved %s -> %s under a concurrent writer",
            reservation_id, seen[0], current.status,
        )
        if expected_status:
            raise state_error(current, expected_status)
        if current.status == "active":
            raise AlreadyActiveError(
                "Reservation was unlocked first", reservation_id=str(reservation_id)
            )
        raise transition_error(current, new_status)
    except Exception:
        db.session.rollback()
        raise


def notify_transition(reservation, old_status):
    logger.info(
        "Reservation %s: %s -> %s", reservation.reservation_id, old_status, reservation.status
    )
    reservation_transitioned.send(reservation, old_status=old_status, new_status=reservation.status)


def dispatch_bike_command(bike_commands, bike, command):
    """Lock/unlock relay is best effort; the committed state stays authoritative."""
    if bike_commands is None:
        return
    try:
        bike_commands.send(bike, command)
    except ExternalServiceError as e:
        logger.warning("Could not send %s to bike %s: %s", command, bike.name, e.message)


def release_bike(bike, now, exclude_reservation_id=None):
    """Return the bike to the pool, or hold it if the next booking is about to start."""
    if bike.status == "maintenance":
        return
    horizon = now + timedelta(minutes=current_app.config["IMMEDIATE_WINDOW_MINUTES"])
    imminent = Reservation.query.filter(
        Reservation.bike_id == bike.bike_id,
        Reservation.status == "upcoming",
        Reservation.reservation_id != exclude_reservation_id,
        Reservation.start_time <= horizon,
    ).first()
    bike.status = "reserved" if imminent else "available"


# --- operations -------------------------------------------------------------

def check_availability(bike_id, start, end):
    if not db.session.get(Bike, bike_id):
        raise NotFoundError("Bike not found", bike_id=str(bike_id))
    return availability.is_available(bike_id, start, end)


def create_reservation(bike_id, user_id, start, end, pickup_location=None, now=None):
    """
    Book bike_id for [start, end). The bike row lock serializes concurrent
    bookings of the same bike between the overlap check and the insert.
    """
    now = now or utcnow()
    availability.validate_interval(start, end)
    if end <= now:
        raise InvalidIntervalError("Reservation window has already ended")

    try:
        bike = lock_bike(bike_id)
        if bike.status == "maintenance":
            raise ConflictError("Bike is under maintenance", bike_id=str(bike_id))

        open_for_user = Reservation.query.filter(
            Reservation.user_id == user_id,
            Reservation.status.in_(OPEN_STATUSES),
        ).first()
        if open_for_user:
            raise ConflictError(USER_OPEN_MESSAGE, reservation_id=str(open_for_user.reservation_id))

        if not availability.is_available(bike_id, start, end):
            raise ConflictError(OVERLAP_MESSAGE, bike_id=str(bike_id))

        reservation = Reservation(
            bike_id=bike_id,
            user_id=user_id,
            start_time=start,
            end_time=end,
            pickup_lat=pickup_location.lat if pickup_location else None,
            pickup_lng=pickup_location.lng if pickup_location else None,
            status="upcoming",
            created_at=now,
        )
        db.session.add(reservation)

        immediate = start <= now + timedelta(minutes=current_app.config["IMMEDIATE_WINDOW_MINUTES"])
        if immediate and bike.status == "available":
            bike.status = "reserved"

        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        raise ConflictError(_integrity_conflict_message(e), bike_id=str(bike_id)) from e
    except Exception:
        db.session.rollback()
        raise

    notify_transition(reservation, None)
    return reservation


def _integrity_conflict_message(integrity_error):
    text = str(getattr(integrity_error, "orig", integrity_error))
    if "reservations_no_overlap_per_bike" in text:
        return OVERLAP_MESSAGE
    if "uq_reservations_user_open" in text or "reservations.user_id" in text:
        return USER_OPEN_MESSAGE
    return "Reservation conflicts with an existing booking"


def cancel_reservation(reservation_id, bike_commands=None, now=None):
    """Cancel an upcoming or active reservation. An active ride is discarded without charge."""
    now = now or utcnow()

    with transition_guard(reservation_id, "cancelled") as lock:
        reservation = lock()
        old_status = apply_transition(reservation, "cancelled")
        bike = lock_bike(reservation.bike_id)

        reservation.cancelled_at = now
        if old_status == "active":
            reservation.distance_km = 0.0
            reservation.cost = None
            reservation.duration_seconds = None
            reservation.last_lat = reservation.last_lng = reservation.last_point_at = None

        UnlockChallenge.query.filter_by(
            reservation_id=reservation.reservation_id, consumed=False
        ).update({"consumed": True})

        if old_status == "active" or bike.status == "reserved":
            release_bike(bike, now, exclude_reservation_id=reservation.reservation_id)

    notify_transition(reservation, old_status)

    if old_status == "active":
        dispatch_bike_command(bike_commands, bike, "lock")
    return reservation


# --- queries ----------------------------------------------------------------

def get_reservation(reservation_id):
    reservation = db.session.get(Reservation, reservation_id)
    if not reservation:
        raise NotFoundError("Reservation not found", reservation_id=str(reservation_id))
    return reservation


def current_reservation(user_id):
    return Reservation.query.filter(
        Reservation.user_id == user_id,
        Reservation.status.in_(OPEN_STATUSES),
    ).first()


def list_reservations(user_id, limit=50, offset=0):
    return (
        Reservation.query.filter_by(user_id=user_id)
        .order_by(Reservation.start_time.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def completed_rides(user_id):
    return (
        Reservation.query.filter_by(user_id=user_id, status="completed")
        .order_by(Reservation.actual_end.desc())
        .all()
    )
