import unittest
import uuid

from helpers import ServiceTestCase, at

from bikeshare.errors import (
    AlreadyCancelledError,
    ConflictError,
    IllegalTransitionError,
    InvalidIntervalError,
    NotFoundError,
)
from bikeshare.extensions import db
from bikeshare.models.bike import Bike
from bikeshare.models.reservation import Reservation
from bikeshare.services import reservation_service
from bikeshare.signals import reservation_transitioned


class TestCreateReservation(ServiceTestCase):
    def setUp(self):
        super().setUp()
        self.bike = self.make_bike()

    def test_overlap_scenario(self):
        user_a, user_b, user_c = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()

        first = self.book(self.bike, user_a, at(10), at(12))
        self.assertEqual(first.status, "upcoming")

        with self.assertRaises(ConflictError):
            self.book(self.bike, user_b, at(11), at(13))

        second = self.book(self.bike, user_c, at(12), at(14))
        self.assertEqual(second.status, "upcoming")

        on_bike = Reservation.query.filter_by(bike_id=self.bike.bike_id).count()
        self.assertEqual(on_bike, 2)

    def test_user_holds_one_open_reservation(self):
        user = uuid.uuid4()
        other_bike = self.make_bike(name="BK-002")
        self.book(self.bike, user, at(10), at(11))

        with self.assertRaises(ConflictError):
            self.book(other_bike, user, at(12), at(13))

    def test_user_can_book_again_after_cancelling(self):
        user = uuid.uuid4()
        first = self.book(self.bike, user, at(10), at(11))
        reservation_service.cancel_reservation(first.reservation_id, now=self.clock())

        again = self.book(self.bike, user, at(10), at(11))
        self.assertEqual(again.status, "upcoming")

    def test_invalid_interval(self):
        with self.assertRaises(InvalidIntervalError):
            self.book(self.bike, start=at(12), end=at(11))

    def test_window_already_over(self):
        with self.assertRaises(InvalidIntervalError):
            self.book(self.bike, start=at(7), end=at(8))

    def test_unknown_bike(self):
        ghost = Bike(bike_id=uuid.uuid4(), name="ghost", qr_code="ghost")
        with self.assertRaises(NotFoundError):
            self.book(ghost)

    def test_bike_in_maintenance(self):
        broken = self.make_bike(name="BK-009", status="maintenance")
        with self.assertRaises(ConflictError):
            self.book(broken)

    def test_immediate_booking_reserves_the_bike(self):
        self.book(self.bike, start=at(9, 5), end=at(10))

        self.assertEqual(db.session.get(Bike, self.bike.bike_id).status, "reserved")

    def test_later_booking_leaves_the_bike_available(self):
        self.book(self.bike, start=at(11), end=at(12))

        self.assertEqual(db.session.get(Bike, self.bike.bike_id).status, "available")

    def test_creation_is_announced(self):
        seen = []

        def receiver(sender, **kwargs):
            seen.append((sender.reservation_id, kwargs["old_status"], kwargs["new_status"]))

        reservation_transitioned.connect(receiver)
        self.addCleanup(reservation_transitioned.disconnect, receiver)

        reservation = self.book(self.bike)

        self.assertEqual(seen, [(reservation.reservation_id, None, "upcoming")])


class TestCancelReservation(ServiceTestCase):
    def setUp(self):
        super().setUp()
        self.bike = self.make_bike()

    def test_cancel_upcoming_releases_the_bike(self):
        reservation = self.book(self.bike, start=at(9, 5), end=at(10))

        cancelled = reservation_service.cancel_reservation(reservation.reservation_id, now=self.clock())

        self.assertEqual(cancelled.status, "cancelled")
        self.assertIsNotNone(cancelled.cancelled_at)
        self.assertEqual(db.session.get(Bike, self.bike.bike_id).status, "available")

    def test_cancel_twice(self):
        reservation = self.book(self.bike)
        reservation_service.cancel_reservation(reservation.reservation_id, now=self.clock())

        with self.assertRaises(AlreadyCancelledError):
            reservation_service.cancel_reservation(reservation.reservation_id, now=self.clock())

    def test_cannot_cancel_completed(self):
        reservation = self.completed_ride(bike=self.bike)

        with self.assertRaises(IllegalTransitionError):
            reservation_service.cancel_reservation(reservation.reservation_id, now=self.clock())
        self.assertEqual(db.session.get(Reservation, reservation.reservation_id).status, "completed")

    def test_bike_stays_reserved_for_the_next_imminent_booking(self):
        first = self.book(self.bike, start=at(9, 5), end=at(9, 10))
        self.book(self.bike, start=at(9, 10), end=at(10))

        reservation_service.cancel_reservation(first.reservation_id, now=self.clock())

        self.assertEqual(db.session.get(Bike, self.bike.bike_id).status, "reserved")

    def test_unknown_reservation(self):
        with self.assertRaises(NotFoundError):
            reservation_service.cancel_reservation(uuid.uuid4(), now=self.clock())


class TestQueries(ServiceTestCase):
    def test_current_and_history(self):
        bike = self.make_bike()
        user = uuid.uuid4()
        self.assertIsNone(reservation_service.current_reservation(user))

        done = self.completed_ride(bike=bike, user_id=user)
        upcoming = self.book(bike, user, at(11), at(12))

        self.assertEqual(reservation_service.current_reservation(user).reservation_id, upcoming.reservation_id)
        listed = reservation_service.list_reservations(user)
        self.assertEqual([r.reservation_id for r in listed], [upcoming.reservation_id, done.reservation_id])
        self.assertEqual(
            [r.reservation_id for r in reservation_service.completed_rides(user)],
            [done.reservation_id],
        )


if __name__ == '__main__':
    unittest.main()
