import unittest
import uuid
from unittest import mock

import stripe
from flask_jwt_extended import create_access_token

from helpers import ServiceTestCase, at

from bikeshare.extensions import db
from bikeshare.models.payment import Payment


def iso(value):
    return value.isoformat().replace("+00:00", "Z")


class ApiTestCase(ServiceTestCase):
    def setUp(self):
        super().setUp()
        self.client = self.app.test_client()
        self.user = uuid.uuid4()
        self.bike = self.make_bike()
        self.bike_id = str(self.bike.bike_id)
        self.qr_code = self.bike.qr_code

    def auth(self, user=None, email="rider@example.com"):
        token = create_access_token(
            identity=str(user or self.user), additional_claims={"email": email}
        )
        return {"Authorization": f"Bearer {token}"}

    def reserve(self, start=None, end=None, user=None):
        return self.client.post("/reservations", json={
            "bike_id": self.bike_id,
            "start_time": iso(start or at(9, 5)),
            "end_time": iso(end or at(10)),
            "pickup_location": {"lat": 6.9, "lng": 79.86},
        }, headers=self.auth(user))

    def ride_and_end(self):
        rid = self.reserve().get_json()["reservation_id"]
        self.client.post(f"/reservations/{rid}/unlock-challenges", json={"method": "qr"}, headers=self.auth())
        self.client.post(
            f"/reservations/{rid}/unlock", json={"method": "qr", "payload": self.qr_code}, headers=self.auth()
        )
        for lat in (6.91, 6.92):
            self.clock.advance(minutes=5)
            self.client.post(
                f"/reservations/{rid}/progress", json={"lat": lat, "lng": 79.86}, headers=self.auth()
            )
        self.client.post(f"/reservations/{rid}/end", headers=self.auth())
        return rid


class TestBikesApi(ApiTestCase):
    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["status"], "healthy")

    def test_list_bikes(self):
        resp = self.client.get("/bikes")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([b["name"] for b in resp.get_json()["bikes"]], ["BK-001"])

    def test_availability(self):
        self.reserve(at(10), at(12))

        busy = self.client.get(
            f"/bikes/{self.bike_id}/availability", query_string={"start": iso(at(11)), "end": iso(at(13))}
        )
        free = self.client.get(
            f"/bikes/{self.bike_id}/availability", query_string={"start": iso(at(12)), "end": iso(at(14))}
        )

        self.assertFalse(busy.get_json()["available"])
        self.assertTrue(free.get_json()["available"])

    def test_availability_bad_interval(self):
        resp = self.client.get(
            f"/bikes/{self.bike_id}/availability", query_string={"start": iso(at(12)), "end": iso(at(11))}
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["error_code"], "INVALID_INTERVAL")

    def test_free_windows(self):
        self.reserve(at(10), at(12))

        resp = self.client.get(
            f"/bikes/{self.bike_id}/free-windows", query_string={"start": iso(at(9)), "end": iso(at(13))}
        )

        self.assertEqual(len(resp.get_json()["windows"]), 2)


class TestReservationsApi(ApiTestCase):
    def test_requires_token(self):
        resp = self.client.get("/reservations/current")
        self.assertEqual(resp.status_code, 401)

    def test_create_and_conflict(self):
        created = self.reserve(at(10), at(12))
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.get_json()["status"], "upcoming")

        clash = self.reserve(at(11), at(13), user=uuid.uuid4())
        self.assertEqual(clash.status_code, 409)
        self.assertEqual(clash.get_json()["error_code"], "CONFLICT")

    def test_bad_timestamp(self):
        resp = self.client.post("/reservations", json={
            "bike_id": self.bike_id, "start_time": "tomorrow", "end_time": iso(at(12)),
        }, headers=self.auth())
        self.assertEqual(resp.status_code, 400)

    def test_other_users_reservation_is_forbidden(self):
        rid = self.reserve().get_json()["reservation_id"]

        resp = self.client.get(f"/reservations/{rid}", headers=self.auth(user=uuid.uuid4()))

        self.assertEqual(resp.status_code, 403)

    def test_current_reservation(self):
        rid = self.reserve().get_json()["reservation_id"]

        resp = self.client.get("/reservations/current", headers=self.auth())

        self.assertEqual(resp.get_json()["reservation"]["reservation_id"], rid)

    def test_cancel_twice(self):
        rid = self.reserve().get_json()["reservation_id"]

        first = self.client.post(f"/reservations/{rid}/cancel", headers=self.auth())
        second = self.client.post(f"/reservations/{rid}/cancel", headers=self.auth())

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.get_json()["error_code"], "ALREADY_CANCELLED")

    def test_email_unlock(self):
        rid = self.reserve().get_json()["reservation_id"]

        issued = self.client.post(
            f"/reservations/{rid}/unlock-challenges", json={"method": "email"}, headers=self.auth()
        )
        self.assertEqual(issued.status_code, 201)
        self.assertNotIn("token", issued.get_json())
        self.assertEqual(self.mailer.codes[-1][0], "rider@example.com")

        wrong = self.client.post(
            f"/reservations/{rid}/unlock",
            json={"method": "email", "payload": "abc"},
            headers=self.auth(),
        )
        self.assertEqual(wrong.status_code, 400)
        self.assertEqual(wrong.get_json()["error_code"], "INVALID_CODE")

        ok = self.client.post(
            f"/reservations/{rid}/unlock",
            json={"method": "email", "payload": self.mailer.last_code},
            headers=self.auth(),
        )
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.get_json()["status"], "active")

    def test_expired_challenge_is_gone(self):
        rid = self.reserve().get_json()["reservation_id"]
        self.client.post(f"/reservations/{rid}/unlock-challenges", json={"method": "qr"}, headers=self.auth())
        self.clock.advance(minutes=6)

        resp = self.client.post(
            f"/reservations/{rid}/unlock", json={"method": "qr", "payload": self.qr_code}, headers=self.auth()
        )

        self.assertEqual(resp.status_code, 410)

    def test_full_ride(self):
        rid = self.ride_and_end()

        resp = self.client.get(f"/reservations/{rid}", headers=self.auth())
        body = resp.get_json()
        self.assertEqual(body["status"], "completed")
        self.assertEqual(body["distance_km"], 2.224)
        self.assertEqual(body["cost"], 111.2)

        rides = self.client.get("/rides", headers=self.auth()).get_json()
        self.assertEqual([r["reservation_id"] for r in rides["rides"]], [rid])


class TestPaymentsApi(ApiTestCase):
    def test_pay_by_qr_and_earn_points(self):
        rid = self.ride_and_end()

        started = self.client.post("/payments", json={"reservation_id": rid, "method": "qr"}, headers=self.auth())
        self.assertEqual(started.status_code, 201)
        payment = started.get_json()
        self.assertTrue(payment["qr_payload"].startswith("QR_FOR_"))

        confirmed = self.client.post(f"/payments/{payment['payment_id']}/confirm", json={}, headers=self.auth())
        self.assertEqual(confirmed.status_code, 200)
        self.assertEqual(confirmed.get_json()["status"], "completed")

        loyalty = self.client.get("/loyalty", headers=self.auth()).get_json()
        self.assertEqual(loyalty["points_balance"], 2)
        self.assertEqual(self.mailer.receipts[0][0], "rider@example.com")

    def test_amount_mismatch(self):
        rid = self.ride_and_end()

        resp = self.client.post(
            "/payments", json={"reservation_id": rid, "method": "qr", "amount": 1}, headers=self.auth()
        )

        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.get_json()["error_code"], "AMOUNT_MISMATCH")

    def test_crypto_confirmation_is_accepted_while_pending(self):
        rid = self.ride_and_end()
        payment = self.client.post(
            "/payments", json={"reservation_id": rid, "method": "crypto"}, headers=self.auth()
        ).get_json()
        tx = "0x" + "ef" * 32

        resp = self.client.post(
            f"/payments/{payment['payment_id']}/confirm", json={"tx_hash": tx}, headers=self.auth()
        )

        self.assertEqual(resp.status_code, 202)
        self.assertEqual(resp.get_json()["status"], "pending")
        self.assertEqual(self.watcher.scheduled, [(uuid.UUID(payment["payment_id"]), tx)])

    def test_other_users_payment_is_forbidden(self):
        rid = self.ride_and_end()
        payment = self.client.post(
            "/payments", json={"reservation_id": rid, "method": "qr"}, headers=self.auth()
        ).get_json()

        resp = self.client.get(f"/payments/{payment['payment_id']}", headers=self.auth(user=uuid.uuid4()))

        self.assertEqual(resp.status_code, 403)


class TestLoyaltyApi(ApiTestCase):
    def test_insufficient_points(self):
        resp = self.client.post("/loyalty/redeem", json={"points_cost": 5}, headers=self.auth())

        self.assertEqual(resp.status_code, 402)
        self.assertEqual(resp.get_json()["error_code"], "INSUFFICIENT_POINTS")

    def test_rewards_catalog(self):
        resp = self.client.get("/loyalty/rewards", headers=self.auth())

        rewards = {r["code"]: r for r in resp.get_json()["rewards"]}
        self.assertFalse(rewards["ride_discount_20"]["unlocked"])
        self.assertEqual(rewards["free_weekend_ride"]["unlock_threshold"], 100)

    def test_recalculate(self):
        resp = self.client.post("/loyalty/recalculate", headers=self.auth())

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["points_balance"], 0)


class TestStripeWebhook(ApiTestCase):
    def card_payment(self):
        rid = self.ride_and_end()
        return self.client.post(
            "/payments", json={"reservation_id": rid, "method": "card"}, headers=self.auth()
        ).get_json()

    def event(self, event_type, payment):
        return {
            "type": event_type,
            "data": {"object": {
                "id": payment["external_ref"],
                "metadata": {"payment_id": payment["payment_id"]},
            }},
        }

    def post_webhook(self):
        return self.client.post(
            "/api/webhooks/stripe", data="{}", headers={"Stripe-Signature": "t=1,v1=abc"}
        )

    def test_succeeded_event_settles_payment(self):
        payment = self.card_payment()

        with mock.patch("stripe.Webhook.construct_event",
                        return_value=self.event("payment_intent.succeeded", payment)):
            resp = self.post_webhook()

        self.assertEqual(resp.status_code, 200)
        stored = db.session.get(Payment, uuid.UUID(payment["payment_id"]), populate_existing=True)
        self.assertEqual(stored.status, "completed")

    def test_canceled_event_marks_payment_failed(self):
        payment = self.card_payment()

        with mock.patch("stripe.Webhook.construct_event",
                        return_value=self.event("payment_intent.canceled", payment)):
            self.post_webhook()

        stored = db.session.get(Payment, uuid.UUID(payment["payment_id"]), populate_existing=True)
        self.assertEqual(stored.status, "failed")

    def test_declined_attempt_then_success_settles_payment(self):
        payment = self.card_payment()

        with mock.patch("stripe.Webhook.construct_event",
                        return_value=self.event("payment_intent.payment_failed", payment)):
            declined = self.post_webhook()
        self.assertEqual(declined.status_code, 200)
        stored = db.session.get(Payment, uuid.UUID(payment["payment_id"]), populate_existing=True)
        self.assertEqual(stored.status, "pending")

        with mock.patch("stripe.Webhook.construct_event",
                        return_value=self.event("payment_intent.succeeded", payment)):
            self.post_webhook()

        stored = db.session.get(Payment, uuid.UUID(payment["payment_id"]), populate_existing=True)
        self.assertEqual(stored.status, "completed")
        loyalty = self.client.get("/loyalty", headers=self.auth()).get_json()
        self.assertEqual(loyalty["points_balance"], 2)

    def test_bad_signature(self):
        error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=abc")
        with mock.patch("stripe.Webhook.construct_event", side_effect=error):
            resp = self.post_webhook()

        self.assertEqual(resp.status_code, 400)


if __name__ == '__main__':
    unittest.main()
