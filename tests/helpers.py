import itertools
import os
import tempfile
import threading
import unittest
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from bikeshare import create_app
from bikeshare.errors import ExternalServiceError
from bikeshare.extensions import db
from bikeshare.integrations.chain_rpc import ChainReceipt
from bikeshare.models.bike import Bike
from bikeshare.services import reservation_service
from bikeshare.services.pricing import compute_cost

# Monday morning, UTC
T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


def at(hour, minute=0):
    return T0.replace(hour=hour, minute=minute)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    def __init__(self):
        self._ids = itertools.count(1)
        self.charges = {}
        self.statuses = {}
        self.fail_create = False

    def create_charge(self, amount, currency, metadata=None):
        if self.fail_create:
            raise ExternalServiceError("Payment gateway error: card declined")
        ref = f"pi_test_{next(self._ids)}"
        self.charges[ref] = {"amount": amount, "currency": currency, "metadata": metadata or {}}
        return ref

    def get_charge_status(self, external_ref):
        return self.statuses.get(external_ref, "succeeded")


class FakeChain:
    """Confirms a transaction once it has been polled `confirm_after` times."""

    def __init__(self):
        self.confirm_after = {}
        self.polls = {}
        self.errors = []
        self._lock = threading.Lock()

    def confirm(self, tx_hash, after=0):
        self.confirm_after[tx_hash] = after

    def get_transaction_receipt(self, tx_hash):
        with self._lock:
            if self.errors:
                raise self.errors.pop(0)
            self.polls[tx_hash] = self.polls.get(tx_hash, 0) + 1
            after = self.confirm_after.get(tx_hash)
            if after is None or self.polls[tx_hash] <= after:
                return ChainReceipt(confirmed=False)
            return ChainReceipt(confirmed=True, block_number=100)


class FakeMailer:
    def __init__(self):
        self.codes = []
        self.receipts = []
        self.fail = False

    def send(self, address, code):
        if self.fail:
            raise ExternalServiceError("Email dispatch failed")
        self.codes.append((address, code))

    def send_receipt(self, address, payment):
        if self.fail:
            raise ExternalServiceError("Email dispatch failed")
        self.receipts.append((address, payment.payment_id))

    @property
    def last_code(self):
        return self.codes[-1][1]


class FakeBikeCommands:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, bike, command):
        if self.fail:
            raise ExternalServiceError("Fleet gateway error")
        self.sent.append((bike.name, command))


class FakeWatcher:
    def __init__(self):
        self.scheduled = []

    def schedule(self, payment_id, tx_hash, address=None):
        self.scheduled.append((payment_id, tx_hash))

    def shutdown(self, wait=False):
        pass


class ServiceTestCase(unittest.TestCase):
    """Fresh app and schema per test, with fake collaborators and a fixed clock."""

    # threaded tests need a real file; in-memory SQLite is a single shared connection
    file_database = False

    def setUp(self):
        if self.file_database:
            fd, self.db_path = tempfile.mkstemp(suffix=".db")
            os.close(fd)
            database_uri = f"sqlite:///{self.db_path}"
        else:
            self.db_path = None
            database_uri = "sqlite://"

        self.clock = FakeClock()
        self.gateway = FakeGateway()
        self.chain = FakeChain()
        self.mailer = FakeMailer()
        self.bike_commands = FakeBikeCommands()
        self.watcher = FakeWatcher()

        self.app = create_app(
            test_config={
                "TESTING": True,
                "SQLALCHEMY_DATABASE_URI": database_uri,
                "JWT_SECRET_KEY": "test-secret-key-that-is-long-enough-for-hs256",
                "STRIPE_WEBHOOK_SECRET": "whsec_test",
                "EMAIL_API_URL": None,
                "FLEET_API_URL": None,
                "LOG_LEVEL": "WARNING",
            },
            gateway=self.gateway,
            chain=self.chain,
            mailer=self.mailer,
            bike_commands=self.bike_commands,
            clock=self.clock,
            watcher=self.watcher,
        )
        self.ctx = self.app.app_context()
        self.ctx.push()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
        self.ctx.pop()
        if self.db_path:
            os.remove(self.db_path)

    # --- fixtures -----------------------------------------------------------

    def make_bike(self, name="BK-001", status="available", lat=6.9000, lng=79.8600):
        bike = Bike(name=name, qr_code=f"CYCLE-{name}", status=status, lat=lat, lng=lng)
        db.session.add(bike)
        db.session.commit()
        return bike

    def book(self, bike, user_id=None, start=None, end=None):
        return reservation_service.create_reservation(
            bike.bike_id,
            user_id or uuid.uuid4(),
            start or at(9, 5),
            end or at(10),
            now=self.clock(),
        )

    def completed_ride(self, bike=None, user_id=None, distance_km=12.7):
        """A reservation already ridden and ended, with a frozen cost."""
        bike = bike or self.make_bike()
        reservation = self.book(bike, user_id=user_id)
        reservation.status = "completed"
        reservation.distance_km = distance_km
        reservation.cost = compute_cost(
            distance_km, self.app.config["RATE_PER_KM"], self.app.config["MINIMUM_FARE"]
        )
        reservation.actual_start = at(9, 5)
        reservation.actual_end = at(9, 50)
        bike.status = "available"
        db.session.commit()
        return reservation


def money(value):
    return Decimal(value).quantize(Decimal("0.01"))
