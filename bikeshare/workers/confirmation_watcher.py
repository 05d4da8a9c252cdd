"""
Background confirmation of crypto payments.

A wallet transaction can take minutes to be mined, so requests never wait
for it. The watcher polls the chain in a worker thread and settles the
payment once the receipt is confirmed. When the deadline passes the payment
stays pending and can be confirmed again later.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from bikeshare.errors import BikeShareError, ExternalServiceError
from bikeshare.extensions import db
from bikeshare.services import payment_service

logger = logging.getLogger(__name__)


class ChainConfirmationWatcher:
    def __init__(self, app, chain, mailer=None, poll_interval=5.0, timeout=120.0, max_workers=4):
        self.app = app
        self.chain = chain
        self.mailer = mailer
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="chain-watch")
        self._stopping = threading.Event()
        self._cancelled = {}
        self._futures = {}
        self._lock = threading.Lock()

    def schedule(self, payment_id, tx_hash, address=None):
        """
        Start watching tx_hash for payment_id; returns a Future resolving to the
        final status. A payment already being watched gets its running Future back.
        """
        key = str(payment_id)
        with self._lock:
            running = self._futures.get(key)
            if running is not None and not running.done():
                logger.debug("Payment %s is already being watched", payment_id)
                return running
            cancel = threading.Event()
            self._cancelled[key] = cancel
            logger.info("Watching transaction %s for payment %s", tx_hash, payment_id)
            future = self._executor.submit(self._watch, payment_id, tx_hash, cancel, address)
            self._futures[key] = future
        return future

    def cancel(self, payment_id):
        with self._lock:
            event = self._cancelled.get(str(payment_id))
        if event:
            event.set()

    def shutdown(self, wait=False):
        self._stopping.set()
        with self._lock:
            for event in self._cancelled.values():
                event.set()
        self._executor.shutdown(wait=wait)

    def _watch(self, payment_id, tx_hash, cancel, address=None):
        deadline = time.monotonic() + self.timeout
        with self.app.app_context():
            try:
                while True:
                    status = self._poll_once(payment_id, tx_hash, address)
                    if status != "pending":
                        return status
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        logger.warning(
                            "Transaction %s for payment %s not confirmed within %ss, leaving it pending",
                            tx_hash, payment_id, self.timeout,
                        )
                        return "pending"
                    if cancel.wait(min(self.poll_interval, remaining)) or self._stopping.is_set():
                        logger.info("Stopped watching payment %s", payment_id)
                        return "pending"
            finally:
                db.session.remove()
                with self._lock:
                    if self._cancelled.get(str(payment_id)) is cancel:
                        del self._cancelled[str(payment_id)]
                        self._futures.pop(str(payment_id), None)

    def _poll_once(self, payment_id, tx_hash, address=None):
        try:
            payment = payment_service.confirm_payment(
                payment_id,
                True,
                external_ref=tx_hash,
                chain=self.chain,
                mailer=self.mailer,
                address=address,
            )
        except ExternalServiceError as e:
            logger.warning("Chain RPC unavailable while watching payment %s: %s", payment_id, e.message)
            return "pending"
        except BikeShareError as e:
            logger.error("Giving up on payment %s: %s", payment_id, e.message)
            return "error"
        return payment.status
