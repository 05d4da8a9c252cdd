"""
Email dispatch for unlock codes and payment receipts.

HttpEmailDispatcher posts to a transactional email API. When no API is
configured the LoggingEmailDispatcher stands in (local/dev).
"""

import logging

import requests

from bikeshare.errors import ExternalServiceError

logger = logging.getLogger(__name__)


def _unlock_body(code):
    return (
        "Use the following code to unlock your bike:\n\n"
        f"    {code}\n\n"
        "The code expires in a few minutes and can only be used once."
    )


def _receipt_body(payment):
    return (
        "Your payment for the bike ride has been processed.\n\n"
        f"Reservation ID: {payment.reservation_id}\n"
        f"Amount paid:    {payment.amount:.2f} {payment.currency.upper()}\n"
        f"Method:         {payment.method.upper()}\n"
        f"Transaction ID: {payment.external_ref or 'N/A'}\n\n"
        "Thank you for riding with CycleChain!"
    )


class HttpEmailDispatcher:
    def __init__(self, api_url, api_key, sender, timeout=5.0):
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    def _post(self, address, subject, body):
        try:
            resp = requests.post(
                self.api_url,
                json={"from": self.sender, "to": address, "subject": subject, "text": body},
                headers={"api-key": self.api_key},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ExternalServiceError(f"Email dispatch failed: {e}") from e

    def send(self, address, code):
        self._post(address, "Your Bike Unlock Code", _unlock_body(code))

    def send_receipt(self, address, payment):
        self._post(address, "Payment Confirmation - CycleChain Ride", _receipt_body(payment))


class LoggingEmailDispatcher:
    def send(self, address, code):
        logger.debug("Mock email: unlock code %s for %s", code, address)

    def send_receipt(self, address, payment):
        logger.debug("Mock email: receipt for payment %s to %s", payment.payment_id, address)
