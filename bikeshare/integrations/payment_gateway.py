"""
Card rail: Stripe PaymentIntents.

create_charge(amount, currency, metadata) -> external_ref
get_charge_status(external_ref) -> "pending" | "succeeded" | "failed"
"""

import logging
from decimal import Decimal

import stripe

from bikeshare.errors import ExternalServiceError

logger = logging.getLogger(__name__)

# Stripe statuses that will never turn into a successful charge on their own
_FAILED_STATUSES = {"canceled"}


def to_minor_units(amount):
    return int((Decimal(amount) * 100).to_integral_value())


class StripeGateway:
    def __init__(self, api_key):
        self.api_key = api_key

    def create_charge(self, amount, currency, metadata=None):
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=to_minor_units(amount),
                currency=currency,
                metadata=metadata or {},
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as e:
            raise ExternalServiceError(f"Payment gateway error: {e.user_message or e}") from e
        logger.info("Created PaymentIntent %s for %s %s", intent["id"], amount, currency)
        return intent["id"]

    def get_charge_status(self, external_ref):
        try:
            intent = stripe.PaymentIntent.retrieve(external_ref, api_key=self.api_key)
        except stripe.StripeError as e:
            raise ExternalServiceError(f"Payment gateway error: {e.user_message or e}") from e

        status = intent["status"]
        if status == "succeeded":
            return "succeeded"
        if status in _FAILED_STATUSES:
            return "failed"
        return "pending"
