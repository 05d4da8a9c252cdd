"""
Fares and crypto quotes.

Fare rule: cost = max(MINIMUM_FARE, distance_km * RATE_PER_KM), rounded half-up
to 2 decimals. Crypto quotes convert the fare LKR -> USD -> ETH at configured rates.
"""

from decimal import ROUND_HALF_UP, Decimal

CENTS = Decimal("0.01")
ETH_PRECISION = Decimal("0.000001")


def compute_cost(distance_km, rate_per_km, minimum_fare=Decimal("0")):
    distance = Decimal(str(distance_km))
    raw = distance * Decimal(rate_per_km)
    return max(Decimal(minimum_fare), raw).quantize(CENTS, rounding=ROUND_HALF_UP)


def quote_crypto(amount, lkr_per_usd, usd_per_eth):
    usd = Decimal(amount) / Decimal(lkr_per_usd)
    return (usd / Decimal(usd_per_eth)).quantize(ETH_PRECISION, rounding=ROUND_HALF_UP)
