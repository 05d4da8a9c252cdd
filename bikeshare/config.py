"""
Service configuration, read from the environment (and a local .env file).
"""

import os
from decimal import Decimal

from dotenv import load_dotenv


def _database_uri():
    url = os.environ.get('DATABASE_URL')
    if url:
        return url
    db_user = os.environ.get('DB_USER', 'ride_svc_user')
    db_pass = os.environ.get('DB_PASS', 'password')
    db_host = os.environ.get('DB_HOST', 'rides-db')
    db_name = os.environ.get('DB_NAME', 'rides_db')
    return f"postgresql://{db_user}:{db_pass}@{db_host}/{db_name}"


def from_env():
    load_dotenv()

    return {
        'SQLALCHEMY_DATABASE_URI': _database_uri(),
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'JWT_SECRET_KEY': os.environ.get('JWT_SECRET', 'dev-secret-change-me'),
        'LOG_LEVEL': os.environ.get('LOG_LEVEL', 'INFO'),

        # Stripe (card rail)
        'STRIPE_SECRET_KEY': os.environ.get('STRIPE_SECRET_KEY'),
        'STRIPE_WEBHOOK_SECRET': os.environ.get('STRIPE_WEBHOOK_SECRET', 'whsec_test_secret'),
        'PAYMENT_CURRENCY': os.environ.get('PAYMENT_CURRENCY', 'lkr'),

        # Chain RPC (crypto rail)
        'CHAIN_RPC_URL': os.environ.get('CHAIN_RPC_URL', 'https://rpc.sepolia.org'),
        'CHAIN_MIN_CONFIRMATIONS': int(os.environ.get('CHAIN_MIN_CONFIRMATIONS', 1)),
        'CHAIN_POLL_INTERVAL_SECONDS': float(os.environ.get('CHAIN_POLL_INTERVAL_SECONDS', 5)),
        'CHAIN_CONFIRMATION_TIMEOUT_SECONDS': float(os.environ.get('CHAIN_CONFIRMATION_TIMEOUT_SECONDS', 120)),

        # Email dispatch, falls back to logging when no API is configured
        'EMAIL_API_URL': os.environ.get('EMAIL_API_URL'),
        'EMAIL_API_KEY': os.environ.get('EMAIL_API_KEY', 'placeholder-key'),
        'EMAIL_SENDER': os.environ.get('EMAIL_SENDER', 'CycleChain <no-reply@cyclechain.app>'),

        # Fleet gateway that relays lock/unlock commands to bikes
        'FLEET_API_URL': os.environ.get('FLEET_API_URL'),

        # Pricing
        'RATE_PER_KM': Decimal(os.environ.get('RATE_PER_KM', '50.00')),
        'MINIMUM_FARE': Decimal(os.environ.get('MINIMUM_FARE', '0.00')),
        'LKR_PER_USD': Decimal(os.environ.get('LKR_PER_USD', '300')),
        'USD_PER_ETH': Decimal(os.environ.get('USD_PER_ETH', '2000')),

        # Unlock
        'UNLOCK_CHALLENGE_TTL_SECONDS': int(os.environ.get('UNLOCK_CHALLENGE_TTL_SECONDS', 300)),
        'UNLOCK_CODE_DIGITS': int(os.environ.get('UNLOCK_CODE_DIGITS', 6)),
        'UNLOCK_MAX_ATTEMPTS': int(os.environ.get('UNLOCK_MAX_ATTEMPTS', 5)),
        'UNLOCK_EARLY_MINUTES': int(os.environ.get('UNLOCK_EARLY_MINUTES', 10)),

        # Reservations / rides
        'IMMEDIATE_WINDOW_MINUTES': int(os.environ.get('IMMEDIATE_WINDOW_MINUTES', 15)),
        'RIDE_MAX_SPEED_KMH': float(os.environ.get('RIDE_MAX_SPEED_KMH', 60)),
    }
