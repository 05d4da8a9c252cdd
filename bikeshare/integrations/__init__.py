"""
External collaborators, constructed once per app and stored in
app.extensions["bikeshare"]. Services receive them as arguments; routes look
them up with collaborator(name).
"""

from flask import current_app

from bikeshare.clock import utcnow
from bikeshare.integrations.bike_commands import HttpBikeCommandChannel, LoggingBikeCommandChannel
from bikeshare.integrations.chain_rpc import JsonRpcChainClient
from bikeshare.integrations.email_dispatch import HttpEmailDispatcher, LoggingEmailDispatcher
from bikeshare.integrations.payment_gateway import StripeGateway


def default_collaborators(config):
    if config.get("EMAIL_API_URL"):
        mailer = HttpEmailDispatcher(
            config["EMAIL_API_URL"], config["EMAIL_API_KEY"], config["EMAIL_SENDER"]
        )
    else:
        mailer = LoggingEmailDispatcher()

    if config.get("FLEET_API_URL"):
        bike_commands = HttpBikeCommandChannel(config["FLEET_API_URL"])
    else:
        bike_commands = LoggingBikeCommandChannel()

    return {
        "gateway": StripeGateway(config.get("STRIPE_SECRET_KEY")),
        "chain": JsonRpcChainClient(
            config["CHAIN_RPC_URL"],
            min_confirmations=config["CHAIN_MIN_CONFIRMATIONS"],
        ),
        "mailer": mailer,
        "bike_commands": bike_commands,
        "clock": utcnow,
    }


def collaborator(name):
    return current_app.extensions["bikeshare"][name]


def now():
    return collaborator("clock")()
