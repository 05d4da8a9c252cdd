"""
Relays lock/unlock commands to bikes through the fleet gateway.
"""

import logging

import requests

from bikeshare.errors import ExternalServiceError

logger = logging.getLogger(__name__)

BIKE_COMMANDS = ("unlock", "lock")


class HttpBikeCommandChannel:
    def __init__(self, api_url, timeout=2.0):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def send(self, bike, command):
        if command not in BIKE_COMMANDS:
            raise ValueError(f"Unknown bike command: {command}")
        try:
            resp = requests.post(
                f"{self.api_url}/bikes/{bike.name}/command",
                json={"command": command},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ExternalServiceError(f"Fleet gateway error: {e}") from e
        logger.info("Sent %s to bike %s", command, bike.name)


class LoggingBikeCommandChannel:
    def send(self, bike, command):
        logger.debug("Mock fleet: %s -> bike/%s/command", command, bike.name)
