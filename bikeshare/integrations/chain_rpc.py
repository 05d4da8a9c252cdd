"""
Crypto rail: Ethereum JSON-RPC client used to confirm wallet transactions.
"""

import itertools
import logging
from dataclasses import dataclass

import requests

from bikeshare.errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChainReceipt:
    confirmed: bool
    block_number: int | None = None


class JsonRpcChainClient:
    """
    A transaction counts as confirmed once it is mined with status 0x1 and
    buried under at least `min_confirmations` blocks (the mined block counts as one).
    """

    def __init__(self, rpc_url, min_confirmations=1, timeout=5.0, session=None):
        self.rpc_url = rpc_url
        self.min_confirmations = max(1, int(min_confirmations))
        self.timeout = timeout
        self.session = session or requests.Session()
        self._ids = itertools.count(1)

    def _call(self, method, params):
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise ExternalServiceError(f"Chain RPC unreachable: {e}") from e

        if body.get("error"):
            raise ExternalServiceError(f"Chain RPC error: {body['error'].get('message')}")
        return body.get("result")

    def get_transaction_receipt(self, tx_hash):
        receipt = self._call("eth_getTransactionReceipt", [tx_hash])
        if not receipt or receipt.get("blockNumber") is None:
            # not mined yet
            return ChainReceipt(confirmed=False)

        block_number = int(receipt["blockNumber"], 16)
        if int(receipt.get("status", "0x0"), 16) != 1:
            logger.warning("Transaction %s reverted in block %s", tx_hash, block_number)
            return ChainReceipt(confirmed=False, block_number=block_number)

        if self.min_confirmations > 1:
            head = int(self._call("eth_blockNumber", []), 16)
            if head - block_number + 1 < self.min_confirmations:
                return ChainReceipt(confirmed=False, block_number=block_number)

        return ChainReceipt(confirmed=True, block_number=block_number)
