# paygate/x402/ledger.py
"""
Read-only ledger access for payment verification.

This module talks JSON-RPC to an EVM node (Base Sepolia by default) and
exposes the three lookups the verifier needs:
- eth_getTransactionByHash: sender, recipient, value, chain id
- eth_getTransactionReceipt: success flag, containing block
- eth_blockNumber: current chain height

It knows nothing about payments. Requests go through a requests.Session
whose adapter retries connection errors, timeouts, HTTP 429 and HTTP 5xx
with exponential backoff. Once the retries are exhausted the failure
surfaces as LedgerUnavailableError; a node answering with a JSON-RPC error
raises LedgerRpcError.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from requests.exceptions import ConnectionError, RequestException, RetryError, Timeout
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

RECEIPT_STATUS_SUCCESS = "0x1"
RETRY_STATUS_CODES = [429, 500, 502, 503, 504]


class LedgerError(Exception):
    """Base class for ledger access failures."""


class LedgerUnavailableError(LedgerError):
    """The node could not be reached (after retries) or answered garbage."""


class LedgerRpcError(LedgerError):
    """The node answered the call with a JSON-RPC error object."""


@dataclass(frozen=True)
class TransactionFacts:
    """What the ledger says about one mined transaction."""
    reference: str
    succeeded: bool
    sender: str
    recipient: Optional[str]
    amount: int
    block_height: int
    chain_id: Optional[int]


def hex_to_int(value: Optional[str]) -> Optional[int]:
    """Decode a JSON-RPC quantity ("0x1a") into an int."""
    if value is None:
        return None
    return int(value, 16)


def build_session(max_attempts: int, backoff_seconds: float) -> requests.Session:
    """
    Create a session that retries transient RPC failures.

    JSON-RPC reads are POSTs, so retries are allowed for every method.
    """
    session = requests.Session()
    retry = Retry(
        total=max_attempts - 1,
        backoff_factor=backoff_seconds,
        status_forcelist=RETRY_STATUS_CODES,
        allowed_methods=None,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class JsonRpcLedgerReader:
    """
    Ledger reader backed by an Ethereum JSON-RPC endpoint.

    Safe to share between threads: every call is an independent HTTP request
    on a pooled session.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
    ):
        """
        Initialize the reader.

        Args:
            rpc_url: JSON-RPC endpoint of the node
            timeout: Per-request timeout in seconds
            max_attempts: Attempts per call before giving up (at least 1)
            backoff_seconds: Backoff factor for the retry schedule
        """
        self.rpc_url = str(rpc_url)
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.session = build_session(self.max_attempts, backoff_seconds)

    def call(self, method: str, params: List[Any]) -> Any:
        """
        Issue a JSON-RPC call.

        Transient failures are retried by the session adapter; anything
        that still fails is raised here.

        Raises:
            LedgerUnavailableError: If the node stays unreachable or answers garbage
            LedgerRpcError: If the node rejects the call
        """
        try:
            response = self.session.post(
                self.rpc_url,
                json={
                    "jsonrpc": "2.0",
                    "method": method,
                    "params": params,
                    "id": 1
                },
                timeout=self.timeout
            )
            response.raise_for_status()
        except RetryError as e:
            logger.error(f"Ledger call {method} failed after {self.max_attempts} attempts: {e}")
            raise LedgerUnavailableError(f"Ledger unreachable after {self.max_attempts} attempts ({method}): {e}") from e
        except (ConnectionError, Timeout) as e:
            logger.error(f"Ledger call {method} failed: {e}")
            raise LedgerUnavailableError(f"Ledger unreachable ({method}): {e}") from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise LedgerUnavailableError(f"RPC endpoint rejected {method}: HTTP {status}") from e
        except RequestException as e:
            raise LedgerUnavailableError(f"RPC request for {method} failed: {e}") from e

        try:
            result = response.json()
        except ValueError as e:
            raise LedgerUnavailableError(f"Invalid RPC response for {method}: {e}")

        if not isinstance(result, dict):
            raise LedgerUnavailableError(f"Invalid RPC response for {method}: expected an object")

        if "error" in result:
            raise LedgerRpcError(f"RPC error for {method}: {result['error']}")

        if "result" not in result:
            raise LedgerUnavailableError(f"Invalid RPC response for {method}: missing 'result' field")

        return result["result"]

    def get_raw_transaction(self, reference: str) -> Optional[Dict[str, Any]]:
        """Fetch a transaction object, or None if the node does not know it."""
        return self.call("eth_getTransactionByHash", [reference])

    def get_receipt(self, reference: str) -> Optional[Dict[str, Any]]:
        """Fetch a transaction receipt, or None while the transaction is unmined."""
        return self.call("eth_getTransactionReceipt", [reference])

    def get_chain_height(self) -> int:
        """
        Fetch the number of the latest block.

        Raises:
            LedgerUnavailableError: If the node returns no usable block number
        """
        result = self.call("eth_blockNumber", [])
        if not isinstance(result, str):
            raise LedgerUnavailableError(f"Invalid block number from node: {result!r}")
        try:
            return hex_to_int(result)
        except ValueError as e:
            raise LedgerUnavailableError(f"Invalid block number from node: {result!r}") from e

    def get_transaction(self, reference: str) -> Optional[TransactionFacts]:
        """
        Fetch the facts needed to judge a payment.

        Args:
            reference: 0x-prefixed transaction hash

        Returns:
            TransactionFacts, or None if the transaction is unknown or not yet mined

        Raises:
            LedgerError: If the node cannot be queried
        """
        tx = self.get_raw_transaction(reference)
        if tx is None:
            logger.info(f"Transaction {reference} not found on ledger")
            return None

        receipt = self.get_receipt(reference)
        if receipt is None or receipt.get("blockNumber") is None:
            logger.info(f"Transaction {reference} has no receipt yet (pending)")
            return None

        try:
            return TransactionFacts(
                reference=reference,
                succeeded=receipt.get("status") == RECEIPT_STATUS_SUCCESS,
                sender=tx["from"],
                recipient=tx.get("to"),
                amount=hex_to_int(tx.get("value")) or 0,
                block_height=hex_to_int(receipt["blockNumber"]),
                chain_id=hex_to_int(tx.get("chainId")),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise LedgerUnavailableError(f"Malformed transaction data for {reference}: {e}") from e
