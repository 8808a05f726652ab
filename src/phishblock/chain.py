"""Ledger clients and the chain anchorer.

A report is anchored by calling ``anchor(bytes32 _hash, string postId)`` on
the anchoring contract, where ``_hash`` is keccak-256 of the report id. The
same report always anchors to the same on-chain reference.
"""

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

import requests
from pydantic import BaseModel
from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception

from .config import PhishBlockConfig
from .models.anchoring import AnchorReceipt, TransactionInspection

logger = logging.getLogger(__name__)

ANCHOR_ABI = [
    {
        "inputs": [
            {"internalType": "bytes32", "name": "_hash", "type": "bytes32"},
            {"internalType": "string", "name": "postId", "type": "string"},
        ],
        "name": "anchor",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    }
]


class ChainAnchorError(RuntimeError):
    """Ledger submission or confirmation failed.

    ``tx_hash`` is set when a transaction was submitted but its outcome is
    unknown (e.g. the confirmation wait timed out). ``reverted`` is set when
    the network confirmed the transaction as failed.
    """

    def __init__(self, message: str, tx_hash: Optional[str] = None, reverted: bool = False):
        super().__init__(message)
        self.tx_hash = tx_hash
        self.reverted = reverted


class LedgerReceipt(BaseModel):
    block_number: int
    confirmations: int = 1

    model_config = {"frozen": True}


def anchor_reference(report_id: str) -> bytes:
    """Deterministic 32-byte on-chain reference for a report id."""
    return bytes(Web3.keccak(text=report_id))


class LedgerClient(ABC):
    """Abstract interface for the public ledger."""

    @abstractmethod
    def submit(self, reference: bytes, aux_id: str) -> str:
        """Submit an anchor transaction; returns the transaction hash.

        Raises:
            ChainAnchorError: If the transaction could not be submitted
        """
        pass

    @abstractmethod
    def await_confirmation(self, tx_hash: str, timeout: float) -> LedgerReceipt:
        """Block until ``tx_hash`` is mined.

        Raises:
            ChainAnchorError: On timeout (``tx_hash`` set) or revert (``reverted`` set)
        """
        pass

    @abstractmethod
    def inspect_transaction(self, tx_hash: str) -> TransactionInspection:
        """Fetch and decode an anchor transaction."""
        pass

    @property
    @abstractmethod
    def engine_name(self) -> str:
        """Return engine identifier (e.g., 'fake', 'web3')."""
        pass


class Web3LedgerClient(LedgerClient):
    """EVM ledger client using web3.py with a locally held signing key."""

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        contract_address: str,
        request_timeout: float = 30.0,
        poll_latency: float = 2.0,
    ):
        if not rpc_url:
            raise ValueError("BLOCKCHAIN_RPC not set")
        if not contract_address:
            raise ValueError("BLOCKCHAIN_CONTRACT_ADDRESS not set")
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=ANCHOR_ABI,
        )
        self._private_key = private_key
        self.poll_latency = poll_latency

    @property
    def engine_name(self) -> str:
        return "web3"

    def submit(self, reference: bytes, aux_id: str) -> str:
        if not self._private_key:
            raise ChainAnchorError("BLOCKCHAIN_PRIVATE_KEY not set")
        try:
            account = self.w3.eth.account.from_key(self._private_key)
            tx = self.contract.functions.anchor(reference, aux_id).build_transaction(
                {
                    "from": account.address,
                    "nonce": self.w3.eth.get_transaction_count(account.address, "pending"),
                    "chainId": self.w3.eth.chain_id,
                }
            )
            signed = account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except (Web3Exception, ValueError, requests.RequestException) as e:
            raise ChainAnchorError(f"Anchor submission failed: {e}") from e
        return Web3.to_hex(tx_hash)

    def await_confirmation(self, tx_hash: str, timeout: float) -> LedgerReceipt:
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=self.poll_latency
            )
        except TimeExhausted as e:
            raise ChainAnchorError(
                f"Transaction {tx_hash} not confirmed within {timeout:.0f}s", tx_hash=tx_hash
            ) from e
        except (Web3Exception, ValueError, requests.RequestException) as e:
            raise ChainAnchorError(f"Confirmation wait failed: {e}", tx_hash=tx_hash) from e

        if receipt["status"] != 1:
            raise ChainAnchorError(f"Transaction {tx_hash} reverted", tx_hash=tx_hash, reverted=True)

        block_number = int(receipt["blockNumber"])
        try:
            confirmations = max(1, int(self.w3.eth.block_number) - block_number + 1)
        except (Web3Exception, requests.RequestException):
            confirmations = 1
        return LedgerReceipt(block_number=block_number, confirmations=confirmations)

    def inspect_transaction(self, tx_hash: str) -> TransactionInspection:
        tx = self.w3.eth.get_transaction(tx_hash)
        receipt = self.w3.eth.get_transaction_receipt(tx_hash)

        reference_hex = None
        report_id = None
        matches = False
        try:
            _func, params = self.contract.decode_function_input(tx["input"])
            reference = bytes(params["_hash"])
            report_id = str(params["postId"])
            reference_hex = Web3.to_hex(reference)
            matches = reference == anchor_reference(report_id)
        except ValueError as e:
            logger.warning(f"Could not decode input of {tx_hash} as anchor(...): {e}")

        return TransactionInspection(
            tx_hash=tx_hash,
            from_address=tx.get("from"),
            to_address=tx.get("to"),
            block_number=receipt.get("blockNumber"),
            status=receipt.get("status"),
            reference=reference_hex,
            report_id=report_id,
            reference_matches=matches,
        )


class FakeLedgerClient(LedgerClient):
    """Deterministic in-memory ledger for testing and dry runs.

    Transaction hashes are derived from (reference, aux_id, sequence), so the
    same submissions in the same order always yield the same hashes.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.submissions: list[tuple[bytes, str]] = []
        self.transactions: dict[str, dict] = {}
        self.block_number = 1000
        self.fail_submit: Optional[Exception] = None
        self.fail_confirm: Optional[Exception] = None

    @property
    def engine_name(self) -> str:
        return "fake"

    def submit(self, reference: bytes, aux_id: str) -> str:
        if self.fail_submit is not None:
            raise self.fail_submit
        with self._lock:
            self.submissions.append((reference, aux_id))
            seq = len(self.submissions)
            digest = hashlib.sha256(reference + aux_id.encode("utf-8") + str(seq).encode()).hexdigest()
            tx_hash = "0x" + digest
            self.block_number += 1
            self.transactions[tx_hash] = {
                "reference": reference,
                "report_id": aux_id,
                "block_number": self.block_number,
                "status": 1,
            }
        return tx_hash

    def await_confirmation(self, tx_hash: str, timeout: float) -> LedgerReceipt:
        if self.fail_confirm is not None:
            raise self.fail_confirm
        tx = self.transactions.get(tx_hash)
        if tx is None:
            raise ChainAnchorError(f"Transaction {tx_hash} not confirmed within {timeout:.0f}s", tx_hash=tx_hash)
        if tx["status"] != 1:
            raise ChainAnchorError(f"Transaction {tx_hash} reverted", tx_hash=tx_hash, reverted=True)
        return LedgerReceipt(block_number=tx["block_number"], confirmations=1)

    def inspect_transaction(self, tx_hash: str) -> TransactionInspection:
        tx = self.transactions.get(tx_hash)
        if tx is None:
            return TransactionInspection(tx_hash=tx_hash)
        return TransactionInspection(
            tx_hash=tx_hash,
            block_number=tx["block_number"],
            status=tx["status"],
            reference="0x" + tx["reference"].hex(),
            report_id=tx["report_id"],
            reference_matches=tx["reference"] == anchor_reference(tx["report_id"]),
        )


class ChainAnchorer:
    """Submits a report's anchor transaction and waits for confirmation."""

    def __init__(
        self,
        client: LedgerClient,
        explorer_tx_url: str = "https://amoy.polygonscan.com/tx/{tx}",
        confirm_timeout: float = 120.0,
    ):
        self.client = client
        self.explorer_tx_url = explorer_tx_url
        self.confirm_timeout = confirm_timeout

    def tx_url(self, tx_hash: str) -> str:
        return self.explorer_tx_url.format(tx=tx_hash)

    def anchor(self, report_id: str, pending_tx: Optional[str] = None) -> AnchorReceipt:
        """Anchor ``report_id`` and block until confirmed.

        If ``pending_tx`` names an earlier submission whose outcome was never
        observed, that transaction is awaited instead of submitting a new
        one; a fresh transaction is sent only if it is known to have reverted.

        Raises:
            ChainAnchorError: If the anchor is not confirmed
        """
        if pending_tx:
            logger.info(f"Awaiting earlier anchor tx {pending_tx} for {report_id}")
            try:
                return self._confirm(pending_tx)
            except ChainAnchorError as e:
                if not e.reverted:
                    raise
                logger.warning(f"Earlier anchor tx {pending_tx} reverted; submitting a new one")

        reference = anchor_reference(report_id)
        logger.info(f"Submitting anchor for {report_id} via {self.client.engine_name}")
        tx_hash = self.client.submit(reference, report_id)
        logger.info(f"Anchor tx {tx_hash} submitted for {report_id}; awaiting confirmation")
        return self._confirm(tx_hash)

    def _confirm(self, tx_hash: str) -> AnchorReceipt:
        try:
            receipt = self.client.await_confirmation(tx_hash, self.confirm_timeout)
        except ChainAnchorError:
            raise
        except Exception as e:
            # Submitted but outcome unknown; keep the hash so it is never re-sent
            raise ChainAnchorError(f"Confirmation of {tx_hash} failed: {e}", tx_hash=tx_hash) from e
        return AnchorReceipt(
            tx_hash=tx_hash,
            tx_url=self.tx_url(tx_hash),
            block_number=receipt.block_number,
            confirmations=receipt.confirmations,
        )


def get_ledger_client(config: PhishBlockConfig, engine: str = "auto") -> LedgerClient:
    """Get the ledger client for ``engine``.

    Args:
        config: Loaded configuration
        engine: 'fake', 'web3', or 'auto' ('auto' requires BLOCKCHAIN_RPC)
    """
    if engine == "fake":
        return FakeLedgerClient()

    if engine in ("web3", "auto"):
        if not config.chain.rpc_url:
            raise ValueError("BLOCKCHAIN_RPC not set (use --engine fake for a dry run)")
        return Web3LedgerClient(
            rpc_url=config.chain.rpc_url,
            private_key=config.chain.private_key,
            contract_address=config.chain.contract_address,
        )

    raise ValueError(f"Unknown ledger engine: {engine}")
