"""Tests for ledger clients and the chain anchorer."""

from unittest.mock import Mock

import pytest
from web3 import Web3
from web3.exceptions import TimeExhausted

from phishblock.chain import (
    ChainAnchorer,
    ChainAnchorError,
    FakeLedgerClient,
    Web3LedgerClient,
    anchor_reference,
    get_ledger_client,
)
from phishblock.config import ChainConfig, PhishBlockConfig

CONTRACT = "0x" + "11" * 20


def test_anchor_reference_is_keccak_of_report_id():
    reference = anchor_reference("post123")

    assert len(reference) == 32
    assert reference == bytes(Web3.keccak(text="post123"))
    assert reference == anchor_reference("post123")
    assert reference != anchor_reference("post124")


def test_fake_ledger_records_submission():
    ledger = FakeLedgerClient()
    anchorer = ChainAnchorer(ledger, explorer_tx_url="https://explorer.test/tx/{tx}")

    receipt = anchorer.anchor("post123")

    assert ledger.submissions == [(anchor_reference("post123"), "post123")]
    assert receipt.tx_hash.startswith("0x")
    assert receipt.tx_url == f"https://explorer.test/tx/{receipt.tx_hash}"
    assert receipt.block_number == 1001


def test_fake_ledger_hashes_are_deterministic():
    first, second = FakeLedgerClient(), FakeLedgerClient()
    assert first.submit(b"\x00" * 32, "a") == second.submit(b"\x00" * 32, "a")


def test_fake_ledger_inspection_verifies_reference():
    ledger = FakeLedgerClient()
    tx_hash = ledger.submit(anchor_reference("post123"), "post123")

    info = ledger.inspect_transaction(tx_hash)

    assert info.report_id == "post123"
    assert info.reference_matches is True
    assert ledger.inspect_transaction("0xunknown").report_id is None


def test_anchor_awaits_pending_tx_instead_of_resubmitting():
    """Test that an earlier unconfirmed submission is awaited, not duplicated."""
    ledger = FakeLedgerClient()
    pending = ledger.submit(anchor_reference("post123"), "post123")
    anchorer = ChainAnchorer(ledger)

    receipt = anchorer.anchor("post123", pending_tx=pending)

    assert receipt.tx_hash == pending
    assert len(ledger.submissions) == 1


def test_anchor_resubmits_when_pending_tx_reverted():
    ledger = FakeLedgerClient()
    pending = ledger.submit(anchor_reference("post123"), "post123")
    ledger.transactions[pending]["status"] = 0
    anchorer = ChainAnchorer(ledger)

    receipt = anchorer.anchor("post123", pending_tx=pending)

    assert receipt.tx_hash != pending
    assert len(ledger.submissions) == 2


def test_anchor_propagates_unknown_pending_outcome():
    ledger = FakeLedgerClient()
    anchorer = ChainAnchorer(ledger)

    with pytest.raises(ChainAnchorError) as exc_info:
        anchorer.anchor("post123", pending_tx="0xdeadbeef")

    assert exc_info.value.tx_hash == "0xdeadbeef"
    assert exc_info.value.reverted is False
    assert ledger.submissions == []


def test_anchor_wraps_unexpected_confirmation_error():
    """Test that a transport error after submission still carries the tx hash."""
    ledger = FakeLedgerClient()
    ledger.fail_confirm = TimeoutError("read timed out")
    anchorer = ChainAnchorer(ledger)

    with pytest.raises(ChainAnchorError) as exc_info:
        anchorer.anchor("post123")

    submitted = next(iter(ledger.transactions))
    assert exc_info.value.tx_hash == submitted
    assert exc_info.value.reverted is False
    assert "read timed out" in str(exc_info.value)


@pytest.fixture
def web3_client():
    client = Web3LedgerClient(
        rpc_url="http://127.0.0.1:8545",
        private_key="0x" + "22" * 32,
        contract_address=CONTRACT,
    )
    client.w3 = Mock()
    client.contract = Mock()
    return client


def test_web3_client_requires_rpc_and_contract():
    with pytest.raises(ValueError, match="BLOCKCHAIN_RPC"):
        Web3LedgerClient(rpc_url="", private_key="k", contract_address=CONTRACT)
    with pytest.raises(ValueError, match="BLOCKCHAIN_CONTRACT_ADDRESS"):
        Web3LedgerClient(rpc_url="http://127.0.0.1:8545", private_key="k", contract_address="")


def test_web3_submit_signs_and_sends(web3_client):
    account = Mock(address="0xabc")
    web3_client.w3.eth.account.from_key.return_value = account
    web3_client.w3.eth.get_transaction_count.return_value = 7
    web3_client.w3.eth.chain_id = 80002
    web3_client.w3.eth.send_raw_transaction.return_value = b"\x12" * 32
    build = web3_client.contract.functions.anchor.return_value.build_transaction
    build.return_value = {"to": CONTRACT}

    tx_hash = web3_client.submit(anchor_reference("post123"), "post123")

    assert tx_hash == "0x" + "12" * 32
    web3_client.contract.functions.anchor.assert_called_once_with(anchor_reference("post123"), "post123")
    assert build.call_args[0][0]["nonce"] == 7
    account.sign_transaction.assert_called_once_with({"to": CONTRACT})


def test_web3_submit_without_key_fails(web3_client):
    web3_client._private_key = ""
    with pytest.raises(ChainAnchorError, match="BLOCKCHAIN_PRIVATE_KEY"):
        web3_client.submit(b"\x00" * 32, "post123")


def test_web3_submit_wraps_rpc_errors(web3_client):
    web3_client.w3.eth.account.from_key.side_effect = ValueError("bad key")

    with pytest.raises(ChainAnchorError, match="bad key") as exc_info:
        web3_client.submit(b"\x00" * 32, "post123")

    assert exc_info.value.tx_hash is None


def test_web3_confirmation_timeout_keeps_tx_hash(web3_client):
    web3_client.w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("slow")

    with pytest.raises(ChainAnchorError) as exc_info:
        web3_client.await_confirmation("0xabc", timeout=5)

    assert exc_info.value.tx_hash == "0xabc"
    assert exc_info.value.reverted is False


def test_web3_confirmation_reverted(web3_client):
    web3_client.w3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 10}

    with pytest.raises(ChainAnchorError) as exc_info:
        web3_client.await_confirmation("0xabc", timeout=5)

    assert exc_info.value.reverted is True


def test_web3_confirmation_counts_blocks(web3_client):
    web3_client.w3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "blockNumber": 10}
    web3_client.w3.eth.block_number = 12

    receipt = web3_client.await_confirmation("0xabc", timeout=5)

    assert receipt.block_number == 10
    assert receipt.confirmations == 3


def test_web3_inspect_decodes_anchor_call(web3_client):
    web3_client.w3.eth.get_transaction.return_value = {"from": "0xsender", "to": CONTRACT, "input": "0x1234"}
    web3_client.w3.eth.get_transaction_receipt.return_value = {"blockNumber": 42, "status": 1}
    web3_client.contract.decode_function_input.return_value = (
        Mock(),
        {"_hash": anchor_reference("post123"), "postId": "post123"},
    )

    info = web3_client.inspect_transaction("0xabc")

    assert info.report_id == "post123"
    assert info.reference == Web3.to_hex(anchor_reference("post123"))
    assert info.reference_matches is True
    assert info.block_number == 42


def test_web3_inspect_flags_mismatched_reference(web3_client):
    web3_client.w3.eth.get_transaction.return_value = {"from": "0xsender", "to": CONTRACT, "input": "0x1234"}
    web3_client.w3.eth.get_transaction_receipt.return_value = {"blockNumber": 42, "status": 1}
    web3_client.contract.decode_function_input.return_value = (
        Mock(),
        {"_hash": anchor_reference("other"), "postId": "post123"},
    )

    assert web3_client.inspect_transaction("0xabc").reference_matches is False


def test_get_ledger_client_fake():
    assert get_ledger_client(PhishBlockConfig(), engine="fake").engine_name == "fake"


def test_get_ledger_client_auto_requires_rpc():
    """Test that missing credentials fail loudly instead of faking an anchor."""
    with pytest.raises(ValueError, match="BLOCKCHAIN_RPC"):
        get_ledger_client(PhishBlockConfig(), engine="auto")


def test_get_ledger_client_web3():
    config = PhishBlockConfig(chain=ChainConfig(rpc_url="http://127.0.0.1:8545", contract_address=CONTRACT))
    assert get_ledger_client(config, engine="auto").engine_name == "web3"


def test_get_ledger_client_unknown_engine():
    with pytest.raises(ValueError, match="Unknown ledger engine"):
        get_ledger_client(PhishBlockConfig(), engine="solana")
