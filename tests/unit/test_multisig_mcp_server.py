import asyncio
import json

import pytest

import multisig_mcp_server as server
from conftest import P2WPKH_ADDRESS, participants_for, sign_digests
from multisig_errors import UpstreamUnavailable


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def use_test_context(monkeypatch, ctx):
    monkeypatch.setattr(server, "_get_context", lambda: ctx)


def _parse(response):
    return json.loads(response[0].text)


def _call(name, arguments=None):
    return _parse(asyncio.run(server.call_tool(name, arguments or {})))


def _create_wallet(signer_keys, m=2, n=3):
    return _call(
        "multisig_create_wallet",
        {"m": m, "n": n, "name": "Ops", "participants": participants_for(signer_keys[:n])},
    )


# ---------------------------------------------------------------------------
# Tool list
# ---------------------------------------------------------------------------


def test_list_tools_includes_all_multisig_tools():
    tools = asyncio.run(server.list_tools())
    names = {tool.name for tool in tools}
    assert names == {
        "multisig_create_wallet",
        "multisig_get_wallet",
        "multisig_get_balance",
        "multisig_get_history",
        "multisig_estimate_vsize",
        "multisig_initiate_transaction",
        "multisig_get_unsigned_transaction",
        "multisig_submit_signature",
        "multisig_get_pending_transactions",
        "multisig_cancel_transaction",
        "multisig_broadcast_transaction",
        "multisig_get_transaction_status",
        "multisig_get_fee_rates",
        "multisig_health_check",
    }


def test_unknown_tool():
    data = _call("multisig_nope")
    assert data["success"] is False
    assert data["error_kind"] == "UnknownTool"


def test_non_object_arguments_rejected():
    data = _parse(asyncio.run(server.call_tool("multisig_get_wallet", ["x"])))
    assert data["success"] is False
    assert "Expected an object" in data["error"]


# ---------------------------------------------------------------------------
# Wallet tools
# ---------------------------------------------------------------------------


def test_create_and_get_wallet(signer_keys):
    created = _create_wallet(signer_keys)
    assert created["success"] is True
    assert created["address"].startswith("tb1q")

    fetched = _call("multisig_get_wallet", {"wallet_id": created["wallet_id"]})
    assert fetched["success"] is True
    assert fetched["wallet"]["name"] == "Ops"
    assert len(fetched["wallet"]["participants"]) == 3


def test_create_wallet_error_kind(signer_keys):
    data = _call(
        "multisig_create_wallet",
        {"m": 4, "n": 3, "participants": participants_for(signer_keys[:3])},
    )
    assert data == {
        "success": False,
        "error": data["error"],
        "error_kind": "InvalidThreshold",
        "context": {"m": 4, "n": 3},
    }


def test_get_wallet_missing():
    assert _call("multisig_get_wallet", {"wallet_id": "nope"})["error_kind"] == "WalletNotFound"
    data = _call("multisig_get_wallet", {})
    assert data["success"] is False
    assert "wallet_id" in data["error"]


def test_balance_and_history(chain, signer_keys):
    wallet = _create_wallet(signer_keys)
    chain.balances[wallet["address"]] = {"confirmed": 42, "unconfirmed": 0}

    balance = _call("multisig_get_balance", {"wallet_id": wallet["wallet_id"]})
    assert balance["confirmed_balance"] == 42

    history = _call("multisig_get_history", {"wallet_id": wallet["wallet_id"]})
    assert history["success"] is True
    assert history["page"] == 1
    assert history["transactions"] == []


# ---------------------------------------------------------------------------
# Transaction flow through the tools
# ---------------------------------------------------------------------------


def test_full_flow_through_tools(chain, signer_keys):
    wallet = _create_wallet(signer_keys)
    chain.fund(wallet["address"], 250_000)

    estimate = _call(
        "multisig_estimate_vsize",
        {"wallet_id": wallet["wallet_id"], "recipient_address": P2WPKH_ADDRESS},
    )
    assert estimate["vsize"] == 189

    tx = _call(
        "multisig_initiate_transaction",
        {
            "wallet_id": wallet["wallet_id"],
            "recipient_address": P2WPKH_ADDRESS,
            "amount": 500,
            "fee_rate": 3,
            "note": "rent",
        },
    )
    assert tx["success"] is True
    assert tx["fee"] == 567
    tid = tx["transaction_id"]

    pending = _call("multisig_get_pending_transactions", {"wallet_id": wallet["wallet_id"]})
    assert [p["transaction_id"] for p in pending["pending_transactions"]] == [tid]

    digests = _call("multisig_get_unsigned_transaction", {"transaction_id": tid})[
        "unsigned_transactions"
    ]
    for key in signer_keys[:2]:
        result = _call(
            "multisig_submit_signature",
            {
                "transaction_id": tid,
                "public_key": key.public_key.format(compressed=True).hex(),
                "signatures": sign_digests(key, digests),
            },
        )
        assert result["success"] is True
    assert result["status"] == "allsigned"

    broadcast = _call("multisig_broadcast_transaction", {"transaction_id": tid})
    assert broadcast["status"] == "broadcasted"

    chain.confirmations[broadcast["tx_hash"]] = 6
    status = _call("multisig_get_transaction_status", {"transaction_id": tid})
    assert status["status"] == "finished"
    assert status["confirmations"] == 6


def test_cancel_and_state_errors(chain, signer_keys):
    wallet = _create_wallet(signer_keys)
    chain.fund(wallet["address"], 250_000)
    tx = _call(
        "multisig_initiate_transaction",
        {"wallet_id": wallet["wallet_id"], "recipient_address": P2WPKH_ADDRESS, "amount": 500},
    )
    tid = tx["transaction_id"]

    assert _call("multisig_broadcast_transaction", {"transaction_id": tid})["error_kind"] == (
        "InvalidStateTransition"
    )
    assert _call("multisig_cancel_transaction", {"transaction_id": tid})["status"] == "cancelled"
    again = _call("multisig_cancel_transaction", {"transaction_id": tid})
    assert again["error_kind"] == "InvalidStateTransition"
    assert again["context"] == {"current": "cancelled", "expected": "pending"}


def test_submit_signature_errors(chain, signer_keys):
    wallet = _create_wallet(signer_keys)
    chain.fund(wallet["address"], 250_000)
    tx = _call(
        "multisig_initiate_transaction",
        {"wallet_id": wallet["wallet_id"], "recipient_address": P2WPKH_ADDRESS, "amount": 500},
    )
    outsider = signer_keys[4].public_key.format(compressed=True).hex()
    data = _call(
        "multisig_submit_signature",
        {"transaction_id": tx["transaction_id"], "public_key": outsider, "signatures": ["00"]},
    )
    assert data["error_kind"] == "UnknownSigner"

    data = _call("multisig_submit_signature", {"public_key": outsider, "signatures": ["00"]})
    assert "transaction_id" in data["error"]


def test_initiate_insufficient_funds(chain, signer_keys):
    wallet = _create_wallet(signer_keys)
    chain.fund(wallet["address"], 600)
    data = _call(
        "multisig_initiate_transaction",
        {"wallet_id": wallet["wallet_id"], "recipient_address": P2WPKH_ADDRESS, "amount": 500},
    )
    assert data["success"] is False
    assert data["error_kind"] == "InsufficientFunds"
    assert data["context"] == {"available": 600, "required": 689}


# ---------------------------------------------------------------------------
# Node tools
# ---------------------------------------------------------------------------


def test_fee_rates_and_health(chain):
    chain.fee_rate = 4.2
    rates = _call("multisig_get_fee_rates")
    assert rates["success"] is True
    assert rates["normal"] == 5

    health = _call("multisig_health_check")
    assert health["success"] is True
    assert health["status"] == "ok"


def test_upstream_failure_maps_to_error_kind(chain, monkeypatch):
    def _down(target_blocks):
        raise UpstreamUnavailable("node unreachable", endpoint="fake")

    monkeypatch.setattr(chain, "estimate_fee_rate", _down)
    data = _call("multisig_get_fee_rates")
    assert data == {
        "success": False,
        "error": "node unreachable",
        "error_kind": "UpstreamUnavailable",
        "context": {"endpoint": "fake"},
    }
