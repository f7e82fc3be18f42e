#!/usr/bin/env python3
"""
MCP server for m-of-n multisig wallet coordination.

Wraps the wallet registry, transaction builder, signature collector and
broadcast tracker as MCP tools. Every response is a single JSON text item
with ``success`` set; errors also carry ``error_kind``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, Callable, List

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from multisig_broadcast import (
    broadcast_transaction,
    get_fee_rate_recommendations,
    get_transaction_status,
    health_check,
)
from multisig_config import MultisigConfig, MultisigContext
from multisig_errors import MultisigError, WalletNotFound
from multisig_signing import submit_signature
from multisig_transaction import (
    cancel_transaction,
    estimate_transaction_vsize,
    get_pending_transactions,
    get_unsigned_transaction,
    initiate_transaction,
)
from multisig_wallet import (
    create_multisig_wallet,
    get_transaction_history,
    get_wallet_balance,
    get_wallet_details,
)

logger = logging.getLogger(__name__)

app = Server("multisig_wallet")

_context: MultisigContext | None = None
_context_lock = threading.Lock()


def _get_context() -> MultisigContext:
    """One context per process: the lock registry must be shared by all calls."""
    global _context
    with _context_lock:
        if _context is None:
            _context = MultisigContext.from_config(MultisigConfig.from_env())
        return _context


def _ok_response(result: dict[str, Any]) -> List[TextContent]:
    payload = {"success": True, **result}
    return [TextContent(type="text", text=json.dumps(payload))]


def _error_response(message: str, kind: str = "InvalidParameter") -> List[TextContent]:
    payload = {"success": False, "error": message, "error_kind": kind}
    return [TextContent(type="text", text=json.dumps(payload))]


async def _run(func: Callable[..., dict[str, Any]], *args: Any, **kwargs: Any) -> List[TextContent]:
    try:
        ctx = await asyncio.to_thread(_get_context)
        result = await asyncio.to_thread(func, ctx, *args, **kwargs)
        return _ok_response(result)
    except MultisigError as exc:
        return [TextContent(type="text", text=json.dumps({"success": False, **exc.to_dict()}))]
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected error in %s", getattr(func, "__name__", func))
        return _error_response(str(exc), type(exc).__name__)


def _require_str(arguments: dict[str, Any], field: str) -> str | None:
    value = arguments.get(field)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

_WALLET_ID = {"type": "string", "description": "Wallet identifier."}
_TRANSACTION_ID = {"type": "string", "description": "Transaction identifier."}


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [
        Tool(
            name="multisig_create_wallet",
            description=(
                "Register an m-of-n P2WSH multisig wallet from participant public keys "
                "(compressed, hex). Returns the wallet ID, address and witness script."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "m": {"type": "integer", "description": "Required signatures."},
                    "n": {"type": "integer", "description": "Number of participants."},
                    "name": {"type": "string", "description": "Optional wallet name."},
                    "participants": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "public_key": {"type": "string"},
                                "user_id": {"type": "string"},
                            },
                            "required": ["public_key"],
                        },
                    },
                },
                "required": ["m", "n", "participants"],
            },
        ),
        Tool(
            name="multisig_get_wallet",
            description="Return the stored wallet descriptor, including participants.",
            inputSchema={
                "type": "object",
                "properties": {"wallet_id": _WALLET_ID},
                "required": ["wallet_id"],
            },
        ),
        Tool(
            name="multisig_get_balance",
            description="Return confirmed and unconfirmed balance (sats) of a wallet.",
            inputSchema={
                "type": "object",
                "properties": {"wallet_id": _WALLET_ID},
                "required": ["wallet_id"],
            },
        ),
        Tool(
            name="multisig_get_history",
            description="Return a page of the wallet address's transaction history.",
            inputSchema={
                "type": "object",
                "properties": {
                    "wallet_id": _WALLET_ID,
                    "page": {"type": "integer", "description": "Page number (default 1)."},
                },
                "required": ["wallet_id"],
            },
        ),
        Tool(
            name="multisig_estimate_vsize",
            description=(
                "Estimate the virtual size of spending all wallet UTXOs to a recipient "
                "plus a P2WSH change output."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "wallet_id": _WALLET_ID,
                    "recipient_address": {"type": "string"},
                },
                "required": ["wallet_id", "recipient_address"],
            },
        ),
        Tool(
            name="multisig_initiate_transaction",
            description=(
                "Build an unsigned spend from the wallet and store it as pending. "
                "Amount is in satoshis, fee_rate in sat/vB. "
                "Re-initiating a cancelled spend with identical amount and fee_rate is "
                "rejected as a duplicate."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "wallet_id": _WALLET_ID,
                    "recipient_address": {"type": "string"},
                    "amount": {"type": "integer", "description": "Amount in satoshis."},
                    "fee_rate": {"type": "number", "description": "Fee rate in sat/vB."},
                    "note": {"type": "string"},
                },
                "required": ["wallet_id", "recipient_address", "amount"],
            },
        ),
        Tool(
            name="multisig_get_unsigned_transaction",
            description="Return the per-input digests a co-signer must sign.",
            inputSchema={
                "type": "object",
                "properties": {"transaction_id": _TRANSACTION_ID},
                "required": ["transaction_id"],
            },
        ),
        Tool(
            name="multisig_submit_signature",
            description=(
                "Submit one co-signer's signatures, one hex signature per input in input "
                "order (64-byte compact or DER)."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "transaction_id": _TRANSACTION_ID,
                    "public_key": {"type": "string"},
                    "signatures": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["transaction_id", "public_key", "signatures"],
            },
        ),
        Tool(
            name="multisig_get_pending_transactions",
            description="List the wallet's transactions still collecting signatures.",
            inputSchema={
                "type": "object",
                "properties": {"wallet_id": _WALLET_ID},
                "required": ["wallet_id"],
            },
        ),
        Tool(
            name="multisig_cancel_transaction",
            description="Cancel a pending transaction.",
            inputSchema={
                "type": "object",
                "properties": {"transaction_id": _TRANSACTION_ID},
                "required": ["transaction_id"],
            },
        ),
        Tool(
            name="multisig_broadcast_transaction",
            description="Broadcast a fully signed transaction.",
            inputSchema={
                "type": "object",
                "properties": {"transaction_id": _TRANSACTION_ID},
                "required": ["transaction_id"],
            },
        ),
        Tool(
            name="multisig_get_transaction_status",
            description=(
                "Return a transaction's status, advancing broadcasted transactions to "
                "finished once confirmed."
            ),
            inputSchema={
                "type": "object",
                "properties": {"transaction_id": _TRANSACTION_ID},
                "required": ["transaction_id"],
            },
        ),
        Tool(
            name="multisig_get_fee_rates",
            description="Return fastest/normal/economical fee rates in sat/vB.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="multisig_health_check",
            description="Check connectivity to the Bitcoin node.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _handle_create_wallet(arguments: dict[str, Any]) -> List[TextContent]:
    return await _run(
        create_multisig_wallet,
        arguments.get("m"),
        arguments.get("n"),
        arguments.get("participants"),
        name=arguments.get("name"),
    )


async def _handle_get_wallet(arguments: dict[str, Any]) -> List[TextContent]:
    wallet_id = _require_str(arguments, "wallet_id")
    if not wallet_id:
        return _error_response("Missing wallet_id.")

    def _lookup(ctx: MultisigContext, wid: str) -> dict[str, Any]:
        wallet = get_wallet_details(ctx, wid)
        if wallet is None:
            raise WalletNotFound(f"Wallet not found: {wid}", wallet_id=wid)
        return {"wallet": wallet}

    return await _run(_lookup, wallet_id)


async def _handle_get_balance(arguments: dict[str, Any]) -> List[TextContent]:
    wallet_id = _require_str(arguments, "wallet_id")
    if not wallet_id:
        return _error_response("Missing wallet_id.")
    return await _run(get_wallet_balance, wallet_id)


async def _handle_get_history(arguments: dict[str, Any]) -> List[TextContent]:
    wallet_id = _require_str(arguments, "wallet_id")
    if not wallet_id:
        return _error_response("Missing wallet_id.")
    return await _run(get_transaction_history, wallet_id, page=arguments.get("page", 1))


async def _handle_estimate_vsize(arguments: dict[str, Any]) -> List[TextContent]:
    wallet_id = _require_str(arguments, "wallet_id")
    if not wallet_id:
        return _error_response("Missing wallet_id.")
    return await _run(estimate_transaction_vsize, wallet_id, arguments.get("recipient_address"))


async def _handle_initiate_transaction(arguments: dict[str, Any]) -> List[TextContent]:
    wallet_id = _require_str(arguments, "wallet_id")
    if not wallet_id:
        return _error_response("Missing wallet_id.")
    return await _run(
        initiate_transaction,
        wallet_id,
        arguments.get("recipient_address"),
        arguments.get("amount"),
        fee_rate=arguments.get("fee_rate"),
        note=arguments.get("note"),
    )


async def _handle_get_unsigned_transaction(arguments: dict[str, Any]) -> List[TextContent]:
    transaction_id = _require_str(arguments, "transaction_id")
    if not transaction_id:
        return _error_response("Missing transaction_id.")
    return await _run(get_unsigned_transaction, transaction_id)


async def _handle_submit_signature(arguments: dict[str, Any]) -> List[TextContent]:
    transaction_id = _require_str(arguments, "transaction_id")
    if not transaction_id:
        return _error_response("Missing transaction_id.")
    return await _run(
        submit_signature,
        transaction_id,
        arguments.get("public_key"),
        arguments.get("signatures"),
    )


async def _handle_get_pending_transactions(arguments: dict[str, Any]) -> List[TextContent]:
    wallet_id = _require_str(arguments, "wallet_id")
    if not wallet_id:
        return _error_response("Missing wallet_id.")
    return await _run(get_pending_transactions, wallet_id)


async def _handle_cancel_transaction(arguments: dict[str, Any]) -> List[TextContent]:
    transaction_id = _require_str(arguments, "transaction_id")
    if not transaction_id:
        return _error_response("Missing transaction_id.")
    return await _run(cancel_transaction, transaction_id)


async def _handle_broadcast_transaction(arguments: dict[str, Any]) -> List[TextContent]:
    transaction_id = _require_str(arguments, "transaction_id")
    if not transaction_id:
        return _error_response("Missing transaction_id.")
    return await _run(broadcast_transaction, transaction_id)


async def _handle_get_transaction_status(arguments: dict[str, Any]) -> List[TextContent]:
    transaction_id = _require_str(arguments, "transaction_id")
    if not transaction_id:
        return _error_response("Missing transaction_id.")
    return await _run(get_transaction_status, transaction_id)


async def _handle_get_fee_rates() -> List[TextContent]:
    return await _run(get_fee_rate_recommendations)


async def _handle_health_check() -> List[TextContent]:
    return await _run(health_check)


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        return _error_response("Invalid arguments. Expected an object.")

    if name == "multisig_create_wallet":
        return await _handle_create_wallet(arguments)
    if name == "multisig_get_wallet":
        return await _handle_get_wallet(arguments)
    if name == "multisig_get_balance":
        return await _handle_get_balance(arguments)
    if name == "multisig_get_history":
        return await _handle_get_history(arguments)
    if name == "multisig_estimate_vsize":
        return await _handle_estimate_vsize(arguments)
    if name == "multisig_initiate_transaction":
        return await _handle_initiate_transaction(arguments)
    if name == "multisig_get_unsigned_transaction":
        return await _handle_get_unsigned_transaction(arguments)
    if name == "multisig_submit_signature":
        return await _handle_submit_signature(arguments)
    if name == "multisig_get_pending_transactions":
        return await _handle_get_pending_transactions(arguments)
    if name == "multisig_cancel_transaction":
        return await _handle_cancel_transaction(arguments)
    if name == "multisig_broadcast_transaction":
        return await _handle_broadcast_transaction(arguments)
    if name == "multisig_get_transaction_status":
        return await _handle_get_transaction_status(arguments)
    if name == "multisig_get_fee_rates":
        return await _handle_get_fee_rates()
    if name == "multisig_health_check":
        return await _handle_health_check()

    return _error_response(f"Unknown tool: {name}", "UnknownTool")


async def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
