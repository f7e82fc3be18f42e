"""
Broadcast fully signed transactions and reconcile their confirmation status.
"""

from __future__ import annotations

import logging
import math
from typing import Any

from multisig_config import MultisigContext
from multisig_store import tx_key
from multisig_transaction import TransactionStatus, load_transaction, require_status
from multisig_wallet import utc_now

logger = logging.getLogger(__name__)

STATUS_FIELDS = (
    "transaction_id",
    "wallet_id",
    "status",
    "initiated_time",
    "tx_hash",
    "broadcast_time",
    "required_signatures",
    "signatures_received",
)


def broadcast_transaction(ctx: MultisigContext, transaction_id: str) -> dict[str, Any]:
    """Submit the signed transaction. Not retried; on failure nothing is written."""
    key = tx_key(transaction_id)
    with ctx.locks.hold(key):
        record = load_transaction(ctx, transaction_id)
        require_status(record, TransactionStatus.ALLSIGNED)
        tx_hash = ctx.chain.broadcast(record["signed_transaction"])
        record["tx_hash"] = tx_hash
        record["status"] = TransactionStatus.BROADCASTED.value
        record["broadcast_time"] = utc_now()
        ctx.store.put(key, record)

    logger.info("Broadcast transaction %s as %s", transaction_id, tx_hash)
    return {
        "transaction_id": transaction_id,
        "status": record["status"],
        "tx_hash": tx_hash,
        "broadcast_time": record["broadcast_time"],
        "message": "Transaction broadcasted successfully",
    }


def get_transaction_status(ctx: MultisigContext, transaction_id: str) -> dict[str, Any]:
    """
    Status projection of a transaction.

    A broadcasted transaction is advanced to ``finished`` once it has at
    least one confirmation. A failed confirmation check never fails the
    call: the persisted status is returned, with the failure message in
    ``status_check_error``.
    """
    record = load_transaction(ctx, transaction_id)
    confirmations = None
    status_check_error = None

    if record["status"] == TransactionStatus.BROADCASTED.value:
        try:
            confirmations = ctx.chain.get_confirmations(record["tx_hash"])
        except Exception as exc:  # noqa: BLE001
            logger.warning("Status check for %s failed: %s", transaction_id, exc)
            status_check_error = str(exc)

        if confirmations:
            key = tx_key(transaction_id)
            with ctx.locks.hold(key):
                record = load_transaction(ctx, transaction_id)
                if record["status"] == TransactionStatus.BROADCASTED.value:
                    record["status"] = TransactionStatus.FINISHED.value
                    record["finished_time"] = utc_now()
                    ctx.store.put(key, record)
                    logger.info(
                        "Transaction %s confirmed (%d confirmations)",
                        transaction_id,
                        confirmations,
                    )

    result = {field: record.get(field) for field in STATUS_FIELDS}
    result["confirmations"] = confirmations
    result["status_check_error"] = status_check_error
    return result


def get_fee_rate_recommendations(ctx: MultisigContext) -> dict[str, Any]:
    """Fee rates in sat/vB derived from the node's estimate for the configured target."""
    normal = math.ceil(ctx.chain.estimate_fee_rate(ctx.cfg.fee_target_blocks))
    return {
        "fastest": normal * 2,
        "normal": normal,
        "economical": max(1, math.floor(normal * 0.8)),
        "unit": "sat/vbyte",
        "last_updated": utc_now(),
    }


def health_check(ctx: MultisigContext) -> dict[str, Any]:
    try:
        blocks = ctx.chain.get_chain_height()
    except Exception as exc:  # noqa: BLE001
        logger.warning("Health check failed: %s", exc)
        return {"status": "error", "message": str(exc), "timestamp": utc_now()}
    return {"status": "ok", "blocks": blocks, "timestamp": utc_now()}
