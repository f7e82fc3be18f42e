"""
Transaction builder: assemble unsigned multisig spends and track them as
``pending`` records until signers contribute.
"""

from __future__ import annotations

import enum
import logging
import math
from typing import Any

from fee_estimator import estimate_payment_vsize
from multisig_config import MultisigContext
from multisig_errors import (
    DuplicateTransaction,
    InsufficientFunds,
    InvalidParameter,
    InvalidStateTransition,
    NoFundsAvailable,
    TransactionNotFound,
)
from multisig_store import TX_PREFIX, tx_key
from multisig_wallet import hash_id, load_wallet, utc_now
from script_engine import double_sha256

logger = logging.getLogger(__name__)


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    ALLSIGNED = "allsigned"
    BROADCASTED = "broadcasted"
    FINISHED = "finished"
    CANCELLED = "cancelled"


PRIVATE_TRANSACTION_FIELDS = ("psbt", "signatures")
SUMMARY_FIELDS = (
    "transaction_id",
    "recipient_address",
    "amount",
    "status",
    "required_signatures",
    "signatures_received",
    "initiated_time",
)


def public_view(record: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in record.items() if k not in PRIVATE_TRANSACTION_FIELDS}


def load_transaction(ctx: MultisigContext, transaction_id: str) -> dict[str, Any]:
    record = ctx.store.get(tx_key(transaction_id)) if transaction_id else None
    if record is None:
        raise TransactionNotFound(
            f"Transaction not found: {transaction_id}", transaction_id=transaction_id
        )
    return record


def require_status(record: dict[str, Any], expected: TransactionStatus) -> None:
    if record["status"] != expected.value:
        raise InvalidStateTransition(
            f"Transaction {record['transaction_id']} is {record['status']}, "
            f"expected {expected.value}.",
            current=record["status"],
            expected=expected.value,
        )


def _wallet_pubkeys(wallet: dict[str, Any]) -> list[bytes]:
    return [bytes.fromhex(p["public_key"]) for p in wallet["participants"]]


def _validate_fee_rate(ctx: MultisigContext, fee_rate: Any) -> float:
    if fee_rate is None:
        return ctx.cfg.default_fee_rate
    if isinstance(fee_rate, bool) or not isinstance(fee_rate, (int, float)):
        raise InvalidParameter(f"Invalid fee_rate: {fee_rate!r}. Must be a number.", field="fee_rate")
    if not math.isfinite(fee_rate) or fee_rate <= 0:
        raise InvalidParameter(
            f"Invalid fee_rate: {fee_rate!r}. Must be greater than zero.", field="fee_rate"
        )
    return float(fee_rate)


def initiate_transaction(
    ctx: MultisigContext,
    wallet_id: str,
    recipient_address: Any,
    amount: Any,
    fee_rate: Any = None,
    note: str | None = None,
) -> dict[str, Any]:
    """
    Build an unsigned spend of every confirmed wallet UTXO to one recipient.

    The fee is ``ceil(vsize * fee_rate)`` where vsize covers all inputs, the
    recipient output and a provisional P2WSH change output. Change is only
    added when something is left over. Nothing is written on failure.
    """
    if not isinstance(recipient_address, str) or not recipient_address.strip():
        raise InvalidParameter("Missing recipient_address.", field="recipient_address")
    recipient_address = recipient_address.strip()
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidParameter(
            f"Invalid amount: {amount!r}. Must be a positive integer (satoshis).",
            field="amount",
        )
    rate = _validate_fee_rate(ctx, fee_rate)

    wallet = load_wallet(ctx, wallet_id)
    recipient_type = ctx.engine.classify_address_script_type(recipient_address)

    utxos = ctx.chain.get_unspent_outputs(wallet["address"])
    if not utxos:
        raise NoFundsAvailable(
            f"No confirmed UTXOs for wallet {wallet_id}.", wallet_id=wallet_id
        )

    artifact = ctx.engine.new_unsigned_multisig(wallet["m"], _wallet_pubkeys(wallet))
    total_input = 0
    for utxo in utxos:
        ctx.engine.add_input(artifact, utxo)
        total_input += int(utxo["satoshis"])

    vsize = estimate_payment_vsize(wallet["m"], wallet["n"], len(utxos), recipient_type)
    fee = math.ceil(vsize * rate)
    if total_input < amount + fee:
        raise InsufficientFunds(
            f"Insufficient funds: available {total_input} sats, "
            f"required {amount + fee} sats (amount {amount} + fee {fee}).",
            available=total_input,
            required=amount + fee,
        )

    ctx.engine.add_output(artifact, recipient_address, amount)
    change = total_input - amount - fee
    if change > 0:
        ctx.engine.add_output(artifact, wallet["address"], change)

    psbt = ctx.engine.serialize(artifact)
    transaction_id = hash_id(psbt)
    key = tx_key(transaction_id)

    with ctx.locks.hold(key):
        existing = ctx.store.get(key)
        if existing is not None:
            message = f"Transaction {transaction_id} already exists."
            if existing["status"] == TransactionStatus.CANCELLED.value:
                message = (
                    f"A cancelled transaction with the same inputs and outputs exists "
                    f"({transaction_id}); change fee_rate or amount to build a new one."
                )
            raise DuplicateTransaction(
                message, transaction_id=transaction_id, status=existing["status"]
            )
        record = {
            "transaction_id": transaction_id,
            "wallet_id": wallet_id,
            "recipient_address": recipient_address,
            "amount": amount,
            "note": note,
            "status": TransactionStatus.PENDING.value,
            "psbt": psbt.hex(),
            "input_count": len(utxos),
            "required_signatures": wallet["m"],
            "signatures": {},
            "signatures_received": 0,
            "signed_transaction": None,
            "tx_hash": None,
            "fee": fee,
            "change_amount": max(change, 0),
            "fee_rate": rate,
            "initiated_time": utc_now(),
            "broadcast_time": None,
            "finished_time": None,
            "cancelled_time": None,
        }
        ctx.store.put(key, record)

    logger.info(
        "Initiated transaction %s from wallet %s: %d sats to %s, fee %d, %d inputs",
        transaction_id,
        wallet_id,
        amount,
        recipient_address,
        fee,
        len(utxos),
    )
    return public_view(record)


def get_unsigned_transaction(ctx: MultisigContext, transaction_id: str) -> dict[str, Any]:
    """Per-input double-SHA256 digests signers must sign, in input order."""
    record = load_transaction(ctx, transaction_id)
    artifact = ctx.engine.deserialize(bytes.fromhex(record["psbt"]))
    digests = [
        double_sha256(ctx.engine.signable_data(artifact, index)).hex()
        for index in range(record["input_count"])
    ]
    return {"transaction_id": transaction_id, "unsigned_transactions": digests}


def get_pending_transactions(ctx: MultisigContext, wallet_id: str) -> dict[str, Any]:
    load_wallet(ctx, wallet_id)
    pending = [
        {field: record.get(field) for field in SUMMARY_FIELDS}
        for _, record in ctx.store.iterate(TX_PREFIX)
        if record.get("wallet_id") == wallet_id
        and record.get("status") == TransactionStatus.PENDING.value
    ]
    return {"wallet_id": wallet_id, "pending_transactions": pending}


def cancel_transaction(ctx: MultisigContext, transaction_id: str) -> dict[str, Any]:
    with ctx.locks.hold(tx_key(transaction_id)):
        record = load_transaction(ctx, transaction_id)
        require_status(record, TransactionStatus.PENDING)
        record["status"] = TransactionStatus.CANCELLED.value
        record["cancelled_time"] = utc_now()
        ctx.store.put(tx_key(transaction_id), record)
    logger.info("Cancelled transaction %s", transaction_id)
    return {"transaction_id": transaction_id, "status": record["status"]}


def estimate_transaction_vsize(
    ctx: MultisigContext, wallet_id: str, recipient_address: Any
) -> dict[str, Any]:
    """Virtual size of spending all current wallet UTXOs to ``recipient_address``."""
    if not isinstance(recipient_address, str) or not recipient_address.strip():
        raise InvalidParameter("Missing recipient_address.", field="recipient_address")
    wallet = load_wallet(ctx, wallet_id)
    recipient_type = ctx.engine.classify_address_script_type(recipient_address.strip())
    utxos = ctx.chain.get_unspent_outputs(wallet["address"])
    if not utxos:
        raise NoFundsAvailable(
            f"No confirmed UTXOs for wallet {wallet_id}.", wallet_id=wallet_id
        )
    return {
        "wallet_id": wallet_id,
        "recipient_script_type": recipient_type,
        "input_count": len(utxos),
        "vsize": estimate_payment_vsize(wallet["m"], wallet["n"], len(utxos), recipient_type),
    }
