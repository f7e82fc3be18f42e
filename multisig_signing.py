"""
Signature collector.

State machine::

    pending -> allsigned -> broadcasted -> finished
    pending -> cancelled

``submit_signature`` is the only path into ``allsigned`` and the only place a
signed transaction is produced.
"""

from __future__ import annotations

import logging
from typing import Any

from multisig_config import MultisigContext
from multisig_errors import DuplicateSigner, InvalidParameter, UnknownSigner
from multisig_store import tx_key
from multisig_transaction import TransactionStatus, load_transaction, require_status
from multisig_wallet import load_wallet

logger = logging.getLogger(__name__)


def _decode_signatures(signatures: Any, input_count: int) -> list[bytes]:
    if not isinstance(signatures, list) or not signatures:
        raise InvalidParameter("signatures must be a non-empty list.", field="signatures")
    if len(signatures) != input_count:
        raise InvalidParameter(
            f"Expected {input_count} signatures (one per input), got {len(signatures)}.",
            field="signatures",
        )
    decoded = []
    for index, sig in enumerate(signatures):
        try:
            decoded.append(bytes.fromhex(sig))
        except (TypeError, ValueError) as exc:
            raise InvalidParameter(
                f"Signature {index} is not valid hex.", field=f"signatures[{index}]"
            ) from exc
    return decoded


def submit_signature(
    ctx: MultisigContext,
    transaction_id: str,
    public_key: Any,
    signatures: Any,
) -> dict[str, Any]:
    """
    Apply one signer's per-input signatures (i-th signature to i-th input).

    The whole read-modify-write runs under the transaction's lock. The record
    is written once, after every signature verified and, when the threshold
    is reached, after finalization succeeded; any failure leaves it untouched.
    """
    if not isinstance(public_key, str) or not public_key.strip():
        raise InvalidParameter("Missing public_key.", field="public_key")
    public_key = public_key.strip().lower()

    key = tx_key(transaction_id)
    with ctx.locks.hold(key):
        record = load_transaction(ctx, transaction_id)
        require_status(record, TransactionStatus.PENDING)
        wallet = load_wallet(ctx, record["wallet_id"])

        if public_key not in {p["public_key"] for p in wallet["participants"]}:
            raise UnknownSigner(
                f"{public_key} is not a participant of wallet {wallet['wallet_id']}.",
                field="public_key",
            )
        if public_key in record["signatures"]:
            raise DuplicateSigner(
                f"{public_key} already signed transaction {transaction_id}.",
                public_key=public_key,
            )
        decoded = _decode_signatures(signatures, record["input_count"])

        artifact = ctx.engine.deserialize(bytes.fromhex(record["psbt"]))
        pubkey = bytes.fromhex(public_key)
        for index, sig in enumerate(decoded):
            ctx.engine.apply_signature(artifact, index, pubkey, sig)

        record["signatures"][public_key] = [sig.hex() for sig in decoded]
        record["signatures_received"] = len(record["signatures"])
        record["psbt"] = ctx.engine.serialize(artifact).hex()

        if record["signatures_received"] >= record["required_signatures"]:
            record["signed_transaction"] = ctx.engine.finalize_and_extract(artifact)
            record["status"] = TransactionStatus.ALLSIGNED.value

        ctx.store.put(key, record)

    logger.info(
        "Accepted signature on %s (%d/%d)",
        transaction_id,
        record["signatures_received"],
        record["required_signatures"],
    )
    if record["status"] == TransactionStatus.ALLSIGNED.value:
        logger.info("Transaction %s reached its signature threshold", transaction_id)

    return {
        "transaction_id": transaction_id,
        "status": record["status"],
        "signatures_received": record["signatures_received"],
        "required_signatures": record["required_signatures"] - record["signatures_received"],
    }
