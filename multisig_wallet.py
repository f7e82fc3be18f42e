"""
Wallet registry: create and read m-of-n multisig wallet descriptors.

Wallet records are written once under ``wallet:<walletId>`` and never
mutated. Balance and history are read through the blockchain client.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any

from bip_utils import Base58Encoder

from multisig_config import MultisigContext
from multisig_errors import (
    DuplicateParticipant,
    InvalidParameter,
    InvalidThreshold,
    ParticipantCountMismatch,
    WalletNotFound,
)
from multisig_store import counter_key, wallet_key
from script_engine import MAX_MULTISIG_KEYS

logger = logging.getLogger(__name__)

PUBLIC_WALLET_FIELDS = ("wallet_id", "address", "redeem_script", "m", "n", "name", "creation_time")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def hash_id(data: bytes) -> str:
    """Public identifier: base58(sha256(hex(data)))."""
    return Base58Encoder.Encode(hashlib.sha256(data.hex().encode("ascii")).digest())


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def generate_wallet_id(ctx: MultisigContext) -> str:
    prefix = ctx.cfg.id_prefix
    counter = ctx.store.increment(counter_key(prefix))
    return hash_id(f"{prefix}{counter:016d}".encode("utf-8"))


def _validate_participants(
    ctx: MultisigContext, n: int, participants: Any
) -> list[dict[str, Any]]:
    if not isinstance(participants, list) or len(participants) != n:
        got = len(participants) if isinstance(participants, list) else None
        raise ParticipantCountMismatch(
            f"Expected {n} participants, got {got}.", expected=n, got=got
        )

    cleaned = []
    seen: set[str] = set()
    for index, participant in enumerate(participants):
        if not isinstance(participant, dict):
            raise InvalidParameter(
                f"Participant {index} must be an object with public_key.",
                field=f"participants[{index}]",
            )
        public_key = str(participant.get("public_key") or "").strip().lower()
        if not public_key:
            raise InvalidParameter(
                f"Participant {index} is missing public_key.",
                field=f"participants[{index}].public_key",
            )
        ctx.engine.parse_public_key(public_key)
        if public_key in seen:
            raise DuplicateParticipant(
                f"Duplicate participant public key: {public_key}", public_key=public_key
            )
        seen.add(public_key)
        cleaned.append({"public_key": public_key, "user_id": participant.get("user_id")})
    return cleaned


def create_multisig_wallet(
    ctx: MultisigContext,
    m: Any,
    n: Any,
    participants: Any,
    name: str | None = None,
) -> dict[str, Any]:
    """Register an m-of-n P2WSH wallet. Nothing is written if validation fails."""
    if not (_is_int(m) and _is_int(n)) or m <= 0 or n <= 0 or m > n:
        raise InvalidThreshold(f"Invalid threshold m={m!r}, n={n!r}.", m=m, n=n)
    if n > MAX_MULTISIG_KEYS:
        raise InvalidThreshold(
            f"At most {MAX_MULTISIG_KEYS} participants are supported, got {n}.", m=m, n=n
        )
    cleaned = _validate_participants(ctx, n, participants)

    pubkeys = [bytes.fromhex(p["public_key"]) for p in cleaned]
    address, redeem_script = ctx.engine.derive_multisig_address(m, pubkeys)

    wallet_id = generate_wallet_id(ctx)
    record = {
        "wallet_id": wallet_id,
        "address": address,
        "redeem_script": redeem_script,
        "m": m,
        "n": n,
        "name": name,
        "participants": cleaned,
        "creation_time": utc_now(),
    }
    ctx.store.put(wallet_key(wallet_id), record)
    logger.info("Created %d-of-%d wallet %s at %s", m, n, wallet_id, address)
    return {key: record[key] for key in PUBLIC_WALLET_FIELDS}


def get_wallet_details(ctx: MultisigContext, wallet_id: str) -> dict[str, Any] | None:
    if not wallet_id:
        return None
    return ctx.store.get(wallet_key(wallet_id))


def load_wallet(ctx: MultisigContext, wallet_id: str) -> dict[str, Any]:
    wallet = get_wallet_details(ctx, wallet_id)
    if wallet is None:
        raise WalletNotFound(f"Wallet not found: {wallet_id}", wallet_id=wallet_id)
    return wallet


def get_wallet_balance(ctx: MultisigContext, wallet_id: str) -> dict[str, Any]:
    wallet = load_wallet(ctx, wallet_id)
    balance = ctx.chain.get_balance(wallet["address"])
    return {
        "wallet_id": wallet_id,
        "address": wallet["address"],
        "confirmed_balance": balance["confirmed"],
        "unconfirmed_balance": balance["unconfirmed"],
    }


def get_transaction_history(
    ctx: MultisigContext, wallet_id: str, page: Any = 1
) -> dict[str, Any]:
    if not _is_int(page) or page < 1:
        raise InvalidParameter(f"Invalid page: {page!r}. Must be a positive integer.", field="page")
    wallet = load_wallet(ctx, wallet_id)
    return {
        "wallet_id": wallet_id,
        "address": wallet["address"],
        "page": page,
        "transactions": ctx.chain.get_address_history(wallet["address"], page),
    }
