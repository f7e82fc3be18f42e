from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv

from blockchain_client import BlockchainClient
from multisig_errors import MultisigConfigError
from multisig_store import KeyedLocks, Store, open_store
from script_engine import ScriptEngine

# Load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env")

MultisigNetwork = Literal["mainnet", "testnet"]

DEFAULT_RPC_URLS = {
    "mainnet": "https://bitcoin-rpc.publicnode.com",
    "testnet": "https://bitcoin-testnet-rpc.publicnode.com",
}
DEFAULT_BLOCKBOOK_URLS = {
    "mainnet": "https://btc1.trezor.io",
    "testnet": "https://tbtc1.trezor.io",
}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise MultisigConfigError(f"Invalid {name}={raw!r}. Expected a number.") from exc
    if value <= 0:
        raise MultisigConfigError(f"Invalid {name}={raw!r}. Must be greater than zero.")
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise MultisigConfigError(f"Invalid {name}={raw!r}. Expected an integer.") from exc
    if value <= 0:
        raise MultisigConfigError(f"Invalid {name}={raw!r}. Must be greater than zero.")
    return value


@dataclass
class MultisigConfig:
    """
    Configuration for the multisig coordinator.

    Values are sourced from environment variables or a .env file.

    - MULTISIG_NETWORK: "mainnet" or "testnet" (defaults to "testnet").
    - MULTISIG_RPC_URL: Bitcoin Core compatible JSON-RPC endpoint used for
      broadcast, confirmations, fee estimates and chain height.
    - MULTISIG_BLOCKBOOK_URL: Blockbook indexer used for UTXOs, balances and
      address history.
    - MULTISIG_DB_PATH: SQLite file for wallets and transactions
      (":memory:" keeps everything in process memory).
    - MULTISIG_ID_PREFIX: prefix of the wallet ID counter.
    - MULTISIG_DEFAULT_FEE_RATE: sat/vB used when a request omits fee_rate.
    - MULTISIG_FEE_TARGET_BLOCKS: confirmation target for fee estimates.
    - MULTISIG_HTTP_TIMEOUT: seconds before an upstream request is abandoned.
    """

    network: MultisigNetwork = "testnet"
    rpc_url: str = DEFAULT_RPC_URLS["testnet"]
    blockbook_url: str = DEFAULT_BLOCKBOOK_URLS["testnet"]
    db_path: str = "walletDB.sqlite3"
    id_prefix: str = "btc_multisig"
    default_fee_rate: float = 1.0
    fee_target_blocks: int = 6
    http_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> MultisigConfig:
        raw_network = os.getenv("MULTISIG_NETWORK", "testnet").strip().lower()
        if raw_network not in {"mainnet", "testnet"}:
            raise MultisigConfigError(
                f"Invalid MULTISIG_NETWORK={raw_network!r}. Expected 'mainnet' or 'testnet'."
            )
        network: MultisigNetwork = "mainnet" if raw_network == "mainnet" else "testnet"

        rpc_url = os.getenv("MULTISIG_RPC_URL", "").strip() or DEFAULT_RPC_URLS[network]
        blockbook_url = (
            os.getenv("MULTISIG_BLOCKBOOK_URL", "").strip() or DEFAULT_BLOCKBOOK_URLS[network]
        )
        db_path = os.getenv("MULTISIG_DB_PATH", "").strip() or "walletDB.sqlite3"
        id_prefix = os.getenv("MULTISIG_ID_PREFIX", "").strip() or "btc_multisig"

        return cls(
            network=network,
            rpc_url=rpc_url.rstrip("/"),
            blockbook_url=blockbook_url.rstrip("/"),
            db_path=db_path,
            id_prefix=id_prefix,
            default_fee_rate=_env_float("MULTISIG_DEFAULT_FEE_RATE", 1.0),
            fee_target_blocks=_env_int("MULTISIG_FEE_TARGET_BLOCKS", 6),
            http_timeout=_env_float("MULTISIG_HTTP_TIMEOUT", 10.0),
        )


@dataclass
class MultisigContext:
    """
    Everything an operation needs, passed explicitly.

    The store is the single source of truth; ``locks`` serializes mutations
    of one transaction record at a time.
    """

    cfg: MultisigConfig
    store: Store
    engine: ScriptEngine
    chain: BlockchainClient
    locks: KeyedLocks = field(default_factory=KeyedLocks)

    @classmethod
    def from_config(cls, cfg: MultisigConfig) -> MultisigContext:
        return cls(
            cfg=cfg,
            store=open_store(cfg.db_path),
            engine=ScriptEngine(cfg.network),
            chain=BlockchainClient(cfg.rpc_url, cfg.blockbook_url, timeout=cfg.http_timeout),
        )
