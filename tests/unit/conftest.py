import sys
from pathlib import Path

import pytest
from bitcoin.core import CTransaction, b2lx, x
from coincurve import PrivateKey

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from multisig_config import MultisigConfig, MultisigContext  # noqa: E402
from multisig_errors import UpstreamUnavailable  # noqa: E402
from multisig_store import MemoryStore  # noqa: E402
from script_engine import ScriptEngine  # noqa: E402

# BIP-173 / BIP-350 testnet vectors
P2WPKH_ADDRESS = "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx"
P2WSH_ADDRESS = "tb1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3q0sl5k7"
P2TR_ADDRESS = "tb1pqqqqp399et2xygdj5xreqhjjvcmzhxw4aywxecjdzew6hylgvsesf3hn0c"
MAINNET_P2WPKH_ADDRESS = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"


class FakeChain:
    """In-memory stand-in for BlockchainClient."""

    def __init__(self) -> None:
        self.utxos: dict[str, list[dict]] = {}
        self.broadcasted: list[str] = []
        self.confirmations: dict[str, int] = {}
        self.fail_confirmations = False
        self.fail_broadcast = False
        self.fee_rate = 10.4
        self.height = 2_500_000
        self.balances: dict[str, dict] = {}
        self.history: dict[str, list[dict]] = {}

    def fund(self, address: str, *amounts: int) -> None:
        entries = self.utxos.setdefault(address, [])
        for amount in amounts:
            index = len(entries)
            entries.append({"txid": f"{index + 1:064x}", "vout": index % 3, "satoshis": amount})

    def get_unspent_outputs(self, address):
        return list(self.utxos.get(address, []))

    def broadcast(self, raw_tx_hex):
        if self.fail_broadcast:
            raise UpstreamUnavailable("node rejected transaction", endpoint="fake")
        self.broadcasted.append(raw_tx_hex)
        return b2lx(CTransaction.deserialize(x(raw_tx_hex)).GetTxid())

    def get_confirmations(self, tx_hash):
        if self.fail_confirmations:
            raise UpstreamUnavailable("node unreachable", endpoint="fake")
        return self.confirmations.get(tx_hash, 0)

    def estimate_fee_rate(self, target_blocks):
        return self.fee_rate

    def get_chain_height(self):
        return self.height

    def get_balance(self, address):
        return self.balances.get(address, {"confirmed": 0, "unconfirmed": 0})

    def get_address_history(self, address, page=1):
        return self.history.get(address, [])


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def ctx(chain):
    cfg = MultisigConfig(network="testnet", db_path=":memory:")
    return MultisigContext(
        cfg=cfg, store=MemoryStore(), engine=ScriptEngine("testnet"), chain=chain
    )


@pytest.fixture
def signer_keys():
    return [PrivateKey(bytes([i]) * 32) for i in range(1, 6)]


def participants_for(keys):
    return [
        {"public_key": key.public_key.format(compressed=True).hex(), "user_id": f"user-{i}"}
        for i, key in enumerate(keys, start=1)
    ]


def sign_digests(key, digests):
    return [key.sign(bytes.fromhex(d), hasher=None).hex() for d in digests]
