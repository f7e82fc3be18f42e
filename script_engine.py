"""
Script and transaction engine for P2WSH m-of-n multisig wallets.

- Witness script: ``OP_m <pk1> ... <pkn> OP_n OP_CHECKMULTISIG`` with keys in
  participant order; address is the bech32 P2WSH of that script.
- The partially signed artifact is a BIP-174 PSBT (witness UTXO, partial
  signatures, sighash type and witness script per input).
- Signable data is the BIP-143 preimage for SIGHASH_ALL; signers sign its
  double SHA-256.
- Signatures are verified with libsecp256k1 (coincurve) before they are
  accepted into the artifact. Nothing here ever signs.

Transaction primitives come from python-bitcoinlib, address codecs from
bip_utils.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from typing import Any, Literal

import coincurve
from bip_utils import Base58Decoder, SegwitBech32Decoder, SegwitBech32Encoder
from bitcoin.core import (
    COutPoint,
    CTransaction,
    CTxIn,
    CTxInWitness,
    CTxOut,
    CTxWitness,
    Hash,
    b2lx,
    b2x,
    lx,
)
from bitcoin.core.serialize import SerializationError
from bitcoin.core.script import (
    OP_CHECKMULTISIG,
    OP_CHECKSIG,
    OP_DUP,
    OP_EQUAL,
    OP_EQUALVERIFY,
    OP_HASH160,
    SIGHASH_ALL,
    CScript,
    CScriptWitness,
)
from coincurve.ecdsa import cdata_to_der, der_to_cdata, deserialize_compact, serialize_compact

from multisig_errors import (
    InvalidParameter,
    InvalidStateTransition,
    SignatureRejected,
    UnsupportedScriptType,
)

ScriptType = Literal["P2PKH", "P2SH", "P2WPKH", "P2WSH", "P2TR"]

PSBT_MAGIC = b"psbt\xff"

# BIP-174 key types
PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08

TX_VERSION = 2
# Opt-in RBF so a stuck multisig spend can be replaced.
TX_SEQUENCE = 0xFFFFFFFD

MAX_MULTISIG_KEYS = 20

SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

NETWORK_PARAMS: dict[str, dict[str, Any]] = {
    "mainnet": {"hrp": "bc", "p2pkh": 0x00, "p2sh": 0x05},
    "testnet": {"hrp": "tb", "p2pkh": 0x6F, "p2sh": 0xC4},
}


def double_sha256(data: bytes) -> bytes:
    return Hash(data)


# ---------------------------------------------------------------------------
# Compact-size / key-value helpers
# ---------------------------------------------------------------------------


def _ser_compact_size(n: int) -> bytes:
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def _ser_bytes(data: bytes) -> bytes:
    return _ser_compact_size(len(data)) + data


def _ser_kv(key: bytes, value: bytes) -> bytes:
    return _ser_bytes(key) + _ser_bytes(value)


def _decode_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Decode a Bitcoin compact-size varint. Returns (value, new_offset)."""
    if offset >= len(data):
        raise ValueError("Unexpected end of PSBT data.")
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    elif first == 0xFD:
        return struct.unpack_from("<H", data, offset + 1)[0], offset + 3
    elif first == 0xFE:
        return struct.unpack_from("<I", data, offset + 1)[0], offset + 5
    else:
        return struct.unpack_from("<Q", data, offset + 1)[0], offset + 9


def _read_bytes(data: bytes, offset: int) -> tuple[bytes, int]:
    length, offset = _decode_varint(data, offset)
    end = offset + length
    if end > len(data):
        raise ValueError("Unexpected end of PSBT data.")
    return data[offset:end], end


def _read_map(data: bytes, offset: int) -> tuple[list[tuple[bytes, bytes]], int]:
    pairs = []
    while True:
        key, offset = _read_bytes(data, offset)
        if not key:
            return pairs, offset
        value, offset = _read_bytes(data, offset)
        pairs.append((key, value))


def _ser_witness_stack(stack: list[bytes]) -> bytes:
    return _ser_compact_size(len(stack)) + b"".join(_ser_bytes(item) for item in stack)


def _parse_witness_stack(data: bytes) -> list[bytes]:
    count, offset = _decode_varint(data, 0)
    stack = []
    for _ in range(count):
        item, offset = _read_bytes(data, offset)
        stack.append(item)
    return stack


# ---------------------------------------------------------------------------
# Scripts
# ---------------------------------------------------------------------------


def build_witness_script(m: int, pubkeys: list[bytes]) -> bytes:
    return bytes(CScript([m] + list(pubkeys) + [len(pubkeys), OP_CHECKMULTISIG]))


def _script_int(item: Any) -> int:
    # Small ints come back from CScript iteration as int, larger ones as bytes.
    if isinstance(item, bytes):
        return int.from_bytes(item, "little")
    return int(item)


def parse_witness_script(script: bytes) -> tuple[int, list[bytes]]:
    """Return (m, pubkeys) of an m-of-n CHECKMULTISIG witness script."""
    items = list(CScript(script))
    if len(items) < 4 or items[-1] != OP_CHECKMULTISIG:
        raise ValueError("Not a CHECKMULTISIG witness script.")
    m = _script_int(items[0])
    n = _script_int(items[-2])
    pubkeys = items[1:-2]
    if len(pubkeys) != n or not all(isinstance(pk, bytes) for pk in pubkeys):
        raise ValueError("Malformed CHECKMULTISIG witness script.")
    if not 0 < m <= n:
        raise ValueError("Invalid threshold in witness script.")
    return m, list(pubkeys)


def p2wsh_script_pubkey(witness_script: bytes) -> bytes:
    return bytes(CScript([0, hashlib.sha256(witness_script).digest()]))


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


def _parse_der(signature: bytes) -> bytes:
    if len(signature) >= 2 and len(signature) == signature[1] + 3:
        if signature[-1] != SIGHASH_ALL:
            raise ValueError("Only SIGHASH_ALL signatures are accepted.")
        signature = signature[:-1]
    return serialize_compact(der_to_cdata(signature))


def _canonical_der(signature: bytes) -> bytes:
    """
    Normalize a submitted signature to low-S DER without a sighash byte.

    Accepts 64-byte compact ``r||s``, DER, or DER followed by SIGHASH_ALL.
    """
    compact = None
    if len(signature) >= 2 and signature[0] == 0x30 and len(signature) - signature[1] in (2, 3):
        try:
            compact = _parse_der(signature)
        except ValueError:
            # a compact r||s can start with a DER-looking header
            if len(signature) != 64:
                raise
    if compact is None:
        compact = signature if len(signature) == 64 else serialize_compact(der_to_cdata(signature))

    r = int.from_bytes(compact[:32], "big")
    s = int.from_bytes(compact[32:], "big")
    if not (0 < r < SECP256K1_ORDER and 0 < s < SECP256K1_ORDER):
        raise ValueError("Signature values out of range.")
    if s > SECP256K1_ORDER // 2:
        s = SECP256K1_ORDER - s
    return cdata_to_der(deserialize_compact(r.to_bytes(32, "big") + s.to_bytes(32, "big")))


# ---------------------------------------------------------------------------
# Artifact
# ---------------------------------------------------------------------------


@dataclass
class MultisigInput:
    txid: str
    vout: int
    satoshis: int
    # public key hex -> DER signature + sighash byte
    partial_sigs: dict[str, bytes] = field(default_factory=dict)
    final_witness: list[bytes] | None = None


@dataclass
class MultisigOutput:
    script_pubkey: bytes
    satoshis: int


@dataclass
class MultisigArtifact:
    """An unsigned or partially signed multisig spend (one owned value)."""

    m: int
    pubkeys: list[bytes]
    witness_script: bytes
    inputs: list[MultisigInput] = field(default_factory=list)
    outputs: list[MultisigOutput] = field(default_factory=list)
    version: int = TX_VERSION
    locktime: int = 0

    @property
    def script_pubkey(self) -> bytes:
        return p2wsh_script_pubkey(self.witness_script)

    @property
    def is_finalized(self) -> bool:
        return bool(self.inputs) and all(i.final_witness is not None for i in self.inputs)


class ScriptEngine:
    def __init__(self, network: str = "testnet") -> None:
        if network not in NETWORK_PARAMS:
            raise InvalidParameter(f"Unknown network: {network}", field="network")
        self.network = network
        self.params = NETWORK_PARAMS[network]

    # -----------------------------------------------------------------------
    # Keys and addresses
    # -----------------------------------------------------------------------

    @staticmethod
    def parse_public_key(public_key: str) -> bytes:
        """Decode a hex compressed secp256k1 public key (segwit requires compressed keys)."""
        try:
            raw = bytes.fromhex(public_key)
        except (TypeError, ValueError) as exc:
            raise InvalidParameter(
                f"Public key is not valid hex: {public_key!r}", field="public_key"
            ) from exc
        if len(raw) != 33 or raw[0] not in (0x02, 0x03):
            raise InvalidParameter(
                f"Public key must be a 33-byte compressed key: {public_key!r}",
                field="public_key",
            )
        try:
            coincurve.PublicKey(raw)
        except ValueError as exc:
            raise InvalidParameter(
                f"Public key is not on the secp256k1 curve: {public_key!r}",
                field="public_key",
            ) from exc
        return raw

    def derive_multisig_address(self, m: int, pubkeys: list[bytes]) -> tuple[str, str]:
        """Return (bech32 P2WSH address, witness script hex)."""
        witness_script = build_witness_script(m, pubkeys)
        program = hashlib.sha256(witness_script).digest()
        address = SegwitBech32Encoder.Encode(self.params["hrp"], 0, program)
        return address, witness_script.hex()

    def _decode_address(self, address: str) -> tuple[ScriptType, bytes]:
        address = (address or "").strip()
        hrp = self.params["hrp"]
        if address.lower().startswith(hrp + "1"):
            try:
                witver, program = SegwitBech32Decoder.Decode(hrp, address)
            except Exception as exc:  # noqa: BLE001
                raise UnsupportedScriptType(
                    f"unsupported address: {address}", address=address
                ) from exc
            program = bytes(program)
            if witver == 0 and len(program) == 20:
                return "P2WPKH", bytes(CScript([0, program]))
            if witver == 0 and len(program) == 32:
                return "P2WSH", bytes(CScript([0, program]))
            if witver == 1 and len(program) == 32:
                return "P2TR", bytes(CScript([1, program]))
            raise UnsupportedScriptType(f"unsupported address: {address}", address=address)

        try:
            payload = bytes(Base58Decoder.CheckDecode(address))
        except Exception as exc:  # noqa: BLE001
            raise UnsupportedScriptType(
                f"unsupported address: {address}", address=address
            ) from exc
        if len(payload) == 21 and payload[0] == self.params["p2pkh"]:
            script = CScript([OP_DUP, OP_HASH160, payload[1:], OP_EQUALVERIFY, OP_CHECKSIG])
            return "P2PKH", bytes(script)
        if len(payload) == 21 and payload[0] == self.params["p2sh"]:
            return "P2SH", bytes(CScript([OP_HASH160, payload[1:], OP_EQUAL]))
        raise UnsupportedScriptType(f"unsupported address: {address}", address=address)

    def classify_address_script_type(self, address: str) -> ScriptType:
        return self._decode_address(address)[0]

    def script_pubkey_for_address(self, address: str) -> bytes:
        return self._decode_address(address)[1]

    # -----------------------------------------------------------------------
    # Building
    # -----------------------------------------------------------------------

    def new_unsigned_multisig(self, m: int, pubkeys: list[bytes]) -> MultisigArtifact:
        return MultisigArtifact(
            m=m, pubkeys=list(pubkeys), witness_script=build_witness_script(m, pubkeys)
        )

    def add_input(self, artifact: MultisigArtifact, utxo: dict[str, Any]) -> None:
        try:
            txid = str(utxo["txid"])
            vout = int(utxo["vout"])
            satoshis = int(utxo["satoshis"])
            lx(txid)
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidParameter(f"Malformed UTXO: {utxo!r}", field="utxo") from exc
        if len(txid) != 64 or vout < 0 or satoshis <= 0:
            raise InvalidParameter(f"Malformed UTXO: {utxo!r}", field="utxo")
        artifact.inputs.append(MultisigInput(txid=txid, vout=vout, satoshis=satoshis))

    def add_output(self, artifact: MultisigArtifact, address: str, satoshis: int) -> None:
        if satoshis <= 0:
            raise InvalidParameter("Output amount must be positive.", field="satoshis")
        artifact.outputs.append(
            MultisigOutput(script_pubkey=self.script_pubkey_for_address(address), satoshis=satoshis)
        )

    def _unsigned_tx(self, artifact: MultisigArtifact) -> CTransaction:
        vin = [
            CTxIn(COutPoint(lx(i.txid), i.vout), CScript(), TX_SEQUENCE) for i in artifact.inputs
        ]
        vout = [CTxOut(o.satoshis, CScript(o.script_pubkey)) for o in artifact.outputs]
        return CTransaction(vin, vout, artifact.locktime, artifact.version)

    # -----------------------------------------------------------------------
    # PSBT codec
    # -----------------------------------------------------------------------

    def serialize(self, artifact: MultisigArtifact) -> bytes:
        parts = [PSBT_MAGIC]
        parts.append(_ser_kv(bytes([PSBT_GLOBAL_UNSIGNED_TX]), self._unsigned_tx(artifact).serialize()))
        parts.append(b"\x00")

        witness_utxo_script = CScript(artifact.script_pubkey)
        for inp in artifact.inputs:
            utxo = CTxOut(inp.satoshis, witness_utxo_script).serialize()
            parts.append(_ser_kv(bytes([PSBT_IN_WITNESS_UTXO]), utxo))
            if inp.final_witness is not None:
                parts.append(
                    _ser_kv(
                        bytes([PSBT_IN_FINAL_SCRIPTWITNESS]),
                        _ser_witness_stack(inp.final_witness),
                    )
                )
            else:
                for pubkey_hex in sorted(inp.partial_sigs):
                    parts.append(
                        _ser_kv(
                            bytes([PSBT_IN_PARTIAL_SIG]) + bytes.fromhex(pubkey_hex),
                            inp.partial_sigs[pubkey_hex],
                        )
                    )
                parts.append(
                    _ser_kv(bytes([PSBT_IN_SIGHASH_TYPE]), struct.pack("<I", SIGHASH_ALL))
                )
                parts.append(_ser_kv(bytes([PSBT_IN_WITNESS_SCRIPT]), artifact.witness_script))
            parts.append(b"\x00")

        for _ in artifact.outputs:
            parts.append(b"\x00")
        return b"".join(parts)

    def deserialize(self, raw: bytes) -> MultisigArtifact:
        try:
            return self._deserialize(raw)
        except (ValueError, IndexError, struct.error, SerializationError) as exc:
            raise InvalidParameter(f"Invalid PSBT: {exc}", field="psbt") from exc

    def _deserialize(self, raw: bytes) -> MultisigArtifact:
        if raw[:5] != PSBT_MAGIC:
            raise ValueError("Not a valid PSBT (missing magic bytes).")
        global_map, offset = _read_map(raw, 5)
        tx_bytes = next(
            (v for k, v in global_map if k == bytes([PSBT_GLOBAL_UNSIGNED_TX])), None
        )
        if tx_bytes is None:
            raise ValueError("PSBT has no unsigned transaction.")
        tx = CTransaction.deserialize(tx_bytes)

        witness_script: bytes | None = None
        inputs = []
        for txin in tx.vin:
            pairs, offset = _read_map(raw, offset)
            satoshis = 0
            partial_sigs: dict[str, bytes] = {}
            final_witness = None
            for key, value in pairs:
                key_type = key[0]
                if key_type == PSBT_IN_WITNESS_UTXO:
                    satoshis = struct.unpack_from("<q", value, 0)[0]
                elif key_type == PSBT_IN_PARTIAL_SIG:
                    partial_sigs[key[1:].hex()] = value
                elif key_type == PSBT_IN_WITNESS_SCRIPT:
                    witness_script = value
                elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS:
                    final_witness = _parse_witness_stack(value)
                    witness_script = witness_script or final_witness[-1]
            inputs.append(
                MultisigInput(
                    txid=b2lx(txin.prevout.hash),
                    vout=txin.prevout.n,
                    satoshis=satoshis,
                    partial_sigs=partial_sigs,
                    final_witness=final_witness,
                )
            )

        for _ in tx.vout:
            _, offset = _read_map(raw, offset)

        if witness_script is None:
            raise ValueError("PSBT carries no witness script.")
        m, pubkeys = parse_witness_script(witness_script)
        return MultisigArtifact(
            m=m,
            pubkeys=pubkeys,
            witness_script=witness_script,
            inputs=inputs,
            outputs=[MultisigOutput(bytes(o.scriptPubKey), o.nValue) for o in tx.vout],
            version=tx.nVersion,
            locktime=tx.nLockTime,
        )

    # -----------------------------------------------------------------------
    # Signing data, signatures, finalization
    # -----------------------------------------------------------------------

    def signable_data(self, artifact: MultisigArtifact, index: int) -> bytes:
        """BIP-143 preimage (SIGHASH_ALL) for input ``index``."""
        if not 0 <= index < len(artifact.inputs):
            raise InvalidParameter(f"Input index out of range: {index}", field="input_index")
        tx = self._unsigned_tx(artifact)
        hash_prevouts = Hash(b"".join(txin.prevout.serialize() for txin in tx.vin))
        hash_sequence = Hash(b"".join(struct.pack("<I", txin.nSequence) for txin in tx.vin))
        hash_outputs = Hash(b"".join(txout.serialize() for txout in tx.vout))
        txin = tx.vin[index]
        return b"".join(
            [
                struct.pack("<i", tx.nVersion),
                hash_prevouts,
                hash_sequence,
                txin.prevout.serialize(),
                _ser_bytes(artifact.witness_script),
                struct.pack("<q", artifact.inputs[index].satoshis),
                struct.pack("<I", txin.nSequence),
                hash_outputs,
                struct.pack("<I", tx.nLockTime),
                struct.pack("<I", SIGHASH_ALL),
            ]
        )

    def signable_digest(self, artifact: MultisigArtifact, index: int) -> bytes:
        return double_sha256(self.signable_data(artifact, index))

    def apply_signature(
        self,
        artifact: MultisigArtifact,
        index: int,
        pubkey: bytes,
        signature: bytes,
    ) -> None:
        """Verify ``signature`` for input ``index`` and record it as a partial signature."""
        if not 0 <= index < len(artifact.inputs):
            raise SignatureRejected(
                f"Signature for input {index}, but the transaction has "
                f"{len(artifact.inputs)} inputs.",
                input_index=index,
            )
        if pubkey not in artifact.pubkeys:
            raise SignatureRejected(
                f"Public key {pubkey.hex()} is not part of the multisig script.",
                input_index=index,
            )
        inp = artifact.inputs[index]
        if inp.final_witness is not None:
            raise SignatureRejected(f"Input {index} is already finalized.", input_index=index)

        try:
            der = _canonical_der(signature)
            valid = coincurve.PublicKey(pubkey).verify(
                der, self.signable_digest(artifact, index), hasher=None
            )
        except ValueError as exc:
            raise SignatureRejected(
                f"Malformed signature for input {index}: {exc}", input_index=index
            ) from exc
        if not valid:
            raise SignatureRejected(
                f"Invalid signature for input {index} from {pubkey.hex()}.",
                input_index=index,
            )
        inp.partial_sigs[pubkey.hex()] = der + bytes([SIGHASH_ALL])

    def finalize_and_extract(self, artifact: MultisigArtifact) -> str:
        """
        Finalize every input and return the raw network transaction hex.

        Witness per input: ``<empty> <sig>... <witness script>`` with exactly
        m signatures in witness-script key order.
        """
        if any(inp.final_witness is not None for inp in artifact.inputs):
            raise InvalidStateTransition(
                "Artifact is already finalized.", current="finalized", expected="signed"
            )

        stacks = []
        for index, inp in enumerate(artifact.inputs):
            sigs = [
                inp.partial_sigs[pk.hex()] for pk in artifact.pubkeys if pk.hex() in inp.partial_sigs
            ][: artifact.m]
            if len(sigs) < artifact.m:
                raise SignatureRejected(
                    f"Input {index} has {len(sigs)} of {artifact.m} required signatures.",
                    input_index=index,
                )
            stacks.append([b""] + sigs + [artifact.witness_script])

        for inp, stack in zip(artifact.inputs, stacks):
            inp.final_witness = stack
            inp.partial_sigs = {}

        unsigned = self._unsigned_tx(artifact)
        witness = CTxWitness(
            [CTxInWitness(CScriptWitness(stack)) for stack in stacks]
        )
        tx = CTransaction(unsigned.vin, unsigned.vout, unsigned.nLockTime, unsigned.nVersion, witness)
        return b2x(tx.serialize())
