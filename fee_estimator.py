"""
Virtual-size estimation for transactions spending from multisig wallets.

Sizes are computed in weight units and converted to vbytes (ceil(weight/4)).
Compressed public keys and 73-byte (worst case DER + sighash) signatures are
assumed throughout.
"""

from __future__ import annotations

import math

from multisig_errors import InvalidParameter, UnsupportedScriptType

# Weight per input, excluding the m/n dependent part for multisig classes.
INPUT_WEIGHTS: dict[str, int] = {
    "MULTISIG-P2SH": 49 * 4,
    "MULTISIG-P2WSH": 6 + (41 * 4),
    "MULTISIG-P2SH-P2WSH": 6 + (76 * 4),
    "P2PKH": 148 * 4,
    "P2WPKH": 108 + (41 * 4),
    "P2SH-P2WPKH": 108 + (64 * 4),
}

OUTPUT_WEIGHTS: dict[str, int] = {
    "P2SH": 32 * 4,
    "P2PKH": 34 * 4,
    "P2WPKH": 31 * 4,
    "P2WSH": 43 * 4,
    "P2TR": 43 * 4,
}

MULTISIG_PREFIX = "MULTISIG"
WALLET_INPUT_TYPE = "MULTISIG-P2WSH"
CHANGE_OUTPUT_TYPE = "P2WSH"


def _check_count(value: object, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidParameter(f"Invalid count for {what}: {value!r}", field=what)
    return value


def _varint_length(number: int) -> int:
    if number < 0xFD:
        return 1
    if number <= 0xFFFF:
        return 3
    if number <= 0xFFFFFFFF:
        return 5
    return 9


def multisig_input_key(m: int, n: int, script_type: str = WALLET_INPUT_TYPE) -> str:
    """e.g. ``MULTISIG-P2WSH:2-3`` for a 2-of-3 native segwit multisig input."""
    return f"{script_type}:{m}-{n}"


def _parse_multisig_key(key: str) -> tuple[str, int, int]:
    parts = key.split(":")
    if len(parts) != 2:
        raise UnsupportedScriptType(f"Invalid multisig input type: {key}", script_type=key)
    base, m_and_n = parts
    try:
        m_str, n_str = m_and_n.split("-")
        m, n = int(m_str), int(n_str)
    except ValueError as exc:
        raise UnsupportedScriptType(
            f"Invalid multisig input type: {key}", script_type=key
        ) from exc
    if base not in INPUT_WEIGHTS or not 0 < m <= n:
        raise UnsupportedScriptType(f"Invalid multisig input type: {key}", script_type=key)
    return base, m, n


def estimate_virtual_size(inputs: dict[str, int], outputs: dict[str, int]) -> int:
    """
    Estimate the virtual size in vbytes of a transaction.

    inputs: map of input type to count. Multisig classes are written as
            ``<TYPE>:<m>-<n>`` (see ``multisig_input_key``).
    outputs: map of output script type to count.
    """
    total_weight = 0
    has_witness = False
    input_count = 0
    output_count = 0

    for key, raw_count in inputs.items():
        count = _check_count(raw_count, key)
        if key.startswith(MULTISIG_PREFIX):
            base, m, n = _parse_multisig_key(key)
            total_weight += INPUT_WEIGHTS[base] * count
            # P2SH puts the signatures and script in the non-witness scriptSig.
            multiplier = 4 if base == "MULTISIG-P2SH" else 1
            total_weight += ((73 * m) + (34 * n)) * multiplier * count
        elif key in INPUT_WEIGHTS:
            total_weight += INPUT_WEIGHTS[key] * count
        else:
            raise UnsupportedScriptType(f"Unsupported input type: {key}", script_type=key)
        input_count += count
        if "W" in key:
            has_witness = True

    for key, raw_count in outputs.items():
        count = _check_count(raw_count, key)
        if key not in OUTPUT_WEIGHTS:
            raise UnsupportedScriptType(f"Unsupported output type: {key}", script_type=key)
        total_weight += OUTPUT_WEIGHTS[key] * count
        output_count += count

    if has_witness:
        total_weight += 2  # marker + flag

    total_weight += 8 * 4  # version + locktime
    total_weight += _varint_length(input_count) * 4
    total_weight += _varint_length(output_count) * 4

    return math.ceil(total_weight / 4)


def payment_outputs(recipient_script_type: str) -> dict[str, int]:
    """
    Output composition for a payment from a P2WSH multisig wallet.

    One output of the recipient's type plus exactly one P2WSH change output.
    A P2WSH recipient therefore yields two P2WSH outputs.
    """
    outputs = {recipient_script_type: 1}
    if outputs.get(CHANGE_OUTPUT_TYPE):
        outputs[CHANGE_OUTPUT_TYPE] = 2
    else:
        outputs[CHANGE_OUTPUT_TYPE] = 1
    return outputs


def estimate_payment_vsize(
    m: int, n: int, input_count: int, recipient_script_type: str
) -> int:
    """Virtual size of spending ``input_count`` wallet UTXOs to one recipient plus change."""
    return estimate_virtual_size(
        {multisig_input_key(m, n): input_count},
        payment_outputs(recipient_script_type),
    )
