import pytest

from fee_estimator import (
    estimate_payment_vsize,
    estimate_virtual_size,
    multisig_input_key,
    payment_outputs,
)
from multisig_errors import InvalidParameter, UnsupportedScriptType


def test_multisig_input_key_format():
    assert multisig_input_key(2, 3) == "MULTISIG-P2WSH:2-3"
    assert multisig_input_key(1, 2, "MULTISIG-P2SH") == "MULTISIG-P2SH:1-2"


def test_p2wsh_two_of_three_payment_to_p2wpkh():
    # 418 (input) + 124 + 172 (outputs) + 2 (marker/flag) + 32 + 4 + 4 = 756 wu
    vsize = estimate_virtual_size(
        {"MULTISIG-P2WSH:2-3": 1}, {"P2WPKH": 1, "P2WSH": 1}
    )
    assert vsize == 189


def test_legacy_only_has_no_witness_overhead():
    # 592 + 136 + 32 + 4 + 4 = 768 wu
    assert estimate_virtual_size({"P2PKH": 1}, {"P2PKH": 1}) == 192


def test_p2sh_multisig_signatures_count_at_full_weight():
    # 196 + (146 + 102) * 4 + 128 + 32 + 4 + 4 = 1356 wu
    assert estimate_virtual_size({"MULTISIG-P2SH:2-3": 1}, {"P2SH": 1}) == 339


def test_vsize_rounds_up():
    # 584 wu is exactly 146 vB; 438 wu rounds up to 110 vB
    assert estimate_virtual_size({"MULTISIG-P2WSH:2-3": 1}, {"P2WPKH": 1}) == 146
    assert estimate_virtual_size({"P2WPKH": 1}, {"P2WPKH": 1}) == 110


def test_payment_outputs_adds_single_change_output():
    assert payment_outputs("P2WPKH") == {"P2WPKH": 1, "P2WSH": 1}
    assert payment_outputs("P2TR") == {"P2TR": 1, "P2WSH": 1}


def test_payment_outputs_p2wsh_recipient_counts_two():
    assert payment_outputs("P2WSH") == {"P2WSH": 2}


def test_estimate_payment_vsize_matches_explicit_composition():
    assert estimate_payment_vsize(2, 3, 2, "P2PKH") == estimate_virtual_size(
        {"MULTISIG-P2WSH:2-3": 2}, {"P2PKH": 1, "P2WSH": 1}
    )


def test_more_inputs_cost_more():
    one = estimate_payment_vsize(2, 3, 1, "P2WPKH")
    two = estimate_payment_vsize(2, 3, 2, "P2WPKH")
    assert two - one == 105  # ceil(418 / 4) and rounding of the total


@pytest.mark.parametrize(
    "inputs,outputs",
    [
        ({"P2XX": 1}, {"P2WPKH": 1}),
        ({"P2WPKH": 1}, {"P2XX": 1}),
        ({"MULTISIG-P2WSH:3-2": 1}, {"P2WPKH": 1}),
        ({"MULTISIG-P2WSH:two-3": 1}, {"P2WPKH": 1}),
        ({"MULTISIG-P2WSH": 1}, {"P2WPKH": 1}),
    ],
)
def test_unknown_types_rejected(inputs, outputs):
    with pytest.raises(UnsupportedScriptType):
        estimate_virtual_size(inputs, outputs)


@pytest.mark.parametrize("count", [-1, 1.5, True, "2"])
def test_bad_counts_rejected(count):
    with pytest.raises(InvalidParameter):
        estimate_virtual_size({"P2WPKH": count}, {"P2WPKH": 1})
