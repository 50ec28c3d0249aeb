"""
Tests for gas_station.payload.

Tests cover:
- Deterministic encoding of unbound payloads
- The FEE_UNSET placeholder
- Argument and address validation
- Canonical-form enforcement when decoding
- Fee binding and digests
"""
from __future__ import annotations

import base64
import json

import pytest

from gas_station.builder import build_payload
from gas_station.exceptions import SponsorshipValidationError
from gas_station.payload import (
    FEE_UNSET,
    FeeBinding,
    FeeBoundPayload,
    MoveCall,
    PayloadDecodeError,
    PureArg,
    ResourceRef,
    TransferValue,
    UnboundPayload,
    compute_digest,
    normalize_address,
    u64,
)

SENDER = "0x" + "11" * 32
SPONSOR = "0x" + "22" * 32
RECIPIENT = "0x" + "33" * 32


def _coin(tag: str, version: int = 1) -> ResourceRef:
    return ResourceRef(object_id="0x" + tag * 32, version=version, digest=f"digest-{tag}")


def _transfer(amount: int = 100) -> TransferValue:
    return TransferValue(source=_coin("aa"), amount=amount, recipient=RECIPIENT)


def _fee(budget: int = 2_000_000) -> FeeBinding:
    return FeeBinding(owner=SPONSOR, payment=(_coin("ff"),), price=1000, budget=budget, expiration=5)


class TestAddresses:
    """Tests for address normalization."""

    def test_short_address_is_padded(self):
        assert normalize_address("0x2") == "0x" + "0" * 63 + "2"

    def test_upper_case_is_lowered(self):
        assert normalize_address("0x" + "AB" * 32) == "0x" + "ab" * 32

    @pytest.mark.parametrize("value", ["", "2", "0x", "0xzz", "0x" + "1" * 65, 42])
    def test_invalid_addresses_rejected(self, value):
        with pytest.raises(SponsorshipValidationError):
            normalize_address(value, "sender")


class TestUnboundPayload:
    """Tests for UnboundPayload."""

    def test_build_is_deterministic(self):
        """Same sender and instructions must give byte-identical encodings."""
        first = build_payload(SENDER, [_transfer(), MoveCall("0x2::math::add", (u64(1), u64(2)))])
        second = build_payload(SENDER, [_transfer(), MoveCall("0x2::math::add", (u64(1), u64(2)))])

        assert first.to_bytes() == second.to_bytes()
        assert first.to_base64() == second.to_base64()

    def test_instruction_order_changes_bytes(self):
        call = MoveCall("0x2::math::hello_world")
        a = build_payload(SENDER, [_transfer(), call])
        b = build_payload(SENDER, [call, _transfer()])

        assert a.to_bytes() != b.to_bytes()

    def test_fee_is_unset(self):
        payload = build_payload(SENDER, [_transfer()])

        assert payload.fee is FEE_UNSET
        assert not payload.fee
        assert json.loads(payload.to_bytes())["fee"] is None

    def test_empty_instructions_rejected(self):
        with pytest.raises(SponsorshipValidationError) as exc_info:
            build_payload(SENDER, [])
        assert exc_info.value.field == "instructions"

    def test_decode_accepts_own_encoding(self):
        payload = build_payload(SENDER, [_transfer()])

        assert UnboundPayload.from_bytes(payload.to_bytes()) == payload

    def test_decode_rejects_non_canonical_bytes(self):
        payload = build_payload(SENDER, [_transfer()])
        pretty = json.dumps(json.loads(payload.to_bytes()), indent=2).encode()

        with pytest.raises(PayloadDecodeError):
            UnboundPayload.from_bytes(pretty)

    def test_decode_rejects_bound_fee(self):
        bound = build_payload(SENDER, [_transfer()]).bind_fee(_fee())

        with pytest.raises(PayloadDecodeError):
            UnboundPayload.from_bytes(bound.raw)

    def test_decode_rejects_garbage(self):
        with pytest.raises(PayloadDecodeError):
            UnboundPayload.from_base64("not base64!")
        with pytest.raises(PayloadDecodeError):
            UnboundPayload.from_bytes(b"[1, 2, 3]")

    def test_referenced_objects(self):
        payload = build_payload(SENDER, [_transfer()])

        assert payload.referenced_objects() == frozenset(["0x" + "aa" * 32])


class TestInstructions:
    """Tests for MoveCall, TransferValue and arguments."""

    def test_transfer_rejects_fee_placeholder(self):
        """The fee resource cannot be used as a value source."""
        with pytest.raises(TypeError):
            TransferValue(source=FEE_UNSET, amount=100, recipient=RECIPIENT)

    def test_transfer_rejects_plain_strings(self):
        with pytest.raises(TypeError):
            TransferValue(source="0x" + "aa" * 32, amount=100, recipient=RECIPIENT)

    @pytest.mark.parametrize("amount", [0, -1, True, 1.5])
    def test_transfer_rejects_bad_amounts(self, amount):
        with pytest.raises(SponsorshipValidationError):
            TransferValue(source=_coin("aa"), amount=amount, recipient=RECIPIENT)

    def test_move_call_normalizes_package(self):
        call = MoveCall("0x2::math::add", (u64(1), u64(2)))

        assert call.target == "0x" + "0" * 63 + "2::math::add"

    @pytest.mark.parametrize("target", ["math::add", "0x2::math", "0x2::::add", "nothex::m::f"])
    def test_move_call_rejects_bad_targets(self, target):
        with pytest.raises(SponsorshipValidationError):
            MoveCall(target)

    def test_u64_bounds(self):
        assert u64(2**64 - 1).value == 2**64 - 1
        with pytest.raises(SponsorshipValidationError):
            u64(2**64)
        with pytest.raises(SponsorshipValidationError):
            u64(-1)

    def test_bool_is_not_an_integer_argument(self):
        with pytest.raises(SponsorshipValidationError):
            PureArg("u64", True)

    def test_unsupported_argument_type(self):
        with pytest.raises(SponsorshipValidationError):
            PureArg("vector<u8>", "00")


class TestFeeBoundPayload:
    """Tests for fee binding."""

    def test_bind_keeps_intent_bytes(self):
        unbound = build_payload(SENDER, [_transfer()])
        bound = unbound.bind_fee(_fee())

        assert bound.intent_bytes() == unbound.intent_bytes()
        assert bound.unbound() == unbound
        assert bound.fee.owner == SPONSOR

    def test_digest_is_over_raw_bytes(self):
        bound = build_payload(SENDER, [_transfer()]).bind_fee(_fee())

        assert bound.digest == compute_digest(bound.raw)
        assert len(bound.digest) == 64

    def test_different_fee_changes_digest(self):
        unbound = build_payload(SENDER, [_transfer()])

        assert unbound.bind_fee(_fee(1000)).digest != unbound.bind_fee(_fee(2000)).digest

    def test_decode_round_trip(self):
        bound = build_payload(SENDER, [_transfer()]).bind_fee(_fee())

        decoded = FeeBoundPayload.from_base64(base64.b64encode(bound.raw).decode())
        assert decoded == bound

    def test_decode_requires_fee(self):
        unbound = build_payload(SENDER, [_transfer()])

        with pytest.raises(PayloadDecodeError):
            FeeBoundPayload.from_bytes(unbound.to_bytes())

    def test_fee_binding_validation(self):
        with pytest.raises(SponsorshipValidationError):
            FeeBinding(owner=SPONSOR, payment=(), price=1000, budget=10)
        with pytest.raises(SponsorshipValidationError):
            FeeBinding(owner=SPONSOR, payment=(_coin("ff"),), price=1000, budget=0)


def _set_first_instruction(value):
    def mutate(data):
        data["instructions"][0] = value
    return mutate


def _set_source(key, value):
    def mutate(data):
        data["instructions"][1]["source"][key] = value
    return mutate


class TestMalformedWire:
    """Structurally valid JSON with the wrong shapes must fail as a decode error."""

    @staticmethod
    def _wire() -> dict:
        call = MoveCall(target="0x2::math::add", arguments=(u64(1), u64(2)))
        bound = build_payload(SENDER, [call, _transfer()]).bind_fee(_fee())
        return json.loads(bound.raw)

    @pytest.mark.parametrize(
        "mutate",
        [
            _set_first_instruction("x"),
            _set_first_instruction(7),
            lambda data: data["instructions"][0].update(arguments=["x"]),
            lambda data: data["instructions"][0].update(arguments=5),
            lambda data: data["instructions"][1].update(source="x"),
            _set_source("version", "abc"),
            _set_source("version", None),
            lambda data: data["fee"].update(payment=["x"]),
            lambda data: data["fee"].update(payment=7),
            lambda data: data["fee"]["payment"][0].update(version="abc"),
            lambda data: data["fee"].update(price="cheap"),
        ],
    )
    def test_fee_bound_shapes(self, mutate):
        data = self._wire()
        mutate(data)

        with pytest.raises(PayloadDecodeError):
            FeeBoundPayload.from_bytes(json.dumps(data).encode())

    def test_unbound_shapes(self):
        data = json.loads(build_payload(SENDER, [_transfer()]).to_bytes())
        data["instructions"][0]["source"]["version"] = "abc"

        with pytest.raises(PayloadDecodeError):
            UnboundPayload.from_bytes(json.dumps(data).encode())
