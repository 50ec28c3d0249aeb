"""
Payload primitives for sponsored operations.

An operation moves through two payload shapes:
- UnboundPayload: instructions + sender, fee field fixed to FEE_UNSET
- FeeBoundPayload: the same instructions + sender, plus the sponsor's FeeBinding

Both encode to canonical JSON bytes (sorted keys, no whitespace, ASCII), so
identical inputs always produce identical bytes. The non-fee portion of a
payload is exposed separately through ``intent_bytes()``; the sponsorship
matching check compares exactly those bytes.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import json
import string
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from .exceptions import SponsorshipValidationError

PAYLOAD_VERSION = 1
ADDRESS_HEX_LENGTH = 64
DIGEST_PREFIX = b"TransactionData::"

INTEGER_BOUNDS: Dict[str, int] = {
    "u8": 2**8 - 1,
    "u16": 2**16 - 1,
    "u32": 2**32 - 1,
    "u64": 2**64 - 1,
    "u128": 2**128 - 1,
}
PURE_TYPES = frozenset([*INTEGER_BOUNDS, "bool", "address", "string"])

_HEX_DIGITS = frozenset(string.hexdigits)


class PayloadDecodeError(ValueError):
    """Raised when payload bytes cannot be decoded into a payload."""


def normalize_address(value: Any, field_name: str = "address") -> str:
    """Normalize a 0x-prefixed hex address to its full lower-case form."""
    if not isinstance(value, str):
        raise SponsorshipValidationError(f"{field_name} must be a string", field=field_name)
    candidate = value.strip().lower()
    if not candidate.startswith("0x"):
        raise SponsorshipValidationError(f"{field_name} must start with 0x", field=field_name)
    body = candidate[2:]
    if not body or len(body) > ADDRESS_HEX_LENGTH or not set(body) <= _HEX_DIGITS:
        raise SponsorshipValidationError(
            f"{field_name} is not a valid address: {value!r}", field=field_name
        )
    return "0x" + body.zfill(ADDRESS_HEX_LENGTH)


def canonical_json(data: Any) -> bytes:
    """Deterministic JSON encoding used for every payload byte form."""
    return json.dumps(
        data, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("ascii")


def compute_digest(raw: bytes) -> str:
    """Content digest of serialized payload bytes."""
    return hashlib.blake2b(DIGEST_PREFIX + raw, digest_size=32).hexdigest()


def _decode_object(raw: bytes) -> Dict[str, Any]:
    try:
        data = json.loads(raw.decode("ascii"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise PayloadDecodeError(f"payload is not canonical JSON: {e}") from e
    if not isinstance(data, dict):
        raise PayloadDecodeError("payload must be a JSON object")
    return data


def decode_base64(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise PayloadDecodeError(f"invalid base64 payload: {e}") from e


def _require_int(value: Any, name: str) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise SponsorshipValidationError(f"{name} must be an integer", field=name)
    return value


def _require_mapping(value: Any, name: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise PayloadDecodeError(f"{name} must be a JSON object, got {type(value).__name__}")
    return value


# =============================================================================
# Resources
# =============================================================================

@dataclass(frozen=True)
class ResourceRef:
    """Reference to a specific version of an owned ledger object."""
    object_id: str
    version: int
    digest: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "object_id", normalize_address(self.object_id, "object_id"))
        if _require_int(self.version, "version") < 0:
            raise SponsorshipValidationError("version must be non-negative", field="version")
        if not isinstance(self.digest, str) or not self.digest:
            raise SponsorshipValidationError("digest must be a non-empty string", field="digest")

    def to_wire(self) -> Dict[str, Any]:
        return {"objectId": self.object_id, "version": self.version, "digest": self.digest}

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "ResourceRef":
        data = _require_mapping(data, "resource reference")
        return cls(
            object_id=data["objectId"],
            version=data["version"],
            digest=data["digest"],
        )


@dataclass(frozen=True)
class Resource:
    """An owned, divisible value unit as reported by the ledger."""
    ref: ResourceRef
    resource_type: str
    balance: int
    owner: str

    @property
    def object_id(self) -> str:
        return self.ref.object_id


class FeeUnset:
    """Placeholder for a fee resource the sponsor has not bound yet.

    It is deliberately not a ResourceRef, so it can never be passed as the
    source of a value move.
    """

    _instance: Optional["FeeUnset"] = None

    def __new__(cls) -> "FeeUnset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "FEE_UNSET"


FEE_UNSET = FeeUnset()


# =============================================================================
# Instructions
# =============================================================================

@dataclass(frozen=True)
class PureArg:
    """Typed pure value argument of a contract call."""
    type_tag: str
    value: Union[int, bool, str]

    def __post_init__(self) -> None:
        if self.type_tag not in PURE_TYPES:
            raise SponsorshipValidationError(
                f"Unsupported argument type: {self.type_tag}", field="type_tag"
            )
        if self.type_tag in INTEGER_BOUNDS:
            value = _require_int(self.value, self.type_tag)
            if value < 0 or value > INTEGER_BOUNDS[self.type_tag]:
                raise SponsorshipValidationError(
                    f"{value} out of range for {self.type_tag}", field="value"
                )
        elif self.type_tag == "bool":
            if not isinstance(self.value, bool):
                raise SponsorshipValidationError("bool argument must be a bool", field="value")
        elif self.type_tag == "address":
            object.__setattr__(self, "value", normalize_address(self.value, "value"))
        elif not isinstance(self.value, str):
            raise SponsorshipValidationError("string argument must be a str", field="value")

    def to_wire(self) -> Dict[str, Any]:
        return {"kind": "pure", "type": self.type_tag, "value": self.value}


@dataclass(frozen=True)
class ObjectArg:
    """Owned or shared object passed by reference to a contract call."""
    ref: ResourceRef

    def to_wire(self) -> Dict[str, Any]:
        return {"kind": "object", "ref": self.ref.to_wire()}


Argument = Union[PureArg, ObjectArg]


def u64(value: int) -> PureArg:
    return PureArg("u64", value)


def _argument_from_wire(data: Dict[str, Any]) -> Argument:
    data = _require_mapping(data, "argument")
    kind = data.get("kind")
    if kind == "pure":
        return PureArg(type_tag=data["type"], value=data["value"])
    if kind == "object":
        return ObjectArg(ref=ResourceRef.from_wire(data["ref"]))
    raise PayloadDecodeError(f"unknown argument kind: {kind!r}")


@dataclass(frozen=True)
class MoveCall:
    """Typed invocation of ``<package>::<module>::<function>``."""
    target: str
    arguments: Tuple[Argument, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.target, str):
            raise SponsorshipValidationError("target must be a string", field="target")
        parts = self.target.split("::")
        if len(parts) != 3 or not all(parts):
            raise SponsorshipValidationError(
                f"target must be <package>::<module>::<function>, got {self.target!r}",
                field="target",
            )
        package = normalize_address(parts[0], "target")
        object.__setattr__(self, "target", "::".join([package, parts[1], parts[2]]))

        arguments = tuple(self.arguments)
        for arg in arguments:
            if not isinstance(arg, (PureArg, ObjectArg)):
                raise SponsorshipValidationError(
                    f"Unsupported argument {arg!r}; use PureArg or ObjectArg",
                    field="arguments",
                )
        object.__setattr__(self, "arguments", arguments)

    def referenced_objects(self) -> Tuple[str, ...]:
        return tuple(a.ref.object_id for a in self.arguments if isinstance(a, ObjectArg))

    def to_wire(self) -> Dict[str, Any]:
        return {
            "kind": "move_call",
            "target": self.target,
            "arguments": [a.to_wire() for a in self.arguments],
        }


@dataclass(frozen=True)
class TransferValue:
    """Split ``amount`` from an explicit source resource and send it to ``recipient``."""
    source: ResourceRef
    amount: int
    recipient: str

    def __post_init__(self) -> None:
        if isinstance(self.source, FeeUnset):
            raise TypeError(
                "The fee resource is not assigned until sponsorship; "
                "pass one of the sender's own resources as the value source"
            )
        if not isinstance(self.source, ResourceRef):
            raise TypeError(f"source must be a ResourceRef, got {type(self.source).__name__}")
        amount = _require_int(self.amount, "amount")
        if amount <= 0 or amount > INTEGER_BOUNDS["u64"]:
            raise SponsorshipValidationError("amount must be greater than 0", field="amount")
        object.__setattr__(self, "recipient", normalize_address(self.recipient, "recipient"))

    def referenced_objects(self) -> Tuple[str, ...]:
        return (self.source.object_id,)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "kind": "transfer_value",
            "source": self.source.to_wire(),
            "amount": self.amount,
            "recipient": self.recipient,
        }


Instruction = Union[MoveCall, TransferValue]


def instruction_from_wire(data: Dict[str, Any]) -> Instruction:
    data = _require_mapping(data, "instruction")
    kind = data.get("kind")
    if kind == "move_call":
        return MoveCall(
            target=data["target"],
            arguments=tuple(_argument_from_wire(a) for a in data.get("arguments", [])),
        )
    if kind == "transfer_value":
        return TransferValue(
            source=ResourceRef.from_wire(data["source"]),
            amount=data["amount"],
            recipient=data["recipient"],
        )
    raise PayloadDecodeError(f"unknown instruction kind: {kind!r}")


# =============================================================================
# Fee binding
# =============================================================================

@dataclass(frozen=True)
class FeeBinding:
    """Fee fields filled in by the sponsor."""
    owner: str
    payment: Tuple[ResourceRef, ...]
    price: int
    budget: int
    expiration: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "owner", normalize_address(self.owner, "fee.owner"))
        payment = tuple(self.payment)
        if not payment:
            raise SponsorshipValidationError("fee payment must reference a resource", field="payment")
        for ref in payment:
            if not isinstance(ref, ResourceRef):
                raise SponsorshipValidationError("fee payment entries must be ResourceRefs", field="payment")
        object.__setattr__(self, "payment", payment)
        if _require_int(self.price, "price") <= 0:
            raise SponsorshipValidationError("fee price must be positive", field="price")
        if _require_int(self.budget, "budget") <= 0:
            raise SponsorshipValidationError("fee budget must be positive", field="budget")
        if self.expiration is not None:
            _require_int(self.expiration, "expiration")

    @property
    def payment_ids(self) -> Tuple[str, ...]:
        return tuple(ref.object_id for ref in self.payment)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "payment": [ref.to_wire() for ref in self.payment],
            "price": self.price,
            "budget": self.budget,
            "expiration": self.expiration,
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "FeeBinding":
        data = _require_mapping(data, "fee binding")
        return cls(
            owner=data["owner"],
            payment=tuple(ResourceRef.from_wire(r) for r in data["payment"]),
            price=data["price"],
            budget=data["budget"],
            expiration=data.get("expiration"),
        )


# =============================================================================
# Payloads
# =============================================================================

def _normalize_instructions(instructions: Iterable[Instruction]) -> Tuple[Instruction, ...]:
    items = tuple(instructions)
    if not items:
        raise SponsorshipValidationError("at least one instruction is required", field="instructions")
    for item in items:
        if not isinstance(item, (MoveCall, TransferValue)):
            raise SponsorshipValidationError(
                f"Unsupported instruction {item!r}", field="instructions"
            )
    return items


def _core_wire(sender: str, instructions: Tuple[Instruction, ...]) -> Dict[str, Any]:
    return {
        "version": PAYLOAD_VERSION,
        "sender": sender,
        "instructions": [i.to_wire() for i in instructions],
    }


def _parse_core(data: Dict[str, Any]) -> Tuple[str, Tuple[Instruction, ...]]:
    if data.get("version") != PAYLOAD_VERSION:
        raise PayloadDecodeError(f"unsupported payload version: {data.get('version')!r}")
    raw_instructions = data.get("instructions")
    if not isinstance(raw_instructions, list):
        raise PayloadDecodeError("instructions must be a list")
    sender = normalize_address(data.get("sender"), "sender")
    instructions = _normalize_instructions(instruction_from_wire(i) for i in raw_instructions)
    return sender, instructions


@dataclass(frozen=True)
class UnboundPayload:
    """Operation description whose fee resource has not been assigned."""
    sender: str
    instructions: Tuple[Instruction, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "sender", normalize_address(self.sender, "sender"))
        object.__setattr__(self, "instructions", _normalize_instructions(self.instructions))

    @property
    def fee(self) -> FeeUnset:
        return FEE_UNSET

    def referenced_objects(self) -> frozenset:
        return frozenset(oid for i in self.instructions for oid in i.referenced_objects())

    def intent_bytes(self) -> bytes:
        """Canonical bytes of the non-fee portion (sender + instructions)."""
        return canonical_json(_core_wire(self.sender, self.instructions))

    def to_bytes(self) -> bytes:
        return canonical_json({**_core_wire(self.sender, self.instructions), "fee": None})

    def to_base64(self) -> str:
        return base64.b64encode(self.to_bytes()).decode("ascii")

    def bind_fee(self, fee: FeeBinding) -> "FeeBoundPayload":
        return FeeBoundPayload.create(self.sender, self.instructions, fee)

    @classmethod
    def from_bytes(cls, raw: bytes) -> "UnboundPayload":
        data = _decode_object(raw)
        if data.get("fee") is not None:
            raise PayloadDecodeError("unbound payload must not carry a fee binding")
        try:
            sender, instructions = _parse_core(data)
        except (KeyError, TypeError, ValueError, SponsorshipValidationError) as e:
            raise PayloadDecodeError(f"malformed unbound payload: {e}") from e
        payload = cls(sender=sender, instructions=instructions)
        if payload.to_bytes() != raw:
            raise PayloadDecodeError("payload bytes are not in canonical form")
        return payload

    @classmethod
    def from_base64(cls, value: str) -> "UnboundPayload":
        return cls.from_bytes(decode_base64(value))


@dataclass(frozen=True)
class FeeBoundPayload:
    """Payload with the sponsor's fee binding; ``raw`` is what every party signs."""
    sender: str
    instructions: Tuple[Instruction, ...]
    fee: FeeBinding
    raw: bytes = field(repr=False)

    @classmethod
    def create(
        cls,
        sender: str,
        instructions: Iterable[Instruction],
        fee: FeeBinding,
    ) -> "FeeBoundPayload":
        sender = normalize_address(sender, "sender")
        items = _normalize_instructions(instructions)
        raw = canonical_json({**_core_wire(sender, items), "fee": fee.to_wire()})
        return cls(sender=sender, instructions=items, fee=fee, raw=raw)

    @classmethod
    def from_bytes(cls, raw: bytes) -> "FeeBoundPayload":
        """Parse fee-bound bytes, rejecting anything not in canonical form."""
        data = _decode_object(raw)
        fee_data = data.get("fee")
        if not isinstance(fee_data, dict):
            raise PayloadDecodeError("fee-bound payload is missing its fee binding")
        try:
            sender, instructions = _parse_core(data)
            fee = FeeBinding.from_wire(fee_data)
        except (KeyError, TypeError, ValueError, SponsorshipValidationError) as e:
            raise PayloadDecodeError(f"malformed fee-bound payload: {e}") from e
        payload = cls.create(sender, instructions, fee)
        if payload.raw != raw:
            raise PayloadDecodeError("payload bytes are not in canonical form")
        return payload

    @classmethod
    def from_base64(cls, value: str) -> "FeeBoundPayload":
        return cls.from_bytes(decode_base64(value))

    @property
    def digest(self) -> str:
        return compute_digest(self.raw)

    def intent_bytes(self) -> bytes:
        return canonical_json(_core_wire(self.sender, self.instructions))

    def referenced_objects(self) -> frozenset:
        return frozenset(oid for i in self.instructions for oid in i.referenced_objects())

    def unbound(self) -> UnboundPayload:
        return UnboundPayload(sender=self.sender, instructions=self.instructions)

    def to_base64(self) -> str:
        return base64.b64encode(self.raw).decode("ascii")
