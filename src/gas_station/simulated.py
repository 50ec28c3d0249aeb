"""
In-process ledger and gas station.

Used by ``mode = "simulated"`` and by the test suite. The simulated ledger
keeps owned value objects in memory and applies the same acceptance rules a
real node applies to sponsored operations:

- exactly two authorizations, sender first and fee owner second, each a
  valid Ed25519 signature over the submitted bytes
- object references must match the current version of each object
- fee bindings past their expiration epoch are refused
- each payload digest is executed at most once

Execution is all-or-nothing for the instructions; the fee is charged
whenever the operation is committed, including when execution fails.
"""
from __future__ import annotations

import asyncio
import hashlib
import itertools
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .authorization import Ed25519Signer, SignerRole, verify_serialized_signature
from .config import NATIVE_RESOURCE_TYPE
from .ledger import LedgerReceipt, LedgerRPCError
from .payload import (
    FeeBinding,
    FeeBoundPayload,
    Instruction,
    MoveCall,
    ObjectArg,
    PayloadDecodeError,
    Resource,
    ResourceRef,
    TransferValue,
    UnboundPayload,
    compute_digest,
    normalize_address,
)
from .sponsor_client import SponsorResponse, SponsorServiceError

logger = logging.getLogger(__name__)

REFERENCE_GAS_PRICE = 1000
BASE_GAS_UNITS = 1000
GAS_UNITS_PER_INSTRUCTION = 500


@dataclass
class SimulatedObject:
    """Mutable ledger-side state of one owned value object."""
    object_id: str
    owner: str
    resource_type: str
    balance: int
    version: int = 1

    @property
    def digest(self) -> str:
        return hashlib.sha256(f"{self.object_id}:{self.version}".encode()).hexdigest()

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(object_id=self.object_id, version=self.version, digest=self.digest)

    def to_resource(self) -> Resource:
        return Resource(
            ref=self.ref,
            resource_type=self.resource_type,
            balance=self.balance,
            owner=self.owner,
        )


def estimate_gas_units(instructions: Sequence[Instruction]) -> int:
    return BASE_GAS_UNITS + GAS_UNITS_PER_INSTRUCTION * len(instructions)


class SimulatedLedger:
    """In-memory ledger node implementing ``LedgerNode``."""

    def __init__(
        self,
        epoch: int = 0,
        reference_gas_price: int = REFERENCE_GAS_PRICE,
        latency_seconds: float = 0.0,
    ):
        self.epoch = epoch
        self.reference_gas_price = reference_gas_price
        self.latency_seconds = latency_seconds
        self._objects: Dict[str, SimulatedObject] = {}
        self._executed: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self.submissions: List[List[str]] = []

    # -------------------------------------------------------------------------
    # State helpers
    # -------------------------------------------------------------------------

    def _new_object_id(self) -> str:
        return "0x" + hashlib.blake2b(
            f"simulated-object:{next(self._ids)}".encode(), digest_size=32
        ).hexdigest()

    def mint(
        self,
        owner: str,
        balance: int,
        resource_type: str = NATIVE_RESOURCE_TYPE,
    ) -> Resource:
        """Create a new value object owned by ``owner``."""
        obj = SimulatedObject(
            object_id=self._new_object_id(),
            owner=normalize_address(owner, "owner"),
            resource_type=resource_type,
            balance=balance,
        )
        self._objects[obj.object_id] = obj
        return obj.to_resource()

    def get_object(self, object_id: str) -> Optional[Resource]:
        obj = self._objects.get(normalize_address(object_id, "object_id"))
        return obj.to_resource() if obj else None

    def owned(self, owner: str, resource_type: str = NATIVE_RESOURCE_TYPE) -> List[Resource]:
        owner = normalize_address(owner, "owner")
        return [
            obj.to_resource()
            for obj in self._objects.values()
            if obj.owner == owner and obj.resource_type == resource_type and obj.balance > 0
        ]

    def balance_of(self, owner: str, resource_type: str = NATIVE_RESOURCE_TYPE) -> int:
        return sum(r.balance for r in self.owned(owner, resource_type))

    def advance_epoch(self, epochs: int = 1) -> int:
        self.epoch += epochs
        return self.epoch

    def committed(self, digest: str) -> Optional[Dict[str, Any]]:
        """Committed record for ``digest``, including its authorizations."""
        return self._executed.get(digest)

    # -------------------------------------------------------------------------
    # LedgerNode
    # -------------------------------------------------------------------------

    async def get_owned_resources(self, identity: str, resource_type: str) -> List[Resource]:
        await asyncio.sleep(0)
        return self.owned(identity, resource_type)

    async def submit_operation(
        self,
        payload_bytes: bytes,
        authorizations: Sequence[str],
    ) -> LedgerReceipt:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        self.submissions.append(list(authorizations))

        digest = compute_digest(payload_bytes)
        if digest in self._executed:
            raise LedgerRPCError(f"Transaction {digest} was already executed", code=-32002)

        try:
            payload = FeeBoundPayload.from_bytes(payload_bytes)
        except PayloadDecodeError as e:
            raise LedgerRPCError(f"Invalid transaction bytes: {e}", code=-32602) from e

        self._check_authorizations(payload, payload_bytes, authorizations)

        fee = payload.fee
        if fee.expiration is not None and self.epoch > fee.expiration:
            raise LedgerRPCError(
                f"Transaction expired at epoch {fee.expiration} (current epoch {self.epoch})",
                code=-32002,
            )
        if fee.price < self.reference_gas_price:
            raise LedgerRPCError(
                f"Gas price {fee.price} below reference gas price {self.reference_gas_price}",
                code=-32002,
            )

        fee_objects = self._load_refs(fee.payment, fee.owner)
        fee_balance = sum(obj.balance for obj in fee_objects)
        if fee_balance < fee.budget:
            raise LedgerRPCError(
                f"Insufficient gas coin balance {fee_balance} for budget {fee.budget}",
                code=-32002,
            )
        for instruction in payload.instructions:
            self._load_instruction_refs(instruction, payload.sender)

        gas_used = estimate_gas_units(payload.instructions) * fee.price
        created: List[Resource] = []
        mutated: Dict[str, SimulatedObject] = {obj.object_id: obj for obj in fee_objects}
        if gas_used > fee.budget:
            status: Dict[str, Any] = {
                "status": "failure",
                "error": f"InsufficientGas: needed {gas_used}, budget {fee.budget}",
            }
            gas_used = fee.budget
        else:
            status = self._execute(payload.instructions, mutated, created)

        self._charge(fee_objects, gas_used)
        for obj in mutated.values():
            obj.version += 1

        effects = {
            "status": status,
            "executedEpoch": str(self.epoch),
            "gasUsed": {
                "computationCost": str(gas_used),
                "storageCost": "0",
                "storageRebate": "0",
            },
            "gasObject": {"owner": fee.owner, "reference": fee_objects[0].ref.to_wire()},
            "mutated": [obj.ref.to_wire() for obj in mutated.values()],
            "created": [r.ref.to_wire() for r in created],
            "transactionDigest": digest,
        }
        self._executed[digest] = {
            "digest": digest,
            "sender": payload.sender,
            "fee_owner": fee.owner,
            "authorizations": list(authorizations),
            "epoch": self.epoch,
            "effects": effects,
        }
        logger.info("Simulated ledger committed %s (status=%s)", digest, status["status"])
        return LedgerReceipt(
            digest=digest,
            effects=effects,
            raw={"digest": digest, "effects": effects, "events": [], "objectChanges": []},
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_authorizations(
        payload: FeeBoundPayload,
        payload_bytes: bytes,
        authorizations: Sequence[str],
    ) -> None:
        required = [payload.sender, payload.fee.owner]
        if len(authorizations) != len(required):
            raise LedgerRPCError(
                f"Expected {len(required)} signatures (sender, gas owner), got {len(authorizations)}",
                code=-32002,
            )
        for index, (serialized, expected) in enumerate(zip(authorizations, required)):
            signer = verify_serialized_signature(serialized, payload_bytes)
            if signer != expected:
                raise LedgerRPCError(
                    f"Invalid user signature: signature {index} does not verify for "
                    f"required signer {expected}",
                    code=-32002,
                )

    def _load_ref(self, ref: ResourceRef, owner: Optional[str]) -> SimulatedObject:
        obj = self._objects.get(ref.object_id)
        if obj is None:
            raise LedgerRPCError(f"Object {ref.object_id} not found", code=-32002)
        if obj.version != ref.version or obj.digest != ref.digest:
            raise LedgerRPCError(
                f"Object {ref.object_id} is not available for consumption, "
                f"current version {obj.version}",
                code=-32002,
            )
        if owner is not None and obj.owner != owner:
            raise LedgerRPCError(f"Object {ref.object_id} is not owned by {owner}", code=-32002)
        return obj

    def _load_refs(self, refs: Iterable[ResourceRef], owner: str) -> List[SimulatedObject]:
        return [self._load_ref(ref, owner) for ref in refs]

    def _load_instruction_refs(self, instruction: Instruction, sender: str) -> None:
        if isinstance(instruction, TransferValue):
            self._load_ref(instruction.source, sender)
        elif isinstance(instruction, MoveCall):
            for arg in instruction.arguments:
                if isinstance(arg, ObjectArg):
                    self._load_ref(arg.ref, None)

    def _execute(
        self,
        instructions: Sequence[Instruction],
        mutated: Dict[str, SimulatedObject],
        created: List[Resource],
    ) -> Dict[str, Any]:
        # dry run first so a failing command leaves every balance untouched
        pending: Dict[str, int] = {}
        for index, instruction in enumerate(instructions):
            if not isinstance(instruction, TransferValue):
                continue
            source = self._objects[instruction.source.object_id]
            remaining = pending.get(source.object_id, source.balance)
            if remaining < instruction.amount:
                return {
                    "status": "failure",
                    "error": f"InsufficientCoinBalance in command {index}",
                }
            pending[source.object_id] = remaining - instruction.amount

        for instruction in instructions:
            if not isinstance(instruction, TransferValue):
                continue
            source = self._objects[instruction.source.object_id]
            source.balance -= instruction.amount
            mutated[source.object_id] = source
            obj = SimulatedObject(
                object_id=self._new_object_id(),
                owner=instruction.recipient,
                resource_type=source.resource_type,
                balance=instruction.amount,
            )
            self._objects[obj.object_id] = obj
            created.append(obj.to_resource())
        return {"status": "success"}

    @staticmethod
    def _charge(fee_objects: List[SimulatedObject], amount: int) -> None:
        for obj in fee_objects:
            taken = min(obj.balance, amount)
            obj.balance -= taken
            amount -= taken
            if amount == 0:
                break


class SimulatedGasStation:
    """Sponsor service backed by a ``SimulatedLedger`` fee pool.

    Budgets are the estimated computation cost plus ``budget_margin`` unless
    the caller passes a ceiling, which is then used as the budget.
    """

    def __init__(
        self,
        ledger: SimulatedLedger,
        sponsor_signer: Optional[Ed25519Signer] = None,
        budget_margin: float = 0.05,
        expiration_epochs: int = 1,
        ttl_seconds: int = 3600,
    ):
        self._ledger = ledger
        self._signer = sponsor_signer or Ed25519Signer(role=SignerRole.SPONSOR)
        self._budget_margin = budget_margin
        self._expiration_epochs = expiration_epochs
        self._ttl_seconds = ttl_seconds
        self.rejection: Optional[SponsorServiceError] = None
        self.requests: List[Dict[str, Any]] = []

    @property
    def address(self) -> str:
        return self._signer.address

    @property
    def signer(self) -> Ed25519Signer:
        return self._signer

    def fund(self, balance: int, count: int = 1) -> List[Resource]:
        """Add ``count`` fee resources of ``balance`` each to the sponsor pool."""
        return [self._ledger.mint(self.address, balance) for _ in range(count)]

    def estimate_budget(self, unbound: UnboundPayload) -> int:
        cost = estimate_gas_units(unbound.instructions) * self._ledger.reference_gas_price
        return int(math.ceil(cost * (1 + self._budget_margin)))

    async def sponsor(
        self,
        unbound_payload_b64: str,
        sender: str,
        fee_ceiling: Optional[int] = None,
    ) -> SponsorResponse:
        self.requests.append(
            {"payload": unbound_payload_b64, "sender": sender, "fee_ceiling": fee_ceiling}
        )
        if self.rejection is not None:
            raise self.rejection

        try:
            unbound = UnboundPayload.from_base64(unbound_payload_b64)
        except PayloadDecodeError as e:
            raise SponsorServiceError(f"Invalid transaction kind: {e}", status_code=400) from e
        if normalize_address(sender, "sender") != unbound.sender:
            raise SponsorServiceError("Sender does not match the transaction kind", status_code=400)

        budget = fee_ceiling if fee_ceiling is not None else self.estimate_budget(unbound)
        used = unbound.referenced_objects()
        candidates = [
            r for r in self._ledger.owned(self.address)
            if r.object_id not in used and r.balance >= budget
        ]
        if not candidates:
            raise SponsorServiceError("Gas station fund exhausted", status_code=503)

        fee = FeeBinding(
            owner=self.address,
            payment=(candidates[0].ref,),
            price=self._ledger.reference_gas_price,
            budget=budget,
            expiration=self._ledger.epoch + self._expiration_epochs,
        )
        payload = unbound.bind_fee(fee)
        logger.debug("Simulated gas station bound %s with budget %d", payload.digest, budget)
        return SponsorResponse(
            tx_bytes=payload.to_base64(),
            signature=self._signer.sign_bytes(payload.raw),
            digest=payload.digest,
            expire_at_time=int(time.time()) + self._ttl_seconds,
            expire_after_epoch=fee.expiration,
        )
