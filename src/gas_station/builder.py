"""
Payload builder.

Produces UnboundPayloads: sender + instructions with the fee resource left
unset. Value moves name an explicit resource of the sender as their source;
the sender's resources are looked up here, before any sponsor is contacted.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional, Sequence

from .config import NATIVE_RESOURCE_TYPE
from .exceptions import NoEligibleResource, SponsorshipValidationError, Stage, StageTimeout
from .ledger import LedgerNode
from .payload import (
    Argument,
    Instruction,
    MoveCall,
    Resource,
    ResourceRef,
    TransferValue,
    UnboundPayload,
    normalize_address,
    u64,
)

logger = logging.getLogger(__name__)


def build_payload(sender: str, instructions: Iterable[Instruction]) -> UnboundPayload:
    """
    Build an unbound payload.

    Identical sender + instruction sequences always encode to identical bytes.

    Raises:
        SponsorshipValidationError: empty instruction list or malformed sender
    """
    return UnboundPayload(sender=sender, instructions=tuple(instructions))


class PayloadBuilder:
    """Fluent helper collecting instructions for one sender.

    Usage:
        unbound = (
            PayloadBuilder(sender)
            .transfer_value(coin.ref, 100, recipient)
            .move_call(f"{package}::math::add", u64(1), u64(2))
            .build()
        )
    """

    def __init__(self, sender: str):
        self._sender = normalize_address(sender, "sender")
        self._instructions: List[Instruction] = []

    @property
    def sender(self) -> str:
        return self._sender

    def move_call(self, target: str, *arguments: Argument) -> "PayloadBuilder":
        self._instructions.append(MoveCall(target=target, arguments=tuple(arguments)))
        return self

    def transfer_value(self, source: ResourceRef, amount: int, recipient: str) -> "PayloadBuilder":
        self._instructions.append(TransferValue(source=source, amount=amount, recipient=recipient))
        return self

    def build(self) -> UnboundPayload:
        return build_payload(self._sender, self._instructions)


async def resolve_value_source(
    ledger: LedgerNode,
    owner: str,
    resource_type: str,
    amount: int,
    timeout_seconds: Optional[float] = None,
) -> Resource:
    """
    Pick the first resource of ``owner`` whose balance covers ``amount``.

    Raises:
        NoEligibleResource: owner holds no resource of the type, or none large enough
        StageTimeout: the resource query exceeded ``timeout_seconds``
    """
    owner = normalize_address(owner, "sender")
    query = ledger.get_owned_resources(owner, resource_type)
    try:
        if timeout_seconds is not None:
            resources = await asyncio.wait_for(query, timeout=timeout_seconds)
        else:
            resources = await query
    except asyncio.TimeoutError:
        raise StageTimeout(Stage.RESOURCE_QUERY, timeout_seconds or 0.0) from None

    if not resources:
        raise NoEligibleResource(owner, resource_type, amount)
    for resource in resources:
        if resource.balance >= amount:
            logger.debug(
                "Selected %s (balance %d) as value source for %s",
                resource.object_id, resource.balance, owner,
            )
            return resource
    raise NoEligibleResource(
        owner, resource_type, amount, available=max(r.balance for r in resources)
    )


async def build_transfer(
    ledger: LedgerNode,
    sender: str,
    recipient: str,
    amount: int,
    resource_type: str = NATIVE_RESOURCE_TYPE,
    timeout_seconds: Optional[float] = None,
) -> UnboundPayload:
    """Transfer ``amount`` native units from one of the sender's own resources."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise SponsorshipValidationError("Amount must be greater than 0", field="amount")
    recipient = normalize_address(recipient, "recipient")
    source = await resolve_value_source(ledger, sender, resource_type, amount, timeout_seconds)
    return PayloadBuilder(sender).transfer_value(source.ref, amount, recipient).build()


def build_move_call(
    sender: str,
    target: str,
    arguments: Sequence[Argument] = (),
) -> UnboundPayload:
    return PayloadBuilder(sender).move_call(target, *arguments).build()


def demo_math_call(
    package_id: str,
    num1: Optional[int] = None,
    num2: Optional[int] = None,
) -> MoveCall:
    """``math::add(num1, num2)`` when both operands are given, else ``math::hello_world()``."""
    if not package_id:
        raise SponsorshipValidationError("Move package ID not configured", field="move_package_id")
    if num1 is not None and num2 is not None:
        return MoveCall(target=f"{package_id}::math::add", arguments=(u64(num1), u64(num2)))
    if num1 is not None or num2 is not None:
        raise SponsorshipValidationError("num1 and num2 must be given together", field="num2")
    return MoveCall(target=f"{package_id}::math::hello_world")
