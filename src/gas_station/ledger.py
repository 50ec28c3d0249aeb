"""Ledger node interface and JSON-RPC client."""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

import httpx

from .exceptions import SponsorshipValidationError
from .payload import Resource, ResourceRef

logger = logging.getLogger(__name__)

COINS_PAGE_LIMIT = 50

EXECUTE_OPTIONS = {
    "showEffects": True,
    "showEvents": True,
    "showObjectChanges": True,
    "showBalanceChanges": True,
}


class LedgerRPCError(Exception):
    """Ledger node returned an error for a query or submission."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        self.code = code
        self.data = data
        super().__init__(message)


def _coin_to_resource(coin: dict[str, Any], owner: str, resource_type: str) -> Resource:
    return Resource(
        ref=ResourceRef(
            object_id=coin["coinObjectId"],
            version=int(coin["version"]),
            digest=coin["digest"],
        ),
        resource_type=coin.get("coinType", resource_type),
        balance=int(coin["balance"]),
        owner=owner,
    )


@dataclass
class LedgerReceipt:
    """Ledger response to an accepted submission."""
    digest: str
    effects: dict[str, Any]
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def execution_status(self) -> str:
        status = self.effects.get("status", {})
        if isinstance(status, dict):
            return str(status.get("status", "unknown"))
        return str(status)

    @property
    def execution_error(self) -> Optional[str]:
        status = self.effects.get("status", {})
        if isinstance(status, dict):
            return status.get("error")
        return None

    @property
    def succeeded(self) -> bool:
        return self.execution_status == "success"


class LedgerNode(Protocol):
    """Read queries plus submission, as exposed by a ledger node."""

    async def get_owned_resources(self, identity: str, resource_type: str) -> list[Resource]:
        ...

    async def submit_operation(
        self,
        payload_bytes: bytes,
        authorizations: Sequence[str],
    ) -> LedgerReceipt:
        ...


class NodeClient:
    """Async JSON-RPC client for a ledger node.

    Uses raw httpx; every method is a JSON-RPC 2.0 call.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not url:
            raise ValueError("Ledger node URL is not configured")
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._request_id = 0

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        response = await self._client.post(self._url, json=payload)
        response.raise_for_status()
        try:
            data = response.json()
        except ValueError as e:
            raise LedgerRPCError(f"Ledger node returned a non-JSON response: {e}") from e
        if not isinstance(data, dict):
            raise LedgerRPCError("Ledger node returned a malformed JSON-RPC response")
        if data.get("error"):
            error = data["error"]
            if isinstance(error, dict):
                raise LedgerRPCError(
                    error.get("message", "Unknown RPC error"),
                    code=error.get("code"),
                    data=error.get("data"),
                )
            raise LedgerRPCError(str(error))
        return data.get("result")

    async def get_owned_resources(self, identity: str, resource_type: str) -> list[Resource]:
        """Return every resource of ``resource_type`` owned by ``identity``."""
        resources: list[Resource] = []
        cursor: Optional[str] = None
        while True:
            result = await self._rpc(
                "suix_getCoins", [identity, resource_type, cursor, COINS_PAGE_LIMIT]
            )
            if not isinstance(result, dict):
                raise LedgerRPCError("Ledger returned invalid coin page")
            try:
                for coin in result.get("data", []):
                    resources.append(_coin_to_resource(coin, identity, resource_type))
            except (KeyError, TypeError, ValueError, SponsorshipValidationError) as e:
                raise LedgerRPCError(f"Ledger returned an invalid coin entry: {e}") from e
            if not result.get("hasNextPage") or not result.get("nextCursor"):
                break
            cursor = result["nextCursor"]
        logger.debug("Found %d %s resources for %s", len(resources), resource_type, identity)
        return resources

    async def submit_operation(
        self,
        payload_bytes: bytes,
        authorizations: Sequence[str],
    ) -> LedgerReceipt:
        """Submit payload bytes with authorizations in the order given."""
        result = await self._rpc(
            "sui_executeTransactionBlock",
            [
                base64.b64encode(payload_bytes).decode("ascii"),
                list(authorizations),
                EXECUTE_OPTIONS,
                "WaitForLocalExecution",
            ],
        )
        if not isinstance(result, dict) or not isinstance(result.get("digest"), str):
            raise LedgerRPCError("Ledger returned invalid execution payload")
        effects = result.get("effects") or {}
        if not isinstance(effects, dict):
            raise LedgerRPCError("Ledger returned invalid execution effects")
        return LedgerReceipt(
            digest=result["digest"],
            effects=effects,
            raw=result,
        )

    async def close(self) -> None:
        await self._client.aclose()
