"""Gas station (sponsor service) interface and JSON-RPC client."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class SponsorServiceError(Exception):
    """Sponsor service refused or failed a sponsorship request."""

    def __init__(self, reason: str, status_code: Optional[int] = None):
        self.reason = reason
        self.status_code = status_code
        super().__init__(reason)


def _optional_int(result: dict[str, Any], key: str) -> Optional[int]:
    value = result.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise SponsorServiceError(f"Sponsor returned invalid {key}: {value!r}") from None


@dataclass
class SponsorResponse:
    """Raw sponsor service answer, before any verification."""
    tx_bytes: str
    signature: str
    digest: str
    expire_at_time: Optional[int] = None  # unix seconds
    expire_after_epoch: Optional[int] = None

    @property
    def expires_at(self) -> Optional[datetime]:
        if self.expire_at_time is None:
            return None
        return datetime.fromtimestamp(self.expire_at_time, tz=timezone.utc)

    @classmethod
    def from_rpc(cls, result: dict[str, Any]) -> "SponsorResponse":
        for key in ("txBytes", "signature", "txDigest"):
            if not isinstance(result.get(key), str):
                raise SponsorServiceError(f"Sponsor returned invalid payload (missing {key})")
        return cls(
            tx_bytes=result["txBytes"],
            signature=result["signature"],
            digest=result["txDigest"],
            expire_at_time=_optional_int(result, "expireAtTime"),
            expire_after_epoch=_optional_int(result, "expireAfterEpoch"),
        )


class SponsorService(Protocol):
    """Sponsor that binds its own fee resource to an unbound payload."""

    async def sponsor(
        self,
        unbound_payload_b64: str,
        sender: str,
        fee_ceiling: Optional[int] = None,
    ) -> SponsorResponse:
        ...


class GasStationClient:
    """Gas station client (sponsor model).

    The request carries only the unbound payload and sender; the gas
    station selects a fee resource from its own pool, signs, and returns the
    fee-bound bytes.
    """

    def __init__(
        self,
        url: str,
        access_key: str,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = url
        self._access_key = access_key
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._request_id = 0

    @property
    def available(self) -> bool:
        """Check if the gas station access key is configured."""
        return bool(self._access_key)

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        if not self.available:
            raise SponsorServiceError("Gas station access key not configured")
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        response = await self._client.post(
            self._url,
            headers={"X-Api-Key": self._access_key},
            json=payload,
        )
        if response.status_code == 429:
            raise SponsorServiceError("Gas station rate limit exceeded", status_code=429)
        if response.status_code != 200:
            raise SponsorServiceError(
                f"Gas station API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise SponsorServiceError(
                f"Gas station returned a non-JSON response: {e}", status_code=response.status_code
            ) from e
        if not isinstance(data, dict):
            raise SponsorServiceError(
                "Gas station returned a malformed JSON-RPC response", status_code=response.status_code
            )
        if data.get("error"):
            error = data["error"]
            reason = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise SponsorServiceError(reason, status_code=response.status_code)
        return data.get("result")

    async def sponsor(
        self,
        unbound_payload_b64: str,
        sender: str,
        fee_ceiling: Optional[int] = None,
    ) -> SponsorResponse:
        params: list[Any] = [unbound_payload_b64, sender]
        # omitted ceiling = gas station auto-budgets with its own margin
        if fee_ceiling is not None:
            params.append(fee_ceiling)
        result = await self._rpc("gas_sponsorTransactionBlock", params)
        if not isinstance(result, dict):
            raise SponsorServiceError("Sponsor returned invalid sponsorship payload")
        response = SponsorResponse.from_rpc(result)
        logger.info("Gas station sponsored payload for %s: digest=%s", sender, response.digest)
        return response

    async def close(self) -> None:
        await self._client.aclose()
