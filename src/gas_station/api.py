"""HTTP routes for building, sponsoring and executing sponsored transactions."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .builder import demo_math_call
from .config import GasStationSettings, load_settings
from .exceptions import GasStationError, SponsorshipRejected, SponsorshipValidationError
from .ledger import LedgerNode, LedgerRPCError, NodeClient
from .payload import FeeBoundPayload, PayloadDecodeError
from .pipeline import SponsoredTransactionPipeline
from .simulated import SimulatedGasStation, SimulatedLedger
from .sponsor_client import GasStationClient, SponsorService
from .submitter import Failure

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sponsored-transactions"])

SIMULATED_POOL_COINS = 4
SIMULATED_POOL_BALANCE = 10_000_000_000


# Request/Response Models

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class BuildSponsoredTxRequest(_CamelModel):
    """Request to build and sponsor the demo contract call."""
    sender: str = Field(..., min_length=1, description="Sender address")
    num1: Optional[int] = Field(None, ge=0, description="First operand for math::add")
    num2: Optional[int] = Field(None, ge=0, description="Second operand for math::add")


class BuildTransferTxRequest(_CamelModel):
    """Request to build and sponsor a native-unit transfer."""
    sender: str = Field(..., min_length=1, description="Sender address")
    recipient: str = Field(..., min_length=1, description="Recipient address")
    amount: int = Field(..., gt=0, description="Amount in the smallest native unit")


class SponsoredTxResponse(_CamelModel):
    """Sponsored payload for the wallet to sign."""
    tx_bytes: str = Field(..., alias="txBytes")
    sponsor_signature: str = Field(..., alias="sponsorSignature")
    digest: str


class ExecuteSponsoredTxRequest(_CamelModel):
    """Sponsored payload plus both signatures."""
    tx_bytes: str = Field(..., alias="txBytes", min_length=1)
    sponsor_signature: str = Field(..., alias="sponsorSignature", min_length=1)
    sender_signature: str = Field(..., alias="senderSignature", min_length=1)


class ExecuteSponsoredTxResponse(_CamelModel):
    digest: str
    effects: Dict[str, Any] = Field(default_factory=dict)


# Dependencies

class GasStationDependencies:
    """Dependencies for sponsored-transaction routes."""
    def __init__(self, pipeline: SponsoredTransactionPipeline, settings: GasStationSettings):
        self.pipeline = pipeline
        self.settings = settings


def get_deps() -> GasStationDependencies:
    """Dependency injection placeholder."""
    raise NotImplementedError("Must be overridden")


# Routes

@router.post("/build-sponsored-tx", response_model=SponsoredTxResponse)
async def build_sponsored_tx(
    request: BuildSponsoredTxRequest,
    deps: GasStationDependencies = Depends(get_deps),
):
    """Build the demo contract call and have the gas station sponsor it."""
    call = demo_math_call(deps.settings.move_package_id, request.num1, request.num2)
    operation = deps.pipeline.prepare(request.sender, [call])
    result = await deps.pipeline.sponsor(operation)
    return SponsoredTxResponse(
        tx_bytes=result.payload.to_base64(),
        sponsor_signature=result.sponsor_authorization.signature,
        digest=result.digest,
    )


@router.post("/build-transfer-tx", response_model=SponsoredTxResponse)
async def build_transfer_tx(
    request: BuildTransferTxRequest,
    deps: GasStationDependencies = Depends(get_deps),
):
    """Build a transfer from one of the sender's resources and sponsor it."""
    operation = await deps.pipeline.prepare_transfer(
        request.sender, request.recipient, request.amount
    )
    result = await deps.pipeline.sponsor(operation)
    return SponsoredTxResponse(
        tx_bytes=result.payload.to_base64(),
        sponsor_signature=result.sponsor_authorization.signature,
        digest=result.digest,
    )


@router.post("/execute-sponsored-tx", response_model=ExecuteSponsoredTxResponse)
async def execute_sponsored_tx(
    request: ExecuteSponsoredTxRequest,
    deps: GasStationDependencies = Depends(get_deps),
):
    """Submit a sponsored payload with sender and sponsor signatures."""
    try:
        payload = FeeBoundPayload.from_base64(request.tx_bytes)
    except PayloadDecodeError as e:
        raise SponsorshipValidationError(f"Invalid transaction bytes: {e}", field="txBytes") from e

    outcome = await deps.pipeline.submitter.submit_authorizations(
        payload.raw, [request.sender_signature, request.sponsor_signature]
    )
    if isinstance(outcome, Failure):
        raise outcome.to_exception()
    return ExecuteSponsoredTxResponse(digest=outcome.digest, effects=outcome.effects)


# Error handling

def _error_response(status_code: int, error: str, message: str, details: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "details": details},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map the gas-station exception hierarchy onto HTTP responses."""

    @app.exception_handler(GasStationError)
    async def gas_station_error_handler(request: Request, exc: GasStationError) -> JSONResponse:
        status_code = exc.http_status
        if isinstance(exc, SponsorshipRejected) and exc.rate_limited:
            status_code = status.HTTP_429_TOO_MANY_REQUESTS
        logger.warning(
            f"{request.url.path} failed: [{exc.error_code}] {exc.message}",
            extra={"error": exc.to_dict()},
        )
        return _error_response(status_code, exc.error_code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
            }
            for error in exc.errors()
        ]
        return _error_response(
            status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR", "Invalid request body", errors
        )

    @app.exception_handler(LedgerRPCError)
    async def ledger_error_handler(request: Request, exc: LedgerRPCError) -> JSONResponse:
        logger.error(f"Ledger node error on {request.url.path}: {exc}")
        return _error_response(
            status.HTTP_502_BAD_GATEWAY, "LEDGER_NODE_ERROR", str(exc), {"code": exc.code}
        )

    @app.exception_handler(httpx.HTTPError)
    async def transport_error_handler(request: Request, exc: httpx.HTTPError) -> JSONResponse:
        logger.error(f"Upstream transport error on {request.url.path}: {exc}")
        return _error_response(
            status.HTTP_502_BAD_GATEWAY, "UPSTREAM_UNAVAILABLE", str(exc) or type(exc).__name__, {}
        )


# Application

def build_dependencies(settings: GasStationSettings) -> GasStationDependencies:
    """Wire a live node + gas station, or in-process simulated collaborators."""
    ledger: LedgerNode
    sponsor: SponsorService
    if settings.mode == "live":
        settings.validate_live()
        ledger = NodeClient(
            settings.resolved_node_url,
            timeout_seconds=settings.timeouts.http_timeout_seconds,
        )
        sponsor = GasStationClient(
            settings.gas_station_url,
            settings.gas_station_access_key,
            timeout_seconds=settings.timeouts.http_timeout_seconds,
        )
    else:
        simulated_ledger = SimulatedLedger()
        gas_station = SimulatedGasStation(simulated_ledger)
        gas_station.fund(SIMULATED_POOL_BALANCE, count=SIMULATED_POOL_COINS)
        ledger, sponsor = simulated_ledger, gas_station
        logger.info("Running with simulated ledger; sponsor %s", gas_station.address)
    pipeline = SponsoredTransactionPipeline(ledger, sponsor, settings)
    return GasStationDependencies(pipeline=pipeline, settings=settings)


def create_app(
    settings: GasStationSettings | None = None,
    deps: GasStationDependencies | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    deps = deps or build_dependencies(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Gas station API starting (mode={settings.mode}, network={settings.network})")
        yield
        for collaborator in (deps.pipeline.ledger, deps.pipeline.sponsor_service):
            close = getattr(collaborator, "close", None)
            if close is not None:
                await close()
        logger.info("Gas station API stopped")

    app = FastAPI(
        title="Gas Station Sponsored Transaction API",
        version="0.1.0",
        lifespan=lifespan,
    )
    register_exception_handlers(app)
    app.include_router(router, prefix="/api")
    app.dependency_overrides[get_deps] = lambda: deps

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok", "mode": settings.mode, "network": settings.network}

    return app
