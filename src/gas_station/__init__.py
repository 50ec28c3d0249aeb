"""Sponsored-operation builder, sponsor coordinator and dual-authorization submitter."""

from .authorization import (
    SUBMISSION_ORDER,
    Authorization,
    AuthorizationPair,
    Ed25519Signer,
    SignerRole,
    UserSigner,
)
from .builder import (
    PayloadBuilder,
    build_move_call,
    build_payload,
    build_transfer,
    resolve_value_source,
)
from .config import GasStationSettings, load_settings
from .coordinator import SponsorshipCoordinator, SponsorshipResult
from .exceptions import (
    AuthorizationMismatch,
    FeeCeilingExceeded,
    GasStationError,
    IntegrityViolation,
    InvalidStateTransition,
    LedgerRejected,
    NoEligibleResource,
    SponsorshipRejected,
    SponsorshipValidationError,
    SponsorTamperedPayload,
    Stage,
    StageTimeout,
)
from .ledger import LedgerNode, LedgerReceipt, NodeClient
from .payload import (
    FEE_UNSET,
    FeeBinding,
    FeeBoundPayload,
    MoveCall,
    ObjectArg,
    PureArg,
    Resource,
    ResourceRef,
    TransferValue,
    UnboundPayload,
)
from .pipeline import OperationState, SponsoredOperation, SponsoredTransactionPipeline
from .sponsor_client import GasStationClient, SponsorResponse, SponsorService
from .submitter import DualAuthorizationSubmitter, Failure, FailureKind, Outcome, Success

__all__ = [
    "SUBMISSION_ORDER",
    "Authorization",
    "AuthorizationPair",
    "Ed25519Signer",
    "SignerRole",
    "UserSigner",
    "PayloadBuilder",
    "build_move_call",
    "build_payload",
    "build_transfer",
    "resolve_value_source",
    "GasStationSettings",
    "load_settings",
    "SponsorshipCoordinator",
    "SponsorshipResult",
    "AuthorizationMismatch",
    "FeeCeilingExceeded",
    "GasStationError",
    "IntegrityViolation",
    "InvalidStateTransition",
    "LedgerRejected",
    "NoEligibleResource",
    "SponsorshipRejected",
    "SponsorshipValidationError",
    "SponsorTamperedPayload",
    "Stage",
    "StageTimeout",
    "LedgerNode",
    "LedgerReceipt",
    "NodeClient",
    "FEE_UNSET",
    "FeeBinding",
    "FeeBoundPayload",
    "MoveCall",
    "ObjectArg",
    "PureArg",
    "Resource",
    "ResourceRef",
    "TransferValue",
    "UnboundPayload",
    "OperationState",
    "SponsoredOperation",
    "SponsoredTransactionPipeline",
    "GasStationClient",
    "SponsorResponse",
    "SponsorService",
    "DualAuthorizationSubmitter",
    "Failure",
    "FailureKind",
    "Outcome",
    "Success",
]
