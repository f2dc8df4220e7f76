"""Resolution result models.

A ResolutionResult is structured data for the caller to render or store. Each
capability outcome is determined independently of the others.
"""

from enum import StrEnum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from social.graze.paymail.model.capabilities import CapabilityDocument, ServiceEndpoint
from social.graze.paymail.model.responses import (
    PaymentDestinationResponse,
    PkiResponse,
    PublicProfileResponse,
    VerifyPubKeyResponse,
)
from social.graze.paymail.model.target import ParsedTarget

CapabilityPayload = Union[
    PkiResponse,
    PaymentDestinationResponse,
    PublicProfileResponse,
    VerifyPubKeyResponse,
]


class ErrorDetail(BaseModel):
    """Serializable description of a PaymailError."""

    model_config = ConfigDict(frozen=True)

    kind: str
    message: str
    capability: Optional[str] = None
    status: Optional[int] = None
    body: Optional[str] = None


class OutcomeStatus(StrEnum):
    ok = "ok"
    flag = "flag"
    advertised = "advertised"
    not_supported = "not_supported"
    skipped = "skipped"
    failed = "failed"
    cancelled = "cancelled"


class CapabilityOutcome(BaseModel):
    """What happened when one capability was asked for.

    `not_supported` means the domain does not advertise the capability, which
    is distinct from `failed` (the request was made and went wrong).
    `advertised` means the capability exists but was not invoked, either because
    the target is a bare domain or because the resolver can only detect it.
    """

    model_config = ConfigDict(frozen=True)

    capability: str
    status: OutcomeStatus
    code: Optional[str] = None
    payload: Optional[CapabilityPayload] = None
    flag: Optional[bool] = None
    error: Optional[ErrorDetail] = None
    warnings: List[ErrorDetail] = Field(default_factory=list)


class DnssecOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    checked: bool
    authenticated: Optional[bool] = None


class ResolutionResult(BaseModel):
    """Aggregate output of one resolution session."""

    model_config = ConfigDict(frozen=True)

    target: ParsedTarget
    endpoint: ServiceEndpoint
    document: CapabilityDocument
    insecure: bool = False
    dnssec: DnssecOutcome = DnssecOutcome(checked=False)
    errors: List[ErrorDetail] = Field(default_factory=list)
    warnings: List[ErrorDetail] = Field(default_factory=list)
    outcomes: Dict[str, CapabilityOutcome] = Field(default_factory=dict)

    def outcome(self, capability: str) -> Optional[CapabilityOutcome]:
        return self.outcomes.get(capability)
