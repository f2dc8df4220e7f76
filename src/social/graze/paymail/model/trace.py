"""Diagnostic trace entries for DNS queries and HTTPS round-trips."""

from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel


class TraceTarget(StrEnum):
    dns = "dns"
    https = "https"


class TraceEntry(BaseModel):
    """One network round-trip.

    `sequence` is assigned when the request is issued, so entries sort in
    issue order even when requests complete out of order.
    """

    sequence: int
    target: TraceTarget
    request: str
    response: Optional[Any] = None
    status: Optional[int] = None
    error: Optional[str] = None
    started_at: datetime
    duration: Optional[float] = None
