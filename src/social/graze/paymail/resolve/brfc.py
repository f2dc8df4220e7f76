"""BRFC (bitcoin request for comment) capability identifiers.

Capabilities in a discovery document are keyed by BRFC id: the first twelve
hex characters of the byte-reversed double SHA-256 of a specification's title, author
and version. A couple of early capabilities also have human readable aliases.
"""

import hashlib
import re
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict

_BRFC_ID_PATTERN = re.compile(r"^[0-9a-f]{12}$")


class KnownCapability(BaseModel):
    """A capability this resolver knows how to ask for.

    `codes` lists every key the capability may appear under in a discovery
    document, preferred first. `method` is None for capabilities that can
    only be advertised (flags, or endpoints needing a transaction).
    """

    model_config = ConfigDict(frozen=True)

    name: str
    codes: Tuple[str, ...]
    title: str
    method: Optional[str] = None
    needs_alias: bool = True


KNOWN_CAPABILITIES: Dict[str, KnownCapability] = {
    c.name: c
    for c in (
        KnownCapability(
            name="pki",
            codes=("pki", "0c4339ef99c2"),
            title="bsvalias Public Key Infrastructure",
            method="GET",
        ),
        KnownCapability(
            name="payment_destination",
            codes=("paymentDestination", "759684b1a19a"),
            title="bsvalias Payment Addressing (Basic Address Resolution)",
            method="POST",
        ),
        KnownCapability(
            name="sender_validation",
            codes=("6745385c3fc0",),
            title="bsvalias Payment Addressing (Payer Validation)",
            needs_alias=False,
        ),
        KnownCapability(
            name="verify_pubkey",
            codes=("a9f510c16bde",),
            title="bsvalias public key verify (Verify Public Key Owner)",
            method="GET",
        ),
        KnownCapability(
            name="public_profile",
            codes=("f12f968c92d6",),
            title="bsvalias Public Profile (Name & Avatar)",
            method="GET",
        ),
        KnownCapability(
            name="receiver_approvals",
            codes=("3d7c2ca83a46",),
            title="bsvalias Payment Addressing (PayTo Protocol Prefix)",
            needs_alias=False,
        ),
        KnownCapability(
            name="p2p_destinations",
            codes=("2a40af698840",),
            title="P2P Payment Destination",
        ),
        KnownCapability(
            name="p2p_transactions",
            codes=("5f1323cddf31",),
            title="P2P Transactions",
        ),
    )
}

KNOWN_ALIASES = frozenset(
    code
    for capability in KNOWN_CAPABILITIES.values()
    for code in capability.codes
    if _BRFC_ID_PATTERN.match(code) is None
)


def generate_brfc_id(title: str, author: str = "", version: str = "") -> str:
    """Generate the BRFC id for a specification.

    Args:
        title: Specification title
        author: Specification author(s)
        version: Specification version

    Returns:
        Twelve lowercase hex characters
    """
    data = (title.strip() + author.strip() + version.strip()).encode("utf-8")
    digest = hashlib.sha256(hashlib.sha256(data).digest()).digest()
    return digest[::-1].hex()[:12]


def is_brfc_id(code: str) -> bool:
    return _BRFC_ID_PATTERN.match(code) is not None


def is_known_code(code: str) -> bool:
    return code in KNOWN_ALIASES or is_brfc_id(code)


def lookup_capability(name_or_code: str) -> Optional[KnownCapability]:
    """Find a known capability by its name or by any of its codes."""
    capability = KNOWN_CAPABILITIES.get(name_or_code)
    if capability is not None:
        return capability
    for capability in KNOWN_CAPABILITIES.values():
        if name_or_code in capability.codes:
            return capability
    return None
