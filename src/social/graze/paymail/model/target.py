"""Paymail target parsing.

Normalizes caller input into either a full paymail handle (alias@domain) or a
bare domain, applying the handle conversions used by well known wallets.
"""

import re
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict

HANDCASH_DOMAIN = "handcash.io"
RELAYX_DOMAIN = "relayx.io"

_LABEL_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_ALIAS_PATTERN = re.compile(r"^[a-z0-9._+-]+$")


class TargetType(StrEnum):
    """Whether the caller asked about a full handle or only a domain."""

    handle = "handle"
    domain = "domain"


class ParsedTarget(BaseModel):
    """Parsed paymail target.

    Contains the classified target type, the alias (handles only) and the
    validated domain.
    """

    model_config = ConfigDict(frozen=True)

    target_type: TargetType
    domain: str
    alias: Optional[str] = None

    @property
    def handle(self) -> Optional[str]:
        if self.alias is None:
            return None
        return f"{self.alias}@{self.domain}"


def is_valid_domain(domain: str) -> bool:
    """Check a hostname against DNS label rules.

    Args:
        domain: Lower-cased hostname without trailing dot

    Returns:
        True if every label is 1-63 characters of letters, digits and inner
        hyphens and the whole name fits in 253 characters
    """
    if not domain or len(domain) > 253:
        return False
    return all(_LABEL_PATTERN.match(label) for label in domain.split("."))


def sanitize(value: str) -> str:
    value = value.strip().lower()
    value = value.removeprefix("mailto:")
    return value.removesuffix(".")


def convert_handle(value: str) -> str:
    """Expand wallet shorthand handles.

    `$alias` is a HandCash handle and `1alias` is a RelayX handle. Anything
    else is returned unchanged.
    """
    if "@" in value:
        return value
    if value.startswith("$") and len(value) > 1:
        return f"{value[1:]}@{HANDCASH_DOMAIN}"
    # A bare domain always has a dot, RelayX shorthand never does
    if value.startswith("1") and "." not in value and len(value) > 1:
        return f"{value[1:]}@{RELAYX_DOMAIN}"
    return value


def parse_input(value: str) -> Optional[ParsedTarget]:
    """Parse and classify a paymail target.

    Args:
        value: Raw input, either `alias@domain.tld`, a wallet shorthand handle
            or a bare domain

    Returns:
        ParsedTarget, or None when the input is not a valid handle or domain
    """
    value = convert_handle(sanitize(value))

    if value.count("@") > 1:
        return None

    if "@" in value:
        alias, domain = value.split("@")
        if not alias or not _ALIAS_PATTERN.match(alias):
            return None
        if not is_valid_domain(domain):
            return None
        return ParsedTarget(target_type=TargetType.handle, alias=alias, domain=domain)

    if not is_valid_domain(value):
        return None
    return ParsedTarget(target_type=TargetType.domain, domain=value)
