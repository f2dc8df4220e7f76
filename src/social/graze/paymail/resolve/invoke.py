"""Capability invocation.

Looks capabilities up in a parsed discovery document, expands their URI
templates and issues the requests. Decoding stops at the typed response:
protocol level checks live in validate.py.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Generic, Optional, Type, TypeVar
from urllib.parse import quote

from pydantic import BaseModel, ValidationError
from yarl import URL

from social.graze.paymail.errors import (
    CapabilityRequestError,
    InvalidResponse,
    TemplateError,
)
from social.graze.paymail.http.chain import ChainMiddlewareClient
from social.graze.paymail.model.capabilities import (
    Capability,
    CapabilityDocument,
    CapabilityKind,
)
from social.graze.paymail.model.responses import (
    PaymentDestinationResponse,
    PkiResponse,
    PublicProfileResponse,
    SenderRequest,
    VerifyPubKeyResponse,
)
from social.graze.paymail.resolve.brfc import KNOWN_CAPABILITIES

logger = logging.getLogger(__name__)

PLACEHOLDER_ALIAS = "{alias}"
PLACEHOLDER_DOMAIN = "{domain.tld}"
PLACEHOLDER_PUBKEY = "{pubkey}"

_PLACEHOLDER_PATTERN = re.compile(r"\{[^{}/]*\}")

T = TypeVar("T", bound=BaseModel)


@dataclass(frozen=True)
class InvocationParams:
    """Values substituted into capability URI templates."""

    alias: Optional[str] = None
    domain: Optional[str] = None
    pubkey: Optional[str] = None
    base_url: Optional[str] = None


@dataclass(frozen=True)
class Invocation(Generic[T]):
    """The capability variant that was found and, when a request was made, its payload."""

    capability: Capability
    payload: Optional[T] = None


def expand_template(template: str, params: InvocationParams) -> str:
    """Substitute placeholders in a capability URI template.

    Values are URL-encoded. A relative template is joined onto the service
    base URL.

    Raises:
        TemplateError: A placeholder has no value, or is not a known placeholder
    """
    values = {
        PLACEHOLDER_ALIAS: params.alias,
        PLACEHOLDER_DOMAIN: params.domain,
        PLACEHOLDER_PUBKEY: params.pubkey,
    }
    url = template
    for placeholder, value in values.items():
        if value is not None:
            url = url.replace(placeholder, quote(value, safe=""))

    unresolved = _PLACEHOLDER_PATTERN.findall(url)
    if unresolved:
        raise TemplateError(
            f"unresolved placeholders {', '.join(unresolved)} in {template}"
        )

    try:
        target = URL(url)
    except ValueError as e:
        raise TemplateError(f"template {template} is not a valid URL: {e}") from e
    if target.is_absolute():
        return url
    if params.base_url is None:
        raise TemplateError(f"relative template {template} without a base URL")
    return str(URL(params.base_url).join(target))


def decode_payload(
    model: Type[T], body: Any, code: str, name: Optional[str] = None
) -> T:
    try:
        return model.model_validate(body)
    except ValidationError as e:
        raise InvalidResponse(
            f"{code} response does not match the expected format: "
            f"{e.error_count()} validation error(s)",
            capability=name or code,
        ) from e


async def invoke(
    client: ChainMiddlewareClient,
    document: CapabilityDocument,
    codes: tuple[str, ...],
    params: InvocationParams,
    method: str = "GET",
    json_body: Optional[dict[str, Any]] = None,
    name: Optional[str] = None,
) -> tuple[Capability, Optional[Any]]:
    """Invoke a capability by any of its codes.

    Args:
        client: Chain client to issue the request with
        document: Parsed discovery document
        codes: Codes the capability may be advertised under
        params: Template values
        method: HTTP method
        json_body: Body for POST requests
        name: Capability name errors are reported under, the code by default

    Returns:
        The capability variant and the decoded JSON body. The body is None
        when no request was made (unsupported or flag capabilities).

    Raises:
        TemplateError: The URI template can't be fully expanded
        UnreachableError: Connection, TLS or timeout failure
        CapabilityRequestError: The endpoint answered with a non-2xx status
        InvalidResponse: The body is not JSON
    """
    capability = document.lookup(*codes)
    if capability.kind != CapabilityKind.supported or capability.uri is None:
        return capability, None

    name = name or capability.code
    url = expand_template(capability.uri, params)
    kwargs: dict[str, Any] = {}
    if json_body is not None:
        kwargs["json"] = json_body

    _, response = await client.request(method, url, **kwargs)

    if not response.ok:
        raise CapabilityRequestError(
            f"{method} {url} returned status {response.status}",
            status=response.status,
            body=response.body,
            capability=name,
        )

    try:
        return capability, response.json()
    except ValueError as e:
        raise InvalidResponse(
            f"{capability.code} response is not valid JSON: {e}",
            capability=name,
        ) from e


async def _invoke_typed(
    client: ChainMiddlewareClient,
    document: CapabilityDocument,
    name: str,
    model: Type[T],
    params: InvocationParams,
    json_body: Optional[dict[str, Any]] = None,
) -> Invocation[T]:
    known = KNOWN_CAPABILITIES[name]
    capability, body = await invoke(
        client,
        document,
        known.codes,
        params,
        method=known.method or "GET",
        json_body=json_body,
        name=name,
    )
    if body is None:
        return Invocation(capability=capability)
    return Invocation(
        capability=capability,
        payload=decode_payload(model, body, capability.code, name),
    )


async def get_pki(
    client: ChainMiddlewareClient,
    document: CapabilityDocument,
    params: InvocationParams,
) -> Invocation[PkiResponse]:
    return await _invoke_typed(client, document, "pki", PkiResponse, params)


async def get_public_profile(
    client: ChainMiddlewareClient,
    document: CapabilityDocument,
    params: InvocationParams,
) -> Invocation[PublicProfileResponse]:
    return await _invoke_typed(
        client, document, "public_profile", PublicProfileResponse, params
    )


async def verify_pubkey(
    client: ChainMiddlewareClient,
    document: CapabilityDocument,
    params: InvocationParams,
) -> Invocation[VerifyPubKeyResponse]:
    """Ask the service whether `params.pubkey` belongs to the handle."""
    return await _invoke_typed(
        client, document, "verify_pubkey", VerifyPubKeyResponse, params
    )


async def get_payment_destination(
    client: ChainMiddlewareClient,
    document: CapabilityDocument,
    params: InvocationParams,
    sender: SenderRequest,
) -> Invocation[PaymentDestinationResponse]:
    return await _invoke_typed(
        client,
        document,
        "payment_destination",
        PaymentDestinationResponse,
        params,
        json_body=sender.model_dump(by_alias=True, exclude_none=True),
    )


def now_dt() -> str:
    # UTC, second precision, trailing Z
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def build_sender_request(
    sender_handle: str,
    sender_name: Optional[str] = None,
    amount: Optional[int] = None,
    purpose: Optional[str] = None,
    signature: Optional[str] = None,
    dt: Optional[str] = None,
) -> SenderRequest:
    return SenderRequest(
        sender_handle=sender_handle,
        sender_name=sender_name,
        dt=dt or now_dt(),
        amount=amount,
        purpose=purpose,
        signature=signature,
    )
