"""Capability discovery document fetching and parsing."""

import logging
from typing import Any

import sentry_sdk

from social.graze.paymail.errors import (
    CapabilityParseError,
    CapabilityRequestError,
    UnreachableError,
)
from social.graze.paymail.http.chain import ChainMiddlewareClient, ChainResponse
from social.graze.paymail.model.capabilities import CapabilityDocument, ServiceEndpoint

logger = logging.getLogger(__name__)


def parse_capabilities(body: Any) -> CapabilityDocument:
    """Parse a decoded discovery document.

    Args:
        body: Decoded JSON body

    Returns:
        CapabilityDocument with every capability resolved to its variant

    Raises:
        CapabilityParseError: The body is not an object, or lacks the bsvalias
            version or the capabilities object
    """
    if not isinstance(body, dict):
        raise CapabilityParseError("discovery document is not a JSON object")

    version = body.get("bsvalias")
    if not isinstance(version, str) or not version.strip():
        raise CapabilityParseError("discovery document is missing the bsvalias version")

    capabilities = body.get("capabilities")
    if not isinstance(capabilities, dict):
        raise CapabilityParseError("discovery document is missing the capabilities object")

    document = CapabilityDocument.from_capability_map(version.strip(), capabilities)
    if document.ignored:
        logger.info(
            "Ignoring capabilities with unusable values: %s", ", ".join(document.ignored)
        )
    return document


def decode_capabilities(response: ChainResponse) -> CapabilityDocument:
    try:
        body = response.json()
    except ValueError as e:
        raise CapabilityParseError(f"discovery document is not valid JSON: {e}") from e
    return parse_capabilities(body)


async def fetch_capabilities(
    client: ChainMiddlewareClient, endpoint: ServiceEndpoint
) -> CapabilityDocument:
    """Fetch the capability discovery document of a paymail service.

    Certificate verification follows the client; an insecure client is
    logged on every fetch.

    Args:
        client: Chain client to issue the request with
        endpoint: Resolved service endpoint

    Returns:
        Parsed CapabilityDocument

    Raises:
        UnreachableError: Connection, TLS or timeout failure
        CapabilityRequestError: The service answered with a non-2xx status
        CapabilityParseError: The document is malformed
    """
    url = endpoint.discovery_url
    if not client.verify_ssl:
        logger.warning("Fetching %s without certificate verification", url)

    try:
        _, response = await client.get(url)
    except UnreachableError as e:
        sentry_sdk.capture_exception(e)
        raise

    if not response.ok:
        raise CapabilityRequestError(
            f"GET {url} returned status {response.status}",
            status=response.status,
            body=response.body,
        )

    return decode_capabilities(response)
