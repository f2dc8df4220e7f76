"""Paymail service discovery.

Finds a domain's paymail service using the _bsvalias._tcp SRV record, falling
back to https://{domain}:443 when the record does not exist. Also hosts the
DNSSEC check done over a DNS-over-HTTPS JSON endpoint.
"""

import logging
import random
from typing import List, Optional, Sequence

import sentry_sdk
from aiodns import DNSResolver
from aiodns import error as aiodns_error

from social.graze.paymail.config import (
    DEFAULT_NAME_SERVER,
    DEFAULT_PORT,
    DEFAULT_PROTOCOL,
    DEFAULT_SERVICE_NAME,
)
from social.graze.paymail.errors import (
    DNSError,
    DnssecError,
    UnreachableError,
)
from social.graze.paymail.http.chain import ChainMiddlewareClient
from social.graze.paymail.model.capabilities import (
    EndpointSource,
    ServiceEndpoint,
    SrvRecord,
)
from social.graze.paymail.model.result import DnssecOutcome
from social.graze.paymail.model.trace import TraceTarget
from social.graze.paymail.trace import TraceCollector

logger = logging.getLogger(__name__)

# Resolver errors meaning "there is no such record", which is the fallback path
_ABSENT_RECORD_CODES = frozenset({aiodns_error.ARES_ENOTFOUND, aiodns_error.ARES_ENODATA})


def srv_query_name(
    domain: str,
    service_name: str = DEFAULT_SERVICE_NAME,
    protocol: str = DEFAULT_PROTOCOL,
) -> str:
    return f"_{service_name}._{protocol}.{domain}"


def fallback_endpoint(domain: str) -> ServiceEndpoint:
    return ServiceEndpoint(
        host=domain, port=DEFAULT_PORT, source=EndpointSource.fallback
    )


def select_srv_record(
    records: Sequence[SrvRecord], rng: Optional[random.Random] = None
) -> SrvRecord:
    """Pick the SRV record to use, following RFC 2782.

    The lowest priority wins. Among records sharing that priority one is
    picked at random, weighted by `weight`; when every weight is zero they
    all get the same chance.

    Args:
        records: Non-empty list of SRV answers
        rng: Random source, injectable for deterministic tests

    Returns:
        The selected record
    """
    rng = rng or random.Random()
    lowest = min(record.priority for record in records)
    candidates = [record for record in records if record.priority == lowest]
    if len(candidates) == 1:
        return candidates[0]

    total = sum(record.weight for record in candidates)
    if total == 0:
        return rng.choice(candidates)

    threshold = rng.uniform(0, total)
    running = 0
    for record in candidates:
        running += record.weight
        if running >= threshold and record.weight > 0:
            return record
    return candidates[-1]


async def query_srv(
    resolver: DNSResolver, name: str, collector: TraceCollector
) -> List[SrvRecord]:
    """Query SRV records.

    Returns:
        The records found, empty when the name has no SRV record

    Raises:
        DNSError: The query failed for any other reason
    """
    async with collector.span(TraceTarget.dns, f"SRV {name}") as span:
        try:
            results = await resolver.query(name, "SRV")
        except aiodns_error.DNSError as e:
            code = e.args[0] if e.args else None
            if code in _ABSENT_RECORD_CODES:
                span.response = []
                return []
            sentry_sdk.capture_exception(e)
            raise DNSError(f"SRV query for {name} failed: {e}") from e

        records = [
            SrvRecord(
                target=result.host.rstrip("."),
                port=result.port,
                priority=result.priority,
                weight=result.weight,
            )
            for result in (results or [])
        ]
        span.response = [record.model_dump() for record in records]
        return records


async def discover(
    domain: str,
    name_server: str = DEFAULT_NAME_SERVER,
    service_name: str = DEFAULT_SERVICE_NAME,
    protocol: str = DEFAULT_PROTOCOL,
    collector: Optional[TraceCollector] = None,
    timeout: Optional[float] = None,
    rng: Optional[random.Random] = None,
) -> ServiceEndpoint:
    """Resolve the paymail service endpoint of a domain.

    Queries _{service_name}._{protocol}.{domain} against `name_server`. A
    missing record is not an error: the service is then expected at
    https://{domain}:443.

    Args:
        domain: Validated domain name
        name_server: Nameserver to send the SRV query to
        service_name: SRV service label
        protocol: SRV protocol label
        collector: Trace collector recording the query
        timeout: Query timeout in seconds
        rng: Random source for weighted selection

    Returns:
        ServiceEndpoint with `source` telling how it was found

    Raises:
        DNSError: The SRV query failed (timeout, refused, malformed answer)
    """
    collector = collector or TraceCollector(enabled=False)
    resolver_kwargs = {}
    if timeout is not None:
        resolver_kwargs["timeout"] = timeout

    resolver = DNSResolver(nameservers=[name_server], **resolver_kwargs)
    name = srv_query_name(domain, service_name, protocol)

    records = await query_srv(resolver, name, collector)
    if len(records) == 0:
        logger.info("No SRV record at %s, using https://%s:443", name, domain)
        return fallback_endpoint(domain)

    record = select_srv_record(records, rng)
    logger.debug("Using SRV record %s for %s", record, domain)
    return ServiceEndpoint(
        host=record.target,
        port=record.port,
        source=EndpointSource.srv,
        srv_record=record,
    )


async def check_dnssec(
    client: ChainMiddlewareClient, domain: str, resolver_url: str
) -> DnssecOutcome:
    """Check DNSSEC for a domain through a DNS-over-HTTPS JSON resolver.

    The domain counts as authenticated when the resolver validated the
    DNSKEY answer (AD bit set).

    Raises:
        DnssecError: The domain is not signed or the check could not be made
    """
    try:
        _, response = await client.get(
            resolver_url,
            params={"name": domain, "type": "DNSKEY", "do": "1"},
            headers={"Accept": "application/dns-json"},
        )
    except UnreachableError as e:
        raise DnssecError(f"DNSSEC check for {domain} failed: {e.message}") from e

    if not response.ok:
        raise DnssecError(
            f"DNSSEC check for {domain} failed with status {response.status}"
        )

    try:
        body = response.json()
    except ValueError as e:
        raise DnssecError(f"DNSSEC resolver sent malformed JSON: {e}") from e

    if not isinstance(body, dict):
        raise DnssecError("DNSSEC resolver sent an unexpected answer")

    authenticated = (
        body.get("Status") == 0
        and body.get("AD") is True
        and len(body.get("Answer") or []) > 0
    )
    if not authenticated:
        raise DnssecError(f"DNSSEC is not enabled or not valid for {domain}")
    return DnssecOutcome(checked=True, authenticated=True)

