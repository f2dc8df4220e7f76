"""Paymail resolution sessions.

A session walks Start -> Discovering -> Fetching -> Invoking -> Validating -> Done
for one handle or domain. Discovery and the capability document fetch are
sequential prerequisites and abort the session when they fail. Capability
invocations then run concurrently against the shared, read-only document and
each one ends in its own outcome, so a failing capability never hides the
others.
"""

import asyncio
import logging
import random
from enum import StrEnum
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Tuple, TypeVar

import sentry_sdk
from aiohttp import ClientSession

from social.graze.paymail.config import ResolveOptions
from social.graze.paymail.errors import (
    Cancelled,
    DnssecError,
    InvalidKeyFormat,
    InvalidTarget,
    PaymailError,
)
from social.graze.paymail.http.chain import ChainMiddlewareClient, build_client
from social.graze.paymail.model.capabilities import (
    Capability,
    CapabilityDocument,
    CapabilityKind,
    ServiceEndpoint,
)
from social.graze.paymail.model.result import (
    CapabilityOutcome,
    DnssecOutcome,
    OutcomeStatus,
    ResolutionResult,
)
from social.graze.paymail.model.target import ParsedTarget, TargetType, parse_input
from social.graze.paymail.resolve.brfc import (
    KNOWN_CAPABILITIES,
    KnownCapability,
    lookup_capability,
)
from social.graze.paymail.resolve.capabilities import fetch_capabilities
from social.graze.paymail.resolve.invoke import (
    Invocation,
    InvocationParams,
    build_sender_request,
    get_payment_destination,
    get_pki,
    get_public_profile,
    verify_pubkey,
)
from social.graze.paymail.resolve.srv import check_dnssec, discover, fallback_endpoint
from social.graze.paymail.resolve.validate import (
    DOCUMENT_STAGES,
    ENDPOINT_STAGES,
    PAYMENT_DESTINATION_STAGES,
    PKI_STAGES,
    PUBLIC_PROFILE_STAGES,
    VERIFY_STAGES,
    Stage,
    ValidationContext,
    load_public_key,
    output_script_address,
    run_stages,
)
from social.graze.paymail.trace import TraceCollector, TraceSink

logger = logging.getLogger(__name__)

T = TypeVar("T")

CAPABILITY_ORDER = tuple(KNOWN_CAPABILITIES)

_STAGES_BY_CAPABILITY: Dict[str, Tuple[Stage, ...]] = {
    "pki": tuple(PKI_STAGES),
    "payment_destination": tuple(PAYMENT_DESTINATION_STAGES),
    "public_profile": tuple(PUBLIC_PROFILE_STAGES),
    "verify_pubkey": tuple(VERIFY_STAGES),
}


class SessionStage(StrEnum):
    start = "start"
    discovering = "discovering"
    fetching = "fetching"
    invoking = "invoking"
    validating = "validating"
    done = "done"


class _Deadline:
    """Session deadline plus an optional caller supplied cancellation signal."""

    def __init__(self, seconds: float, cancel_event: Optional[asyncio.Event]) -> None:
        self._loop = asyncio.get_running_loop()
        self._at = self._loop.time() + seconds
        self._cancel_event = cancel_event

    @property
    def remaining(self) -> float:
        return max(0.0, self._at - self._loop.time())

    @property
    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    async def wait(self, tasks: Iterable[asyncio.Task]) -> set[asyncio.Task]:
        """Wait for tasks until they finish, the deadline passes or the caller cancels.

        Returns:
            The tasks that did not finish. They have been cancelled and
            awaited, so nothing keeps running after this returns.
        """
        pending = set(tasks)
        waiter: Optional[asyncio.Task] = None
        if self._cancel_event is not None:
            waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            while pending and not self.cancelled:
                remaining = self.remaining
                if remaining <= 0:
                    break
                wait_for = pending | ({waiter} if waiter is not None else set())
                done, _ = await asyncio.wait(
                    wait_for, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if not done:
                    break
                pending -= done
        finally:
            await _cancel_all(pending | ({waiter} if waiter is not None else set()))
        return pending

    async def run(self, aw: Awaitable[T], stage: SessionStage) -> T:
        task = asyncio.ensure_future(aw)
        unfinished = await self.wait([task])
        if task in unfinished:
            raise Cancelled(f"resolution cancelled while {stage}")
        return task.result()


async def _cancel_all(tasks: Iterable[asyncio.Task]) -> None:
    tasks = [task for task in tasks if not task.done()]
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


def _requested_capabilities(options: ResolveOptions) -> List[Tuple[str, Optional[KnownCapability]]]:
    """Requested capabilities in a stable order: known ones first, then raw codes."""
    known: Dict[str, KnownCapability] = {}
    raw: List[str] = []
    for name in options.capabilities:
        capability = lookup_capability(name)
        if capability is None:
            raw.append(name)
        else:
            known[capability.name] = capability
    ordered: List[Tuple[str, Optional[KnownCapability]]] = [
        (name, known[name]) for name in CAPABILITY_ORDER if name in known
    ]
    ordered.extend((code, None) for code in sorted(raw))
    return ordered


def _presence_outcome(name: str, capability: Capability) -> CapabilityOutcome:
    if capability.kind == CapabilityKind.unsupported:
        return CapabilityOutcome(
            capability=name, status=OutcomeStatus.not_supported, code=capability.code
        )
    if capability.kind == CapabilityKind.flag:
        return CapabilityOutcome(
            capability=name,
            status=OutcomeStatus.flag,
            code=capability.code,
            flag=capability.flag,
        )
    return CapabilityOutcome(
        capability=name, status=OutcomeStatus.advertised, code=capability.code
    )


def _is_usable_key(pubkey: str) -> bool:
    try:
        load_public_key(pubkey)
    except InvalidKeyFormat:
        return False
    return True


def _failed_outcome(name: str, code: Optional[str], error: PaymailError) -> CapabilityOutcome:
    if error.capability is None:
        error.capability = name
    status = OutcomeStatus.cancelled if isinstance(error, Cancelled) else OutcomeStatus.failed
    return CapabilityOutcome(
        capability=name, status=status, code=code, error=error.to_detail()
    )


class ResolutionSession:
    """
    State for one resolution. Not reused across resolutions.

    All transient state (endpoint, document, trace) lives here and is dropped
    with the session; the only thing that outlives it is what the caller's
    trace sink kept.
    """

    def __init__(
        self,
        target: ParsedTarget,
        options: ResolveOptions,
        client: ChainMiddlewareClient,
        collector: TraceCollector,
        deadline: _Deadline,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.target = target
        self.options = options
        self.stage = SessionStage.start
        self._client = client
        self._collector = collector
        self._deadline = deadline
        self._rng = rng
        self._errors: List[PaymailError] = []
        self._warnings: List[PaymailError] = []

    def _enter(self, stage: SessionStage) -> None:
        logger.debug("%s: %s -> %s", self.target.domain, self.stage, stage)
        self.stage = stage

    async def discover(self) -> ServiceEndpoint:
        self._enter(SessionStage.discovering)
        if self.options.skip_srv_check:
            return fallback_endpoint(self.target.domain)
        return await self._deadline.run(
            discover(
                self.target.domain,
                name_server=self.options.name_server,
                service_name=self.options.service_name,
                protocol=self.options.protocol,
                collector=self._collector,
                timeout=self.options.request_timeout,
                rng=self._rng,
            ),
            self.stage,
        )

    async def fetch(self, endpoint: ServiceEndpoint) -> CapabilityDocument:
        self._enter(SessionStage.fetching)
        return await self._deadline.run(
            fetch_capabilities(self._client, endpoint), self.stage
        )

    async def _dnssec(self) -> DnssecOutcome:
        try:
            return await check_dnssec(
                self._client, self.target.domain, self.options.dnssec_resolver_url
            )
        except DnssecError as e:
            self._warnings.append(e)
            return DnssecOutcome(checked=True, authenticated=False)

    async def _verify(
        self,
        document: CapabilityDocument,
        params: InvocationParams,
        pki_task: Optional[asyncio.Task],
    ) -> Invocation:
        """Verify the caller's key, or the PKI key when the caller gave none.

        Without a usable key (PKI skipped, unsupported, flag-only or invalid)
        the capability is reported as advertised. A failed PKI request fails
        this capability with the same error.
        """
        capability = document.lookup(*KNOWN_CAPABILITIES["verify_pubkey"].codes)
        if capability.kind != CapabilityKind.supported:
            return Invocation(capability=capability)

        pubkey = self.options.verify_pubkey
        if pubkey is None and pki_task is not None:
            pki: Invocation = await asyncio.shield(pki_task)
            if pki.payload is not None and _is_usable_key(pki.payload.pubkey):
                pubkey = pki.payload.pubkey
        if pubkey is None:
            logger.debug("No public key to verify for %s", self.target.handle)
            return Invocation(capability=capability)
        return await verify_pubkey(
            self._client,
            document,
            InvocationParams(
                alias=params.alias,
                domain=params.domain,
                pubkey=pubkey,
                base_url=params.base_url,
            ),
        )

    def _start_invocations(
        self,
        document: CapabilityDocument,
        endpoint: ServiceEndpoint,
        requested: List[Tuple[str, Optional[KnownCapability]]],
    ) -> Dict[str, asyncio.Task]:
        params = InvocationParams(
            alias=self.target.alias,
            domain=self.target.domain,
            base_url=endpoint.base_url,
        )
        tasks: Dict[str, asyncio.Task] = {}
        names = [name for name, _ in requested]

        if "pki" in names:
            tasks["pki"] = asyncio.create_task(get_pki(self._client, document, params))
        if "payment_destination" in names:
            sender = build_sender_request(
                sender_handle=self.options.sender_handle or self.target.handle or "",
                sender_name=self.options.sender_name,
                amount=self.options.amount,
                purpose=self.options.purpose,
                signature=self.options.signature,
            )
            tasks["payment_destination"] = asyncio.create_task(
                get_payment_destination(self._client, document, params, sender)
            )
        if "public_profile" in names:
            tasks["public_profile"] = asyncio.create_task(
                get_public_profile(self._client, document, params)
            )
        if "verify_pubkey" in names:
            tasks["verify_pubkey"] = asyncio.create_task(
                self._verify(document, params, tasks.get("pki"))
            )
        return tasks

    def _validate(
        self,
        name: str,
        invocation: Invocation,
        context: ValidationContext,
    ) -> CapabilityOutcome:
        capability = invocation.capability
        if invocation.payload is None:
            return _presence_outcome(name, capability)

        payload: Any = invocation.payload
        validation = run_stages(
            _STAGES_BY_CAPABILITY.get(name, ()), payload, self.options, context
        )
        if name == "payment_destination":
            address = output_script_address(payload.output)
            if address is not None:
                payload = payload.model_copy(update={"address": address})

        for error in validation.errors + validation.warnings:
            if error.capability is None:
                error.capability = name
        self._errors.extend(validation.errors)

        warnings = [warning.to_detail() for warning in validation.warnings]
        if not validation.ok:
            return CapabilityOutcome(
                capability=name,
                status=OutcomeStatus.failed,
                code=capability.code,
                payload=payload,
                error=validation.errors[0].to_detail(),
                warnings=warnings,
            )
        return CapabilityOutcome(
            capability=name,
            status=OutcomeStatus.ok,
            code=capability.code,
            payload=payload,
            warnings=warnings,
        )

    def _task_outcome(
        self,
        name: str,
        task: asyncio.Task,
        unfinished: set[asyncio.Task],
        document: CapabilityDocument,
        context: ValidationContext,
    ) -> CapabilityOutcome:
        codes = KNOWN_CAPABILITIES[name].codes
        code = document.lookup(*codes).code
        if task in unfinished or task.cancelled():
            error: PaymailError = Cancelled(
                f"{name} did not finish before the resolution was cancelled"
            )
            self._errors.append(error)
            return _failed_outcome(name, code, error)

        exception = task.exception()
        if exception is None:
            return self._validate(name, task.result(), context)

        if not isinstance(exception, PaymailError):
            logger.error("Unexpected error invoking %s", name, exc_info=exception)
            sentry_sdk.capture_exception(exception)
            exception = PaymailError(
                f"unexpected error: {type(exception).__name__}: {exception}"
            )
        # verify_pubkey re-raises the PKI error, list it once
        if not any(exception is error for error in self._errors):
            self._errors.append(exception)
        return _failed_outcome(name, code, exception)

    async def run(self) -> Tuple[ResolutionResult, List[PaymailError]]:
        dnssec_task: Optional[asyncio.Task] = None
        if not self.options.skip_dns_check:
            dnssec_task = asyncio.create_task(self._dnssec())

        tasks: Dict[str, asyncio.Task] = {}
        try:
            endpoint = await self.discover()
            document = await self.fetch(endpoint)

            self._enter(SessionStage.invoking)
            requested = _requested_capabilities(self.options)
            outcomes: Dict[str, CapabilityOutcome] = {}
            invocable: List[Tuple[str, Optional[KnownCapability]]] = []
            for name, known in requested:
                if self.options.is_skipped(name):
                    outcomes[name] = CapabilityOutcome(
                        capability=name, status=OutcomeStatus.skipped
                    )
                elif (
                    known is None
                    or known.method is None
                    or (known.needs_alias and self.target.target_type == TargetType.domain)
                ):
                    codes = known.codes if known is not None else (name,)
                    outcomes[name] = _presence_outcome(name, document.lookup(*codes))
                else:
                    invocable.append((name, known))

            tasks = self._start_invocations(document, endpoint, invocable)
            waiting = list(tasks.values())
            if dnssec_task is not None:
                waiting.append(dnssec_task)
            unfinished = await self._deadline.wait(waiting)
        except BaseException:
            await _cancel_all(list(tasks.values()) + ([dnssec_task] if dnssec_task else []))
            raise

        self._enter(SessionStage.validating)
        pki_payload = None
        pki_task = tasks.get("pki")
        if pki_task is not None and pki_task not in unfinished and not pki_task.cancelled():
            if pki_task.exception() is None:
                pki_payload = pki_task.result().payload

        context = ValidationContext(
            target=self.target,
            document=document,
            pki=pki_payload,
            pubkey=self.options.verify_pubkey
            or (pki_payload.pubkey if pki_payload is not None else None),
            sender_signature=self.options.signature,
        )
        for name, _ in invocable:
            outcomes[name] = self._task_outcome(
                name, tasks[name], unfinished, document, context
            )

        session_validation = run_stages(
            ENDPOINT_STAGES, endpoint, self.options, context
        ).merge(run_stages(DOCUMENT_STAGES, document, self.options, context))
        self._errors.extend(session_validation.errors)
        self._warnings.extend(session_validation.warnings)

        dnssec = DnssecOutcome(checked=False)
        if dnssec_task is not None:
            if dnssec_task in unfinished:
                self._warnings.append(DnssecError("DNSSEC check did not finish in time"))
            elif dnssec_task.exception() is not None:
                exception = dnssec_task.exception()
                sentry_sdk.capture_exception(exception)
                self._warnings.append(DnssecError(f"DNSSEC check failed: {exception}"))
                dnssec = DnssecOutcome(checked=True, authenticated=False)
            else:
                dnssec = dnssec_task.result()

        self._enter(SessionStage.done)
        result = ResolutionResult(
            target=self.target,
            endpoint=endpoint,
            document=document,
            insecure=self.options.skip_ssl_check,
            dnssec=dnssec,
            errors=[error.to_detail() for error in self._errors],
            warnings=[warning.to_detail() for warning in self._warnings],
            outcomes={name: outcomes[name] for name, _ in requested},
        )
        return result, list(self._errors)


async def resolve(
    target: str,
    options: Optional[ResolveOptions] = None,
    trace_sink: Optional[TraceSink] = None,
    client_session: Optional[ClientSession] = None,
    cancel_event: Optional[asyncio.Event] = None,
    rng: Optional[random.Random] = None,
) -> Tuple[ResolutionResult, List[PaymailError]]:
    """Resolve and validate a paymail handle or domain.

    Args:
        target: `alias@domain.tld`, wallet shorthand handle or bare domain
        options: Immutable resolution options, defaults when omitted
        trace_sink: Receives a TraceEntry per DNS query and HTTPS round-trip,
            in issue order; a plain list works
        client_session: Shared aiohttp session, left open afterwards
        cancel_event: Setting it cancels the resolution
        rng: Random source for SRV weighted selection

    Returns:
        The resolution result and every per-capability or validation error

    Raises:
        InvalidTarget: `target` is neither a handle nor a domain
        DNSError: The SRV query failed
        UnreachableError: The discovery document could not be fetched
        CapabilityRequestError: The discovery document returned a non-2xx status
        CapabilityParseError: The discovery document is malformed
        Cancelled: Deadline or cancellation hit before the document was fetched
    """
    options = options or ResolveOptions()
    parsed = parse_input(target)
    if parsed is None:
        raise InvalidTarget(f"{target!r} is not a valid paymail handle or domain")

    if options.skip_ssl_check:
        logger.warning(
            "Certificate verification is disabled for %s, responses are not authenticated",
            parsed.domain,
        )

    collector = TraceCollector(sink=trace_sink, enabled=not options.skip_tracing)
    deadline = _Deadline(options.deadline, cancel_event)
    client = build_client(
        client_session,
        collector,
        user_agent=options.user_agent,
        timeout=options.request_timeout,
        retry_count=options.http_retry_count,
        verify_ssl=not options.skip_ssl_check,
    )
    try:
        async with client:
            session = ResolutionSession(parsed, options, client, collector, deadline, rng)
            return await session.run()
    finally:
        await collector.close()
