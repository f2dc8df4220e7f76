"""
Integration tests for resolution sessions in social.graze.paymail.resolve.session

Tests cover the full resolution flow against mocked services: SRV discovery,
capability outcomes, partial failure, idempotence, cancellation, tracing, the
DNSSEC check and certificate verification against a real local TLS server.
"""

import asyncio
import ipaddress
import ssl
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from aiohttp import web
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from social.graze.paymail.config import ResolveOptions
from social.graze.paymail.errors import (
    CapabilityParseError,
    CapabilityRequestError,
    Cancelled,
    InvalidTarget,
    UnreachableError,
)
from social.graze.paymail.model.capabilities import EndpointSource
from social.graze.paymail.model.result import OutcomeStatus
from social.graze.paymail.model.trace import TraceTarget
from social.graze.paymail.resolve.session import resolve

from conftest import (
    BASE_URL,
    DISCOVERY_URL,
    P2PKH_OUTPUT,
    compressed_pubkey,
    discovery_document,
    sign_message,
    srv_answer,
)

OPTIONS = ResolveOptions(
    skip_srv_check=True,
    skip_dns_check=True,
    http_retry_count=0,
)


def options(**kwargs) -> ResolveOptions:
    return ResolveOptions(**{**OPTIONS.model_dump(), **kwargs})


class TestResolve:
    """Test suite for the resolve entry point."""

    @pytest.mark.asyncio
    async def test_full_resolution(self, service, pubkey):
        """Test every default capability resolves against a complete service."""
        result, errors = await resolve(
            "alice@example.com", OPTIONS, client_session=service.session
        )

        assert errors == []
        assert result.errors == []
        assert result.endpoint.source == EndpointSource.fallback
        assert result.target.handle == "alice@example.com"

        pki = result.outcome("pki")
        assert pki.status == OutcomeStatus.ok
        assert pki.payload.pubkey == pubkey

        destination = result.outcome("payment_destination")
        assert destination.status == OutcomeStatus.ok
        assert destination.payload.output == P2PKH_OUTPUT
        assert destination.payload.address is not None

        profile = result.outcome("public_profile")
        assert profile.payload.name == "Alice"

        verify = result.outcome("verify_pubkey")
        assert verify.status == OutcomeStatus.ok
        assert verify.payload.match is True

        sender_validation = result.outcome("sender_validation")
        assert sender_validation.status == OutcomeStatus.flag
        assert sender_validation.flag is False

        assert list(result.outcomes) == [
            "pki",
            "payment_destination",
            "sender_validation",
            "verify_pubkey",
            "public_profile",
        ]

    @pytest.mark.asyncio
    @patch("social.graze.paymail.resolve.srv.DNSResolver")
    async def test_srv_payment_destination_scenario(self, mock_resolver_class, routes):
        """Test a payment destination found through an SRV record."""
        mock_resolver = AsyncMock()
        mock_resolver_class.return_value = mock_resolver
        mock_resolver.query.return_value = [
            srv_answer("bsvalias.example.com", 443, priority=0)
        ]
        base = "https://bsvalias.example.com:443"
        routes.get(
            f"{base}/.well-known/bsvalias",
            discovery_document(
                pki=f"{base}/api/pki/{{alias}}@{{domain.tld}}",
                paymentDestination=f"{base}/api/paymentDestination/{{alias}}@{{domain.tld}}",
            ),
        )
        routes.post(
            f"{base}/api/paymentDestination/alice@example.com",
            {"output": P2PKH_OUTPUT},
        )

        result, errors = await resolve(
            "alice@example.com",
            options(skip_srv_check=False, capabilities={"payment_destination"}),
            client_session=routes.session,
        )

        assert errors == []
        assert result.endpoint.source == EndpointSource.srv
        assert result.endpoint.host == "bsvalias.example.com"
        assert result.outcome("payment_destination").status == OutcomeStatus.ok
        assert routes.requested(
            "post", f"{base}/api/paymentDestination/alice@example.com"
        ) == 1
        # priority 0 differs from the expected SRV priority
        assert [w.kind for w in result.warnings] == ["srv_record_mismatch"]

    @pytest.mark.asyncio
    async def test_pki_flag(self, routes):
        """Test `pki: true` is supported with no endpoint and no request."""
        routes.get(DISCOVERY_URL, discovery_document(pki=True))

        result, errors = await resolve(
            "alice@example.com",
            options(capabilities={"pki"}),
            client_session=routes.session,
        )

        pki = result.outcome("pki")
        assert pki.status == OutcomeStatus.flag
        assert pki.flag is True
        assert errors == []
        assert len(routes.calls) == 1

    @pytest.mark.asyncio
    async def test_not_supported_is_not_an_error(self, routes):
        """Test capabilities missing from the document are not errors."""
        routes.get(DISCOVERY_URL, discovery_document())

        result, errors = await resolve(
            "alice@example.com", OPTIONS, client_session=routes.session
        )

        assert errors == []
        assert result.errors == []
        for outcome in result.outcomes.values():
            assert outcome.status == OutcomeStatus.not_supported
            assert outcome.error is None
        assert len(routes.calls) == 1

    @pytest.mark.asyncio
    async def test_malformed_document(self, routes):
        """Test a malformed document raises and invokes nothing."""
        routes.get(DISCOVERY_URL, "{not json", content_type="text/plain")

        with pytest.raises(CapabilityParseError):
            await resolve("alice@example.com", OPTIONS, client_session=routes.session)

        assert len(routes.calls) == 1

    @pytest.mark.asyncio
    async def test_invalid_target(self, routes):
        """Test invalid targets raise before any request."""
        with pytest.raises(InvalidTarget):
            await resolve("not a handle", OPTIONS, client_session=routes.session)

        assert routes.calls == []

    @pytest.mark.asyncio
    async def test_partial_failure(self, service):
        """Test one failing capability leaves the others intact."""
        service.get(
            f"{BASE_URL}/api/profile/alice@example.com",
            "down",
            status=500,
            content_type="text/plain",
        )
        # the first resolution uses up the fixture's answer
        await resolve("alice@example.com", OPTIONS, client_session=service.session)

        result, errors = await resolve(
            "alice@example.com", OPTIONS, client_session=service.session
        )

        profile = result.outcome("public_profile")
        assert profile.status == OutcomeStatus.failed
        assert profile.error.kind == "capability_request_error"
        assert profile.error.status == 500
        assert profile.code == "f12f968c92d6"
        assert profile.error.capability == "public_profile"
        assert len(errors) == 1
        assert isinstance(errors[0], CapabilityRequestError)
        assert result.outcome("pki").status == OutcomeStatus.ok
        assert result.outcome("payment_destination").status == OutcomeStatus.ok

    @pytest.mark.asyncio
    async def test_invalid_pubkey_fails_pki_only(self, routes):
        """Test a malformed PKI key fails PKI but not the payment destination."""
        routes.get(
            DISCOVERY_URL,
            discovery_document(
                pki=f"{BASE_URL}/id/{{alias}}",
                paymentDestination=f"{BASE_URL}/pd/{{alias}}",
            ),
        )
        routes.get(f"{BASE_URL}/id/alice", {"pubkey": "02abc"})
        routes.post(f"{BASE_URL}/pd/alice", {"output": P2PKH_OUTPUT})

        result, errors = await resolve(
            "alice@example.com",
            options(capabilities={"pki", "payment_destination"}),
            client_session=routes.session,
        )

        assert result.outcome("pki").status == OutcomeStatus.failed
        assert result.outcome("pki").error.kind == "invalid_key_format"
        assert result.outcome("payment_destination").status == OutcomeStatus.ok
        assert [e.kind for e in errors] == ["invalid_key_format"]

    @pytest.mark.asyncio
    async def test_signature_mismatch_warns(self, routes, signing_key):
        """Test a destination signed by another key is a warning."""
        other_key = ec.generate_private_key(ec.SECP256K1())
        routes.get(
            DISCOVERY_URL,
            discovery_document(
                pki=f"{BASE_URL}/id/{{alias}}",
                paymentDestination=f"{BASE_URL}/pd/{{alias}}",
            ),
        )
        routes.get(f"{BASE_URL}/id/alice", {"pubkey": compressed_pubkey(signing_key)})
        routes.post(
            f"{BASE_URL}/pd/alice",
            {"output": P2PKH_OUTPUT, "signature": sign_message(other_key, P2PKH_OUTPUT)},
        )

        result, errors = await resolve(
            "alice@example.com",
            options(capabilities={"pki", "payment_destination"}),
            client_session=routes.session,
        )

        destination = result.outcome("payment_destination")
        assert destination.status == OutcomeStatus.ok
        assert [w.kind for w in destination.warnings] == ["signature_mismatch"]
        assert errors == []

    @pytest.mark.asyncio
    async def test_bare_domain(self, service):
        """Test a bare domain reports advertised capabilities without invoking them."""
        result, errors = await resolve(
            "example.com", OPTIONS, client_session=service.session
        )

        assert errors == []
        assert result.outcome("pki").status == OutcomeStatus.advertised
        assert result.outcome("payment_destination").status == OutcomeStatus.advertised
        assert len(service.calls) == 1

    @pytest.mark.asyncio
    async def test_skip_flags(self, service):
        """Test skipped capabilities are not requested."""
        result, _ = await resolve(
            "alice@example.com",
            options(skip_public_profile=True),
            client_session=service.session,
        )

        assert result.outcome("public_profile").status == OutcomeStatus.skipped
        assert service.requested("get", f"{BASE_URL}/api/profile/alice@example.com") == 0

    @pytest.mark.asyncio
    async def test_skip_pki_leaves_verify_advertised(self, service):
        """Test skip_pki reports verify as advertised instead of failing it."""
        result, errors = await resolve(
            "alice@example.com",
            options(skip_pki=True),
            client_session=service.session,
        )

        assert errors == []
        assert result.errors == []
        assert result.outcome("pki").status == OutcomeStatus.skipped
        verify = result.outcome("verify_pubkey")
        assert verify.status == OutcomeStatus.advertised
        assert verify.code == "a9f510c16bde"
        assert verify.error is None
        assert service.requested("get", f"{BASE_URL}/api/id/alice@example.com") == 0
        assert not any("/api/verify/" in url for _, url, _ in service.calls)

    @pytest.mark.asyncio
    async def test_skip_pki_with_caller_key(self, service, pubkey):
        """Test a caller supplied key is verified even when PKI is skipped."""
        result, errors = await resolve(
            "alice@example.com",
            options(skip_pki=True, verify_pubkey=pubkey),
            client_session=service.session,
        )

        assert errors == []
        verify = result.outcome("verify_pubkey")
        assert verify.status == OutcomeStatus.ok
        assert verify.payload.match is True
        assert service.requested(
            "get", f"{BASE_URL}/api/verify/alice@example.com/{pubkey}"
        ) == 1

    @pytest.mark.asyncio
    async def test_verify_without_pki_capability(self, routes):
        """Test a document with verify but no PKI reports verify as advertised."""
        routes.get(
            DISCOVERY_URL,
            discovery_document(
                a9f510c16bde=f"{BASE_URL}/verify/{{alias}}@{{domain.tld}}/{{pubkey}}"
            ),
        )

        result, errors = await resolve(
            "alice@example.com",
            options(capabilities={"pki", "verify_pubkey"}),
            client_session=routes.session,
        )

        assert errors == []
        assert result.outcome("pki").status == OutcomeStatus.not_supported
        assert result.outcome("verify_pubkey").status == OutcomeStatus.advertised
        assert len(routes.calls) == 1

    @pytest.mark.asyncio
    async def test_verify_with_pki_flag(self, routes):
        """Test `pki: true` gives verify no key and no failure."""
        routes.get(
            DISCOVERY_URL,
            discovery_document(
                pki=True,
                a9f510c16bde=f"{BASE_URL}/verify/{{alias}}@{{domain.tld}}/{{pubkey}}",
            ),
        )

        result, errors = await resolve(
            "alice@example.com",
            options(capabilities={"pki", "verify_pubkey"}),
            client_session=routes.session,
        )

        assert errors == []
        assert result.outcome("pki").status == OutcomeStatus.flag
        assert result.outcome("verify_pubkey").status == OutcomeStatus.advertised
        assert len(routes.calls) == 1

    @pytest.mark.asyncio
    async def test_pki_failure_fails_verify_with_same_error(self, service):
        """Test a failed PKI request fails verify with the original typed error."""
        service.get(
            f"{BASE_URL}/api/id/alice@example.com",
            "down",
            status=500,
            content_type="text/plain",
        )
        # the first resolution uses up the fixture's answer
        await resolve("alice@example.com", OPTIONS, client_session=service.session)

        result, errors = await resolve(
            "alice@example.com", OPTIONS, client_session=service.session
        )

        pki = result.outcome("pki")
        verify = result.outcome("verify_pubkey")
        assert pki.status == OutcomeStatus.failed
        assert verify.status == OutcomeStatus.failed
        assert verify.error.kind == "capability_request_error"
        assert verify.error.status == 500
        assert verify.error == pki.error
        assert verify.error.capability == "pki"
        assert len(errors) == 1
        assert isinstance(errors[0], CapabilityRequestError)
        assert result.outcome("payment_destination").status == OutcomeStatus.ok

    @pytest.mark.asyncio
    async def test_key_not_owned(self, service, pubkey):
        """Test a verify answer with match false fails the verify outcome."""
        service.get(
            f"{BASE_URL}/api/verify/alice@example.com/{pubkey}",
            {"handle": "alice@example.com", "pubkey": pubkey, "match": False},
        )
        await resolve("alice@example.com", OPTIONS, client_session=service.session)

        result, errors = await resolve(
            "alice@example.com", OPTIONS, client_session=service.session
        )

        verify = result.outcome("verify_pubkey")
        assert verify.status == OutcomeStatus.failed
        assert verify.error.kind == "key_ownership_error"
        assert verify.payload.match is False
        assert [e.kind for e in errors] == ["key_ownership_error"]
        assert result.outcome("pki").status == OutcomeStatus.ok

    @pytest.mark.asyncio
    async def test_idempotent(self, service):
        """Test repeated resolutions against an unchanged service are identical."""
        first, first_errors = await resolve(
            "alice@example.com", OPTIONS, client_session=service.session
        )
        second, second_errors = await resolve(
            "alice@example.com", OPTIONS, client_session=service.session
        )

        assert first == second
        assert first_errors == second_errors

    @pytest.mark.asyncio
    async def test_trace_in_issue_order(self, service):
        """Test trace entries arrive in issue order, discovery first."""
        trace = []

        await resolve(
            "alice@example.com",
            OPTIONS,
            trace_sink=trace,
            client_session=service.session,
        )

        assert [entry.sequence for entry in trace] == list(range(len(trace)))
        assert trace[0].request == f"GET {DISCOVERY_URL}"
        assert all(entry.target == TraceTarget.https for entry in trace)
        assert len(trace) == 5

    @pytest.mark.asyncio
    async def test_skip_tracing(self, service):
        """Test skip_tracing records nothing."""
        trace = []

        await resolve(
            "alice@example.com",
            options(skip_tracing=True),
            trace_sink=trace,
            client_session=service.session,
        )

        assert trace == []


class TestCancellation:
    """Test suite for deadlines and caller cancellation."""

    @pytest.mark.asyncio
    async def test_deadline(self, service):
        """Test unfinished capabilities are cancelled at the deadline."""
        service.get(
            f"{BASE_URL}/api/profile/alice@example.com", {"name": "Alice"}, delay=30
        )
        # the first resolution uses up the fixture's immediate answer
        await resolve(
            "alice@example.com",
            options(capabilities={"public_profile"}),
            client_session=service.session,
        )

        started = time.monotonic()
        result, errors = await resolve(
            "alice@example.com",
            options(deadline=0.3),
            client_session=service.session,
        )

        assert time.monotonic() - started < 5
        profile = result.outcome("public_profile")
        assert profile.status == OutcomeStatus.cancelled
        assert profile.error.kind == "cancelled"
        assert [type(e) for e in errors] == [Cancelled]
        assert result.outcome("pki").status == OutcomeStatus.ok
        assert result.outcome("payment_destination").status == OutcomeStatus.ok

        leftover = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        assert leftover == []

    @pytest.mark.asyncio
    async def test_cancel_event(self, service):
        """Test setting the cancel event cancels unfinished capabilities."""
        service.post(
            f"{BASE_URL}/api/address/alice@example.com",
            {"output": P2PKH_OUTPUT},
            delay=30,
        )
        await resolve(
            "alice@example.com",
            options(capabilities={"payment_destination"}),
            client_session=service.session,
        )
        cancel_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.1, cancel_event.set)

        result, errors = await resolve(
            "alice@example.com",
            OPTIONS,
            client_session=service.session,
            cancel_event=cancel_event,
        )

        assert result.outcome("payment_destination").status == OutcomeStatus.cancelled
        assert result.outcome("pki").status == OutcomeStatus.ok
        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_document(self, service):
        """Test cancelling before the document is fetched raises Cancelled."""
        cancel_event = asyncio.Event()
        cancel_event.set()

        with pytest.raises(Cancelled):
            await resolve(
                "alice@example.com",
                OPTIONS,
                client_session=service.session,
                cancel_event=cancel_event,
            )


class TestDnssec:
    """Test suite for the DNSSEC check during resolution."""

    @pytest.mark.asyncio
    async def test_authenticated(self, service):
        """Test a signed domain is reported as authenticated."""
        service.get(
            "https://dns.google/resolve",
            {"Status": 0, "AD": True, "Answer": [{"type": 48}]},
        )

        result, _ = await resolve(
            "alice@example.com",
            options(skip_dns_check=False),
            client_session=service.session,
        )

        assert result.dnssec.checked is True
        assert result.dnssec.authenticated is True
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_unsigned_is_a_warning(self, service):
        """Test an unsigned domain is a warning, not a failure."""
        service.get("https://dns.google/resolve", {"Status": 0, "AD": False})

        result, errors = await resolve(
            "alice@example.com",
            options(skip_dns_check=False),
            client_session=service.session,
        )

        assert result.dnssec.authenticated is False
        assert [w.kind for w in result.warnings] == ["dnssec_error"]
        assert errors == []
        assert result.outcome("pki").status == OutcomeStatus.ok


def write_self_signed_certificate(tmp_path):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "127.0.0.1")])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=1))
        .add_extension(
            x509.SubjectAlternativeName(
                [x509.IPAddress(ipaddress.ip_address("127.0.0.1"))]
            ),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    cert_path = tmp_path / "cert.pem"
    key_path = tmp_path / "key.pem"
    cert_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return cert_path, key_path


@pytest_asyncio.fixture
async def tls_service(tmp_path, pubkey):
    """A paymail service on 127.0.0.1 behind a self-signed certificate."""
    cert_path, key_path = write_self_signed_certificate(tmp_path)
    ssl_context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ssl_context.load_cert_chain(cert_path, key_path)

    async def discovery(request: web.Request) -> web.Response:
        return web.json_response(
            discovery_document(
                pki=f"https://{request.host}/api/id/{{alias}}@{{domain.tld}}"
            )
        )

    async def pki(request: web.Request) -> web.Response:
        return web.json_response(
            {"bsvalias": "1.0", "handle": request.match_info["handle"], "pubkey": pubkey}
        )

    app = web.Application()
    app.router.add_get("/.well-known/bsvalias", discovery)
    app.router.add_get("/api/id/{handle}", pki)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0, ssl_context=ssl_context)
    await site.start()
    port = runner.addresses[0][1]

    with patch("social.graze.paymail.resolve.srv.DNSResolver") as mock_resolver_class:
        mock_resolver = AsyncMock()
        mock_resolver_class.return_value = mock_resolver
        mock_resolver.query.return_value = [srv_answer("127.0.0.1", port)]
        yield port

    await runner.cleanup()


class TestCertificates:
    """Test suite for certificate verification against a real TLS server."""

    @pytest.mark.asyncio
    async def test_self_signed_with_skip_ssl_check(self, tls_service, pubkey):
        """Test skip_ssl_check accepts a self-signed certificate."""
        result, errors = await resolve(
            "alice@example.com",
            options(skip_srv_check=False, skip_ssl_check=True, capabilities={"pki"}),
        )

        assert errors == []
        assert result.insecure is True
        assert result.endpoint.port == tls_service
        assert result.outcome("pki").status == OutcomeStatus.ok
        assert result.outcome("pki").payload.pubkey == pubkey

    @pytest.mark.asyncio
    async def test_self_signed_rejected(self, tls_service):
        """Test a self-signed certificate is rejected by default."""
        with pytest.raises(UnreachableError):
            await resolve(
                "alice@example.com",
                options(skip_srv_check=False, capabilities={"pki"}),
            )
