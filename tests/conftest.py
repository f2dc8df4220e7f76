"""
Shared test configuration and fixtures for paymail resolver tests.

Provides a fake aiohttp session that answers by method and URL, secp256k1 keys
with a Bitcoin signed message helper, and a mockable SRV resolver.
"""

import asyncio
import base64
import json
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, Mock

import pytest
from aiohttp import ClientConnectionError, ClientResponse, ClientSession, hdrs
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    decode_dss_signature,
)
from multidict import CIMultiDict, CIMultiDictProxy

from social.graze.paymail.resolve.validate import signed_message_digest

DOMAIN = "example.com"
BASE_URL = "https://example.com:443"
DISCOVERY_URL = f"{BASE_URL}/.well-known/bsvalias"

P2PKH_OUTPUT = "76a914" + "11" * 20 + "88ac"


def create_mock_response(
    status: int = 200,
    body: Any = None,
    content_type: str = "application/json",
) -> ClientResponse:
    """Create a mock aiohttp ClientResponse."""
    mock_response = AsyncMock(spec=ClientResponse)
    mock_response.status = status
    mock_response.headers = CIMultiDictProxy(
        CIMultiDict({hdrs.CONTENT_TYPE: content_type})
    )
    if body is None:
        text = ""
    elif isinstance(body, str):
        text = body
    else:
        text = json.dumps(body)
    mock_response.text = AsyncMock(return_value=text)
    mock_response.release = Mock()
    mock_response.raise_for_status = Mock()
    mock_response.closed = False
    mock_response.close = Mock()
    return mock_response


class MockRoutes:
    """
    Fake ClientSession answering requests by (method, url).

    Each route holds a list of answers. They are used in order, and the last
    one keeps answering once the others are used up. An answer is a status and
    body, an exception to raise, or a delay before answering. Unknown URLs fail
    as a connection error.
    """

    def __init__(self) -> None:
        self._routes: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        self.session = Mock(spec=ClientSession)
        self.session.request = AsyncMock(side_effect=self._request)

    def add(
        self,
        method: str,
        url: str,
        body: Any = None,
        status: int = 200,
        content_type: str = "application/json",
        exception: Optional[BaseException] = None,
        delay: Optional[float] = None,
    ) -> "MockRoutes":
        self._routes.setdefault((method.lower(), url), []).append(
            {
                "body": body,
                "status": status,
                "content_type": content_type,
                "exception": exception,
                "delay": delay,
            }
        )
        return self

    def get(self, url: str, body: Any = None, **kwargs: Any) -> "MockRoutes":
        return self.add("get", url, body, **kwargs)

    def post(self, url: str, body: Any = None, **kwargs: Any) -> "MockRoutes":
        return self.add("post", url, body, **kwargs)

    def requested(self, method: str, url: str) -> int:
        return len(
            [c for c in self.calls if c[0] == method.lower() and c[1] == url]
        )

    async def _request(self, method: str, url: Any, **kwargs: Any) -> ClientResponse:
        key = (method.lower(), str(url))
        self.calls.append((key[0], key[1], kwargs))

        answers = self._routes.get(key)
        if not answers:
            raise ClientConnectionError(f"no route for {method} {url}")
        answer = answers.pop(0) if len(answers) > 1 else answers[0]

        if answer["delay"] is not None:
            await asyncio.sleep(answer["delay"])
        if answer["exception"] is not None:
            raise answer["exception"]
        return create_mock_response(
            status=answer["status"],
            body=answer["body"],
            content_type=answer["content_type"],
        )


@pytest.fixture
def routes() -> MockRoutes:
    return MockRoutes()


def compressed_pubkey(key: ec.EllipticCurvePrivateKey) -> str:
    return (
        key.public_key()
        .public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint
        )
        .hex()
    )


def sign_message(key: ec.EllipticCurvePrivateKey, message: str) -> str:
    """Produce a base64 compact Bitcoin signed message signature."""
    der = key.sign(signed_message_digest(message), ec.ECDSA(Prehashed(hashes.SHA256())))
    r, s = decode_dss_signature(der)
    # 31 = compressed key, recovery id 0; the verifier does not recover the key
    raw = bytes([31]) + r.to_bytes(32, "big") + s.to_bytes(32, "big")
    return base64.b64encode(raw).decode("ascii")


@pytest.fixture
def signing_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256K1())


@pytest.fixture
def pubkey(signing_key) -> str:
    return compressed_pubkey(signing_key)


def discovery_document(**capabilities: Any) -> Dict[str, Any]:
    return {"bsvalias": "1.0", "capabilities": capabilities}


@pytest.fixture
def service(routes, pubkey):
    """A complete mock paymail service for alice@example.com."""
    routes.get(
        DISCOVERY_URL,
        discovery_document(
            pki=f"{BASE_URL}/api/id/{{alias}}@{{domain.tld}}",
            paymentDestination=f"{BASE_URL}/api/address/{{alias}}@{{domain.tld}}",
            f12f968c92d6=f"{BASE_URL}/api/profile/{{alias}}@{{domain.tld}}",
            a9f510c16bde=f"{BASE_URL}/api/verify/{{alias}}@{{domain.tld}}/{{pubkey}}",
            **{"6745385c3fc0": False},
        ),
    )
    routes.get(
        f"{BASE_URL}/api/id/alice@example.com",
        {"bsvalias": "1.0", "handle": "alice@example.com", "pubkey": pubkey},
    )
    routes.post(
        f"{BASE_URL}/api/address/alice@example.com",
        {"output": P2PKH_OUTPUT},
    )
    routes.get(
        f"{BASE_URL}/api/profile/alice@example.com",
        {"name": "Alice", "avatar": "https://example.com/alice.png"},
    )
    routes.get(
        f"{BASE_URL}/api/verify/alice@example.com/{pubkey}",
        {"handle": "alice@example.com", "pubkey": pubkey, "match": True},
    )
    return routes


def srv_answer(host: str, port: int, priority: int = 10, weight: int = 10) -> Mock:
    """An aiodns SRV answer."""
    return Mock(host=host, port=port, priority=priority, weight=weight)
