"""Response validation stages.

Every stage is a pure function `(subject, options, context) -> ValidationOutcome`.
Stages are grouped per subject and composed with run_stages, so toggling a
check means a stage returning an empty outcome rather than a branch in the
resolution flow.

Errors make the capability outcome fail. Warnings are advisory and are
reported alongside a successful outcome.
"""

import base64
import hashlib
import string
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    encode_dss_signature,
)
from yarl import URL

from social.graze.paymail.config import ResolveOptions
from social.graze.paymail.errors import (
    BrfcValidationError,
    InvalidKeyFormat,
    InvalidOutputScript,
    InvalidResponse,
    KeyOwnershipError,
    PaymailError,
    SenderValidationError,
    SignatureMismatch,
    SrvRecordMismatch,
    VersionMismatch,
)
from social.graze.paymail.model.capabilities import CapabilityDocument, ServiceEndpoint
from social.graze.paymail.model.responses import (
    PaymentDestinationResponse,
    PkiResponse,
    PublicProfileResponse,
    VerifyPubKeyResponse,
)
from social.graze.paymail.model.target import ParsedTarget
from social.graze.paymail.resolve.brfc import KNOWN_CAPABILITIES, is_known_code

BITCOIN_SIGNED_MESSAGE_MAGIC = b"Bitcoin Signed Message:\n"
COMPRESSED_PUBKEY_LENGTH = 66

_BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_P2PKH_PREFIX = "76a914"
_P2PKH_SUFFIX = "88ac"


@dataclass
class ValidationOutcome:
    errors: List[PaymailError] = field(default_factory=list)
    warnings: List[PaymailError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return len(self.errors) == 0

    def merge(self, other: "ValidationOutcome") -> "ValidationOutcome":
        return ValidationOutcome(
            errors=self.errors + other.errors,
            warnings=self.warnings + other.warnings,
        )


@dataclass(frozen=True)
class ValidationContext:
    """What stages may look at besides their subject."""

    target: ParsedTarget
    document: Optional[CapabilityDocument] = None
    pki: Optional[PkiResponse] = None
    pubkey: Optional[str] = None
    sender_signature: Optional[str] = None


Stage = Callable[[Any, ResolveOptions, ValidationContext], ValidationOutcome]


def run_stages(
    stages: Sequence[Stage],
    subject: Any,
    options: ResolveOptions,
    context: ValidationContext,
) -> ValidationOutcome:
    outcome = ValidationOutcome()
    for stage in stages:
        outcome = outcome.merge(stage(subject, options, context))
    return outcome


def _is_hex(value: str) -> bool:
    return len(value) > 0 and all(c in string.hexdigits for c in value)


def base58check_encode(version: bytes, payload: bytes) -> str:
    data = version + payload
    checksum = hashlib.sha256(hashlib.sha256(data).digest()).digest()[:4]
    data = data + checksum

    number = int.from_bytes(data, "big")
    encoded = ""
    while number > 0:
        number, remainder = divmod(number, 58)
        encoded = _BASE58_ALPHABET[remainder] + encoded

    leading_zeros = len(data) - len(data.lstrip(b"\x00"))
    return "1" * leading_zeros + encoded


def output_script_address(script: str) -> Optional[str]:
    """Return the address paid by a P2PKH output script, None for any other script."""
    script = script.lower()
    if (
        len(script) == 50
        and script.startswith(_P2PKH_PREFIX)
        and script.endswith(_P2PKH_SUFFIX)
        and _is_hex(script)
    ):
        return base58check_encode(b"\x00", bytes.fromhex(script[6:46]))
    return None


def load_public_key(pubkey: str) -> ec.EllipticCurvePublicKey:
    """Decode a compressed secp256k1 public key.

    Raises:
        InvalidKeyFormat: Wrong length, prefix or not a point on the curve
    """
    if len(pubkey) != COMPRESSED_PUBKEY_LENGTH:
        raise InvalidKeyFormat(
            f"public key must be {COMPRESSED_PUBKEY_LENGTH} hex characters, got {len(pubkey)}"
        )
    if not pubkey.startswith(("02", "03")):
        raise InvalidKeyFormat("public key must be compressed (02 or 03 prefix)")
    if not _is_hex(pubkey):
        raise InvalidKeyFormat("public key is not hex encoded")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(
            ec.SECP256K1(), bytes.fromhex(pubkey)
        )
    except ValueError as e:
        raise InvalidKeyFormat(f"public key is not a secp256k1 point: {e}") from e


def _varint(length: int) -> bytes:
    if length < 0xFD:
        return bytes([length])
    if length <= 0xFFFF:
        return b"\xfd" + length.to_bytes(2, "little")
    if length <= 0xFFFFFFFF:
        return b"\xfe" + length.to_bytes(4, "little")
    return b"\xff" + length.to_bytes(8, "little")


def signed_message_digest(message: str) -> bytes:
    """Double SHA-256 of a message in Bitcoin signed message framing."""
    encoded = message.encode("utf-8")
    data = (
        _varint(len(BITCOIN_SIGNED_MESSAGE_MAGIC))
        + BITCOIN_SIGNED_MESSAGE_MAGIC
        + _varint(len(encoded))
        + encoded
    )
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def verify_signed_message(pubkey: str, message: str, signature: str) -> bool:
    """Verify a base64 compact Bitcoin signed message signature.

    The public key is known, so the recovery id in the header byte is not
    needed: r and s are checked directly against the key.
    """
    key = load_public_key(pubkey)
    try:
        raw = base64.b64decode(signature, validate=True)
    except ValueError:
        return False
    if len(raw) != 65 or not 27 <= raw[0] <= 42:
        return False

    r = int.from_bytes(raw[1:33], "big")
    s = int.from_bytes(raw[33:65], "big")
    if r == 0 or s == 0:
        return False

    try:
        key.verify(
            encode_dss_signature(r, s),
            signed_message_digest(message),
            ec.ECDSA(Prehashed(hashes.SHA256())),
        )
    except InvalidSignature:
        return False
    return True


# Payment destination stages


def validate_output_script(
    subject: PaymentDestinationResponse,
    options: ResolveOptions,
    context: ValidationContext,
) -> ValidationOutcome:
    script = subject.output
    if not _is_hex(script) or len(script) % 2 != 0:
        return ValidationOutcome(
            errors=[
                InvalidOutputScript(
                    "output script is not valid hex", capability="payment_destination"
                )
            ]
        )
    return ValidationOutcome()


def validate_destination_signature(
    subject: PaymentDestinationResponse,
    options: ResolveOptions,
    context: ValidationContext,
) -> ValidationOutcome:
    if options.skip_pki or subject.signature is None or context.pki is None:
        return ValidationOutcome()
    try:
        verified = verify_signed_message(
            context.pki.pubkey, subject.output, subject.signature
        )
    except InvalidKeyFormat:
        # Reported on the PKI outcome
        return ValidationOutcome()
    if verified:
        return ValidationOutcome()
    return ValidationOutcome(
        warnings=[
            SignatureMismatch(
                "payment destination signature does not match the PKI public key",
                capability="payment_destination",
            )
        ]
    )


def validate_sender_validation(
    subject: PaymentDestinationResponse,
    options: ResolveOptions,
    context: ValidationContext,
) -> ValidationOutcome:
    if context.document is None or context.sender_signature is not None:
        return ValidationOutcome()
    capability = context.document.lookup(*KNOWN_CAPABILITIES["sender_validation"].codes)
    if capability.flag is not True:
        return ValidationOutcome()
    return ValidationOutcome(
        warnings=[
            SenderValidationError(
                "service requires sender validation but the request was not signed",
                capability="payment_destination",
            )
        ]
    )


# PKI stages


def validate_pubkey_format(
    subject: PkiResponse, options: ResolveOptions, context: ValidationContext
) -> ValidationOutcome:
    try:
        load_public_key(subject.pubkey)
    except InvalidKeyFormat as e:
        e.capability = "pki"
        return ValidationOutcome(errors=[e])
    return ValidationOutcome()


def validate_pki_handle(
    subject: PkiResponse, options: ResolveOptions, context: ValidationContext
) -> ValidationOutcome:
    expected = context.target.handle
    if subject.handle is None or expected is None:
        return ValidationOutcome()
    if subject.handle.strip().lower() == expected:
        return ValidationOutcome()
    return ValidationOutcome(
        warnings=[
            InvalidResponse(
                f"PKI handle {subject.handle} does not match {expected}",
                capability="pki",
            )
        ]
    )


# Public profile and verify stages


def validate_public_profile(
    subject: PublicProfileResponse,
    options: ResolveOptions,
    context: ValidationContext,
) -> ValidationOutcome:
    if subject.avatar is None:
        return ValidationOutcome()
    try:
        avatar = URL(subject.avatar)
    except ValueError:
        avatar = None
    if avatar is not None and avatar.is_absolute() and avatar.scheme in ("http", "https"):
        return ValidationOutcome()
    return ValidationOutcome(
        warnings=[
            InvalidResponse(
                "public profile avatar is not an http(s) URL",
                capability="public_profile",
            )
        ]
    )


def validate_verify_response(
    subject: VerifyPubKeyResponse,
    options: ResolveOptions,
    context: ValidationContext,
) -> ValidationOutcome:
    if subject.pubkey is None or context.pubkey is None:
        return ValidationOutcome()
    if subject.pubkey.lower() == context.pubkey.lower():
        return ValidationOutcome()
    return ValidationOutcome(
        warnings=[
            InvalidResponse(
                "verify response refers to a different public key",
                capability="verify_pubkey",
            )
        ]
    )


def validate_key_ownership(
    subject: VerifyPubKeyResponse,
    options: ResolveOptions,
    context: ValidationContext,
) -> ValidationOutcome:
    if subject.match:
        return ValidationOutcome()
    handle = subject.handle or context.target.handle
    return ValidationOutcome(
        errors=[
            KeyOwnershipError(
                f"public key does not belong to {handle}", capability="verify_pubkey"
            )
        ]
    )


# Session level stages


def validate_brfc_codes(
    subject: CapabilityDocument,
    options: ResolveOptions,
    context: ValidationContext,
) -> ValidationOutcome:
    if options.skip_brfc_validation:
        return ValidationOutcome()
    invalid = [
        BrfcValidationError(f"capability code {code} is not a valid BRFC id")
        for code in sorted(subject.capabilities)
        if not is_known_code(code)
    ]
    if options.strict_brfc:
        return ValidationOutcome(errors=invalid)
    return ValidationOutcome(warnings=invalid)


def validate_bsvalias_version(
    subject: CapabilityDocument,
    options: ResolveOptions,
    context: ValidationContext,
) -> ValidationOutcome:
    if subject.bsvalias == options.bsvalias_version:
        return ValidationOutcome()
    return ValidationOutcome(
        warnings=[
            VersionMismatch(
                f"bsvalias version {subject.bsvalias} does not match expected {options.bsvalias_version}"
            )
        ]
    )


def validate_srv_record(
    subject: ServiceEndpoint,
    options: ResolveOptions,
    context: ValidationContext,
) -> ValidationOutcome:
    record = subject.srv_record
    if record is None:
        return ValidationOutcome()

    warnings: List[PaymailError] = []
    if not record.target:
        warnings.append(SrvRecordMismatch("SRV target is empty"))
    for name, actual, expected in (
        ("port", record.port, options.port),
        ("priority", record.priority, options.priority),
        ("weight", record.weight, options.weight),
    ):
        if actual != expected:
            warnings.append(
                SrvRecordMismatch(f"SRV {name} {actual} does not match expected {expected}")
            )
    return ValidationOutcome(warnings=warnings)


PAYMENT_DESTINATION_STAGES: Sequence[Stage] = (
    validate_output_script,
    validate_destination_signature,
    validate_sender_validation,
)
PKI_STAGES: Sequence[Stage] = (validate_pubkey_format, validate_pki_handle)
PUBLIC_PROFILE_STAGES: Sequence[Stage] = (validate_public_profile,)
VERIFY_STAGES: Sequence[Stage] = (validate_key_ownership, validate_verify_response)
DOCUMENT_STAGES: Sequence[Stage] = (validate_bsvalias_version, validate_brfc_codes)
ENDPOINT_STAGES: Sequence[Stage] = (validate_srv_record,)
