"""Paymail resolution error taxonomy.

Session-level errors (discovery, capability document fetch and parse) abort a
resolution. Every other error is captured on the outcome of the capability it
belongs to and never stops the remaining capabilities from being evaluated.
"""

from typing import Optional

from social.graze.paymail.model.result import ErrorDetail


class PaymailError(Exception):
    """Base class for every error raised or reported by the resolver."""

    kind: str = "paymail_error"

    def __init__(self, message: str, capability: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.capability = capability

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            kind=self.kind, message=self.message, capability=self.capability
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PaymailError):
            return NotImplemented
        return self.to_detail() == other.to_detail()

    def __hash__(self) -> int:
        return hash((self.kind, self.message, self.capability))


class InvalidTarget(PaymailError, ValueError):
    """The handle or domain given by the caller is not usable."""

    kind = "invalid_target"


class DNSError(PaymailError):
    """The SRV query itself failed. An absent record is not a DNSError."""

    kind = "dns_error"


class UnreachableError(PaymailError):
    """Connection, TLS or timeout failure talking to the paymail service."""

    kind = "unreachable"


class CapabilityParseError(PaymailError):
    """The discovery document is malformed or misses required fields."""

    kind = "capability_parse_error"


class TemplateError(PaymailError):
    """A capability URI template still has unresolved placeholders."""

    kind = "template_error"


class CapabilityRequestError(PaymailError):
    """A capability endpoint answered with a non-2xx status."""

    kind = "capability_request_error"

    def __init__(
        self,
        message: str,
        status: int,
        body: Optional[str] = None,
        capability: Optional[str] = None,
    ) -> None:
        super().__init__(message, capability=capability)
        self.status = status
        self.body = body

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            kind=self.kind,
            message=self.message,
            capability=self.capability,
            status=self.status,
            body=self.body,
        )


class InvalidResponse(PaymailError):
    """A capability response body could not be decoded into its typed form."""

    kind = "invalid_response"


class InvalidKeyFormat(PaymailError):
    kind = "invalid_key_format"


class InvalidOutputScript(PaymailError):
    kind = "invalid_output_script"


class SignatureMismatch(PaymailError):
    """Advisory: a signed response did not verify against the PKI key."""

    kind = "signature_mismatch"


class KeyOwnershipError(PaymailError):
    """The service says the public key does not belong to the handle."""

    kind = "key_ownership_error"


class BrfcValidationError(PaymailError):
    kind = "brfc_validation_error"


class SrvRecordMismatch(PaymailError):
    kind = "srv_record_mismatch"


class VersionMismatch(PaymailError):
    kind = "version_mismatch"


class DnssecError(PaymailError):
    kind = "dnssec_error"


class SenderValidationError(PaymailError):
    kind = "sender_validation_error"


class Cancelled(PaymailError):
    """The resolution deadline passed or the caller cancelled it."""

    kind = "cancelled"
