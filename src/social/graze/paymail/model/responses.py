"""Typed bodies of paymail capability requests and responses.

Field aliases match the camelCase JSON used on the wire.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PkiResponse(BaseModel):
    """Identity public key of a paymail handle."""

    bsvalias: Optional[str] = None
    handle: Optional[str] = None
    pubkey: str


class SenderRequest(BaseModel):
    """Body POSTed to the payment destination capability."""

    model_config = ConfigDict(populate_by_name=True)

    sender_name: Optional[str] = Field(default=None, alias="senderName")
    sender_handle: str = Field(alias="senderHandle")
    dt: str
    amount: Optional[int] = None
    purpose: Optional[str] = None
    signature: Optional[str] = None


class PaymentDestinationResponse(BaseModel):
    """Output script a sender should pay to."""

    output: str
    signature: Optional[str] = None
    address: Optional[str] = None


class PublicProfileResponse(BaseModel):
    name: Optional[str] = None
    avatar: Optional[str] = None


class VerifyPubKeyResponse(BaseModel):
    """Answer of the verify public key owner capability."""

    bsvalias: Optional[str] = None
    handle: Optional[str] = None
    pubkey: Optional[str] = None
    match: bool
