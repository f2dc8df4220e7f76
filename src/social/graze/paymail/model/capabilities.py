"""Service endpoint and capability document models.

The capability document is parsed once into tagged Capability variants so the
invoker never has to re-check raw JSON value types.
"""

from enum import StrEnum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


class EndpointSource(StrEnum):
    srv = "srv"
    fallback = "fallback"


class SrvRecord(BaseModel):
    """A single DNS SRV answer."""

    model_config = ConfigDict(frozen=True)

    target: str
    port: int
    priority: int
    weight: int


class ServiceEndpoint(BaseModel):
    """Resolved location of a domain's paymail service.

    Created by DNS discovery and discarded after the resolution that created
    it. `source` tells whether an SRV record was found or the default
    endpoint was used.
    """

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = 443
    scheme: str = "https"
    source: EndpointSource = EndpointSource.srv
    srv_record: Optional[SrvRecord] = None

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def discovery_url(self) -> str:
        return f"{self.base_url}/.well-known/bsvalias"


class CapabilityKind(StrEnum):
    supported = "supported"
    flag = "flag"
    unsupported = "unsupported"


class Capability(BaseModel):
    """One entry of the capability document.

    - supported: the service exposes an endpoint at `uri` (a URI template)
    - flag: the service answers with a plain boolean, `flag` is the answer
    - unsupported: the code is not present in the document
    """

    model_config = ConfigDict(frozen=True)

    code: str
    kind: CapabilityKind
    uri: Optional[str] = None
    flag: Optional[bool] = None

    @staticmethod
    def supported(code: str, uri: str) -> "Capability":
        return Capability(code=code, kind=CapabilityKind.supported, uri=uri)

    @staticmethod
    def from_flag(code: str, value: bool) -> "Capability":
        return Capability(code=code, kind=CapabilityKind.flag, flag=value)

    @staticmethod
    def unsupported(code: str) -> "Capability":
        return Capability(code=code, kind=CapabilityKind.unsupported)


class CapabilityDocument(BaseModel):
    """Parsed `/.well-known/bsvalias` discovery document."""

    model_config = ConfigDict(frozen=True)

    bsvalias: str
    capabilities: Dict[str, Capability] = Field(default_factory=dict)
    ignored: List[str] = Field(default_factory=list)

    def lookup(self, *codes: str) -> Capability:
        """Find the first of `codes` present in the document.

        Several codes may name the same capability (a BRFC id and its
        alias). When none is present the first code is reported as
        unsupported.
        """
        for code in codes:
            capability = self.capabilities.get(code)
            if capability is not None:
                return capability
        return Capability.unsupported(codes[0])

    def has(self, *codes: str) -> bool:
        return self.lookup(*codes).kind != CapabilityKind.unsupported

    @staticmethod
    def from_capability_map(
        bsvalias: str, values: Mapping[str, Any]
    ) -> "CapabilityDocument":
        capabilities: Dict[str, Capability] = {}
        ignored: List[str] = []
        for code, value in values.items():
            # bool first, a JSON true is never a template
            if isinstance(value, bool):
                capabilities[code] = Capability.from_flag(code, value)
            elif isinstance(value, str) and value:
                capabilities[code] = Capability.supported(code, value)
            else:
                ignored.append(code)
        return CapabilityDocument(
            bsvalias=bsvalias, capabilities=capabilities, ignored=ignored
        )
