"""
Data Models

This package defines the pydantic models shared by the paymail resolver.
Everything here is plain data: no network access, no logging.

Key Models:
- target.py: Parsed caller input (handle or bare domain) and hostname rules
- capabilities.py: Service endpoints, SRV records and the typed capability document
- responses.py: Typed request and response bodies of the capability endpoints
- result.py: Per-capability outcomes and the aggregate resolution result
- trace.py: Trace entries recorded for every DNS query and HTTPS round-trip

The models follow these relationships:
- ParsedTarget: What the caller asked for (alias and domain)
- ServiceEndpoint: Where the domain's paymail service lives
- CapabilityDocument: What the service says it can do
- CapabilityOutcome: What happened when a capability was asked for
- ResolutionResult: Everything above, returned to the caller

Models that describe resolved state are frozen. A result is built once per
resolution and never mutated afterwards.
"""
