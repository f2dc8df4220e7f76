"""
Paymail Resolver

This module implements resolution and validation of paymail addresses: human readable
handles (alias@domain.tld) mapped to payment capabilities advertised by a domain's
paymail service.

Key Components:
- resolve: Discovery, capability fetching, invocation, validation and the session entry point
- http: aiohttp middleware chain used for every HTTPS request
- model: Pydantic models for targets, capability documents, responses and results
- trace: Ordered, concurrency safe trace collection of DNS and HTTPS round-trips
- config: Environment settings and the immutable per-resolution options
- errors: Error taxonomy shared by all components

Resolution Overview:
1. Discovery:
   - SRV lookup of _bsvalias._tcp.{domain} through aiodns
   - Fallback to https://{domain}:443 when no record exists

2. Capabilities:
   - Fetch and parse /.well-known/bsvalias into typed capability variants

3. Invocation and validation:
   - PKI, payment destination, public profile and public key verification run
     concurrently, each ending in its own outcome
   - Responses are checked by independently toggleable validation stages

Callers (a CLI, a web handler) pass a target and options to
social.graze.paymail.resolve.session.resolve and render the structured result it
returns. Nothing here formats output for humans.
"""
