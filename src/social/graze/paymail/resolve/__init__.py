"""
Paymail Resolution

This package resolves paymail handles and domains to the capabilities their
service advertises, and validates what those capabilities return.

Key Components:
- srv.py: SRV based service discovery with fallback, and the DNSSEC check
- capabilities.py: Discovery document fetching and parsing
- invoke.py: URI template expansion and capability requests
- validate.py: Pure, composable response validation stages
- brfc.py: BRFC ids and the catalogue of known capabilities
- session.py: The resolution session and the resolve() entry point
- __main__.py: CLI interface for resolution

The resolution flow follows these steps:
1. Parse the input into a handle or a bare domain
2. Discover the service endpoint (SRV record or https://{domain}:443)
3. Fetch the capability document from /.well-known/bsvalias
4. Invoke each requested capability concurrently
5. Validate every response and return per-capability outcomes
"""
