"""
HTTP Client

Middleware chain around aiohttp's ClientSession. Every paymail HTTPS request goes
through it so user agent, retries, timeouts, certificate checks and tracing are
handled in one place.
"""
