"""
Rate-limit gateway service package.

The gateway fronts arbitrary backends as a route service, enforcing:
- Per-client token buckets keyed by source address, with idle eviction
- An optional percentage-of-capacity soft gate
- Artificial latency injected ahead of admission
- Live reconfiguration through the /config endpoint

Structure:
- app.main: FastAPI app, routes, and service wiring.
- app.ratelimit: Token bucket, state store, and limiter policy.
- app.domain: Admission pipeline and live configuration controller.
- app.adapters: Destination resolution and the upstream HTTP client.
"""
