"""Multi-tenant API gateway: token auth, per-tenant rate limiting, metrics."""
