"""HTTP API layer (FastAPI).

Versioned `/api/v1` surface over the token economy and worker routing core:
- wallets, ledger pages and audits
- allocation policies and rollover sweeps
- worker registration, health, load and events
- routing strategies/metrics and executions

The API is intentionally thin: core behavior lives in `tokenmesh/tokens`,
`tokenmesh/workers`, `tokenmesh/runtime` and `tokenmesh/storage`.
"""
