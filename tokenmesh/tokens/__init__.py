"""Token economy: ledger-backed wallets and allocation policies.

- `wallet`: the only mutation path for balances (one ledger entry per change)
- `policy`: per-level / per-user entitlements and period rollover
- `periods`: calendar-aligned UTC period boundaries
"""
