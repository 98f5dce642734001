"""Execution dispatch, engines and background threads (runner, allocation sweeper)."""
