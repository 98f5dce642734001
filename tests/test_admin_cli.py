from __future__ import annotations

import json
import os
import tempfile

import pytest

from tokenmesh.cli.admin import main


def test_cli_policy_wallet_and_worker_flow(capsys: pytest.CaptureFixture[str]) -> None:
    with tempfile.TemporaryDirectory() as td:
        db = os.path.join(td, "app.db")

        assert main(["--db-path", db, "policy-set-user", "u1", "--base-allocation", "300", "--allocation-mode", "manual"]) == 0
        assert main(["--db-path", db, "wallet-show", "u1"]) == 0
        assert main(["--db-path", db, "worker-register", "w1", "llm", "--capacity", "2", "--tag", "gpu"]) == 0
        capsys.readouterr()

        assert main(["--db-path", db, "run", "u1", "alpha beta"]) == 0
        execution = json.loads(capsys.readouterr().out)
        assert execution["status"] == "completed"
        assert execution["tokens_billed"] == 10

        assert main(["--db-path", db, "wallet-audit", "u1"]) == 0
        audit = json.loads(capsys.readouterr().out)
        assert audit["consistent"] is True
        assert audit["stored_balance"] == 290

        assert main(["--db-path", db, "worker-list"]) == 0
        workers = json.loads(capsys.readouterr().out)
        assert [w["worker_id"] for w in workers] == ["w1"]


def test_cli_reports_domain_errors_on_stderr(capsys: pytest.CaptureFixture[str]) -> None:
    with tempfile.TemporaryDirectory() as td:
        db = os.path.join(td, "app.db")
        assert main(["--db-path", db, "wallet-show", "u1"]) == 0
        capsys.readouterr()

        assert main(["--db-path", db, "wallet-adjust", "u1", "5", "debit"]) == 1
        err = json.loads(capsys.readouterr().err)
        assert err["error"]["code"] == "insufficient_tokens"

        assert main(["--db-path", db, "worker-health", "ghost", "50"]) == 1
        assert json.loads(capsys.readouterr().err)["error"]["code"] == "worker_not_found"
