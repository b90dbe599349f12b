"""Tests for the beeylo-sync command line."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from beeylo_sync import cli
from beeylo_sync.runtime import Runtime
from beeylo_sync.sync import SyncEngine
from tests.factories import TENANT_ID, order_payload


@pytest.fixture()
def run_cli(settings, store):
    def run(*argv: str) -> int:
        with patch("beeylo_sync.cli.get_settings", return_value=settings), patch(
            "beeylo_sync.cli.Runtime", side_effect=lambda s: Runtime(s, store=store)
        ):
            return cli.main(list(argv))

    return run


class TestCommands:
    def test_link_customers(self, run_cli, store, capsys):
        order = asyncio.run(SyncEngine(store).sync_order(TENANT_ID, order_payload()))
        assert run_cli("link-customers", "--batch", "10") == 0
        assert "linked 1" in capsys.readouterr().out
        assert store.customers[order.customer_ref].user_ref is not None

    def test_sync_store_unknown_tenant(self, run_cli, capsys):
        assert run_cli("sync-store", "--tenant", "ghost") == 1
        assert "tenant not found" in capsys.readouterr().err

    def test_sync_store_warns_without_redis(self, run_cli, capsys):
        with patch("beeylo_sync.backfill.ManualSync.run", return_value=3) as run:
            assert run_cli("sync-store", "--tenant", TENANT_ID, "--since", "2024-01-01") == 0
        out = capsys.readouterr()
        assert "Queued 3 order(s)" in out.out
        assert "REDIS_URL not set" in out.err
        assert run.call_args.kwargs["since"].isoformat() == "2024-01-01T00:00:00+00:00"

    def test_recheck_tracking(self, run_cli, capsys):
        assert run_cli("recheck-tracking") == 0
        assert "Scheduled 0 tracking refresh(es)" in capsys.readouterr().out

    def test_dead_letters_empty(self, run_cli, capsys):
        assert run_cli("dead-letters", "--queue", "tracking") == 0
        assert capsys.readouterr().out == ""

    def test_dead_letters_unknown_queue(self, run_cli, capsys):
        assert run_cli("dead-letters", "--queue", "emails") == 1
        assert "unknown queue" in capsys.readouterr().err

    def test_serve_runs_uvicorn(self, run_cli):
        with patch("uvicorn.run") as uvicorn_run:
            assert run_cli("serve", "--port", "9000") == 0
        assert uvicorn_run.call_args.kwargs["port"] == 9000
        assert uvicorn_run.call_args.kwargs["host"] == "0.0.0.0"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.main([])
