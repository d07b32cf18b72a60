"""
Tests for the infrashare command line interface.
"""

import json
import os
import sys
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from cli import build_parser, cmd_check, cmd_migrate, cmd_reconcile, cmd_serve


class TestParser:
    def test_serve_options(self):
        args = build_parser().parse_args(["serve", "--port", "8080", "--production"])

        assert args.command == "serve"
        assert args.port == 8080
        assert args.production is True

    def test_reconcile_requires_target(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["reconcile"])

    def test_reconcile_targets_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["reconcile", "--distribution", "d", "--project", "p"])


class TestCommands:
    def test_reconcile_empty_project(self, capsys):
        args = build_parser().parse_args(["reconcile", "--project", "proj-none"])

        assert cmd_reconcile(args) == 0
        report = json.loads(capsys.readouterr().out)
        assert report["status"] == "balanced"
        assert report["distributionCount"] == 0

    def test_reconcile_unknown_distribution(self, capsys):
        args = build_parser().parse_args(["reconcile", "--distribution", "dist_missing"])

        assert cmd_reconcile(args) == 1
        assert json.loads(capsys.readouterr().out)["code"] == "not_found"

    def test_migrate_without_url(self, monkeypatch, capsys):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        args = build_parser().parse_args(["migrate"])

        assert cmd_migrate(args) == 1
        assert "DATABASE_URL not set" in capsys.readouterr().out

    def test_check(self, capsys):
        with patch.dict(os.environ, {"PAYMENT_WEBHOOK_SECRET": "whsec"}):
            assert cmd_check(build_parser().parse_args(["check"])) == 0

        output = capsys.readouterr().out
        assert "Storage (MemoryStorage): OK" in output
        assert "Payment webhook signing: OK" in output

    def test_check_invalid_fee(self, capsys):
        with patch.dict(os.environ, {"PLATFORM_FEE_RATE": "2"}):
            assert cmd_check(build_parser().parse_args(["check"])) == 1

        assert "Engine configuration: FAIL" in capsys.readouterr().out

    def test_migrate_empty_directory(self, monkeypatch, tmp_path, capsys):
        monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/infrashare")
        args = build_parser().parse_args(["migrate", "--migrations-dir", str(tmp_path)])

        assert cmd_migrate(args) == 1
        assert "no migrations found" in capsys.readouterr().out

    def test_migrate_options(self):
        args = build_parser().parse_args(["migrate", "--status", "--target", "2", "--dry-run"])

        assert args.status is True
        assert args.target == 2
        assert args.dry_run is True


class TestServeWorkers:
    """Several production workers need a storage backend shared across processes."""

    def test_json_backend_refuses_workers(self, monkeypatch, capsys):
        monkeypatch.setenv("STORAGE_BACKEND", "json")
        args = build_parser().parse_args(["serve", "--production", "--workers", "4"])

        with patch("api.create_app") as create_app:
            assert cmd_serve(args) == 1

        create_app.assert_not_called()
        assert "require STORAGE_BACKEND=postgresql" in capsys.readouterr().out

    def test_default_worker_count_refused_for_memory(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        monkeypatch.delenv("WORKERS", raising=False)
        args = build_parser().parse_args(["serve", "--production"])

        with patch("api.create_app") as create_app:
            assert cmd_serve(args) == 1

        create_app.assert_not_called()

    def test_single_worker_allowed_for_json(self, monkeypatch):
        pytest.importorskip("gunicorn")
        monkeypatch.setenv("STORAGE_BACKEND", "json")
        args = build_parser().parse_args(["serve", "--production", "--workers", "1"])

        with patch("api.create_app") as create_app, patch(
            "gunicorn.app.base.BaseApplication.run"
        ) as run:
            assert cmd_serve(args) == 0

        create_app.assert_called_once()
        run.assert_called_once()
