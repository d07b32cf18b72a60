#!/usr/bin/env python3
"""
InfraShare Command Line Interface.

Provides commands for running and managing the profit engine:
    - serve: Start the API server
    - migrate: Apply SQL migrations to PostgreSQL
    - reconcile: Reconcile a distribution or a project
    - check: Verify installation and configuration

Usage:
    infrashare serve [--host HOST] [--port PORT] [--debug] [--production]
    infrashare migrate [--database-url URL] [--status] [--target N] [--dry-run]
    infrashare reconcile (--distribution ID | --project ID)
    infrashare check
    infrashare --version
"""

import argparse
import json
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from monitoring import configure_logging

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"
SHARED_BACKENDS = ("postgresql", "postgres")


def cmd_serve(args):
    """Start the InfraShare API server."""
    host = args.host or os.getenv("HOST", "0.0.0.0")
    port = args.port or int(os.getenv("PORT", 5000))
    debug = args.debug or os.getenv("FLASK_DEBUG", "").lower() == "true"
    workers = args.workers or int(os.getenv("WORKERS", 4))
    backend = os.getenv("STORAGE_BACKEND", "json").lower()

    # Claim and period guards hold across processes only in PostgreSQL
    if args.production and workers > 1 and backend not in SHARED_BACKENDS:
        print(f"Error: {workers} workers require STORAGE_BACKEND=postgresql (got {backend})")
        return 1

    from api import create_app

    flask_app = create_app()
    print(f"Starting InfraShare API server on {host}:{port}")

    if not args.production:
        flask_app.run(host=host, port=port, debug=debug)
        return 0

    import gunicorn.app.base

    class StandaloneApplication(gunicorn.app.base.BaseApplication):
        """Gunicorn WSGI application wrapper for production deployment."""

        def __init__(self, app, options=None):
            self.options = options or {}
            self.application = app
            super().__init__()

        def load_config(self):
            for key, value in self.options.items():
                if key in self.cfg.settings and value is not None:
                    self.cfg.set(key.lower(), value)

        def load(self):
            return self.application

    options = {
        "bind": f"{host}:{port}",
        "workers": workers,
        "worker_class": "sync",
        "timeout": 120,
        "accesslog": "-",
        "errorlog": "-",
    }
    StandaloneApplication(flask_app, options).run()
    return 0


def cmd_migrate(args):
    """Apply pending SQL migrations to PostgreSQL."""
    database_url = args.database_url or os.getenv("DATABASE_URL")
    if not database_url:
        print("Error: DATABASE_URL not set")
        return 1

    from storage import StorageError
    from storage.postgresql import PostgreSQLStorage, find_migrations

    directory = Path(args.migrations_dir or os.getenv("MIGRATIONS_DIR") or MIGRATIONS_DIR)
    migrations = find_migrations(directory)
    if not migrations:
        print(f"Error: no migrations found in {directory}")
        return 1

    try:
        store = PostgreSQLStorage(database_url, pool_size=1, auto_create_tables=False)
    except StorageError as e:
        print(f"Migration failed: {e}")
        return 1

    try:
        applied = store.applied_migrations()
        if args.status:
            for version, name, _ in migrations:
                state = "APPLIED" if version in applied else "PENDING"
                print(f"  {version:03d}_{name}: {state}")
            return 0

        pending = [
            (version, name, path)
            for version, name, path in migrations
            if version not in applied and (args.target is None or version <= args.target)
        ]
        if not pending:
            print("Schema is up to date")
            return 0

        for version, name, path in pending:
            if args.dry_run:
                print(f"[DRY RUN] Would apply {version:03d}_{name}")
                continue
            print(f"Applying {version:03d}_{name}...")
            store.apply_migration(version, name, path.read_text())
    except StorageError as e:
        print(f"Migration failed: {e}")
        return 1
    finally:
        store.close()

    if not args.dry_run:
        print(f"Applied {len(pending)} migration(s)")
    return 0


def cmd_reconcile(args):
    """Print a reconciliation report as JSON."""
    from monitoring.logging import LoggingContext
    from profit_errors import ProfitEngineError
    from profit_service import build_service

    service = build_service()
    if args.distribution:
        target = {"distribution_id": args.distribution}
    else:
        target = {"project_id": args.project}
    try:
        with LoggingContext(command="reconcile", **target):
            if args.distribution:
                report = service.reconcile(args.distribution).to_dict()
            else:
                report = service.reconcile_project(args.project).to_dict()
    except ProfitEngineError as e:
        print(json.dumps(e.to_dict(), indent=2))
        return 1
    finally:
        service.store.close()

    print(json.dumps(report, indent=2))
    return 0 if report["status"] != "discrepancy" else 2


def cmd_check(args):
    """Check installation and configuration."""
    print("InfraShare Installation Check")
    print("=" * 40)

    checks = []

    from config import EngineConfig
    from profit_errors import ValidationError

    try:
        config = EngineConfig.from_env()
        config.validate()
        checks.append(("Engine configuration", "OK"))
    except (ValueError, ValidationError) as e:
        checks.append(("Engine configuration", f"FAIL: {e}"))

    from storage import StorageError, get_storage_backend

    try:
        storage = get_storage_backend()
        status = "OK" if storage.is_available() else "WARN (not available)"
        checks.append((f"Storage ({storage.__class__.__name__})", status))
        storage.close()
    except StorageError as e:
        checks.append(("Storage", f"FAIL: {e}"))

    from encryption import is_encryption_enabled

    checks.append((
        "Bank account encryption",
        "OK" if is_encryption_enabled() else "SKIP (INFRASHARE_ENCRYPTION_KEY not set)",
    ))
    checks.append((
        "Payment webhook signing",
        "OK" if os.getenv("PAYMENT_WEBHOOK_SECRET") else "SKIP (PAYMENT_WEBHOOK_SECRET not set)",
    ))

    print()
    all_ok = True
    for name, status in checks:
        icon = "✓" if status == "OK" else ("○" if "SKIP" in status or "WARN" in status else "✗")
        print(f"  {icon} {name}: {status}")
        if "FAIL" in status:
            all_ok = False

    print()
    if all_ok:
        print("All checks passed!")
        return 0
    print("Some checks failed. See above for details.")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="infrashare",
        description="InfraShare - Profit Distribution & Claim Settlement Engine",
    )
    parser.add_argument("--version", "-v", action="version", version="%(prog)s 0.1.0")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", help="Host to bind to (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: 5000)")
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    serve_parser.add_argument(
        "--production", action="store_true", help="Use gunicorn for production"
    )
    serve_parser.add_argument("--workers", type=int, help="Number of workers (production mode)")

    migrate_parser = subparsers.add_parser("migrate", help="Apply SQL migrations to PostgreSQL")
    migrate_parser.add_argument("--database-url", help="PostgreSQL URL (default: $DATABASE_URL)")
    migrate_parser.add_argument("--migrations-dir", help="Directory of NNN_name.sql files")
    migrate_parser.add_argument("--status", action="store_true", help="Show migration status")
    migrate_parser.add_argument("--target", type=int, help="Apply up to this version")
    migrate_parser.add_argument("--dry-run", action="store_true", help="List without applying")

    reconcile_parser = subparsers.add_parser("reconcile", help="Reconcile distributions")
    target = reconcile_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--distribution", help="Distribution id")
    target.add_argument("--project", help="Project id")

    subparsers.add_parser("check", help="Check installation and configuration")

    return parser


COMMANDS = {
    "serve": cmd_serve,
    "migrate": cmd_migrate,
    "reconcile": cmd_reconcile,
    "check": cmd_check,
}


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(1)

    load_dotenv()
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    sys.exit(command(args))


if __name__ == "__main__":
    main()
