"""booking_etl.import_appointments_csv

Unified CLI entrypoint for appointment ingestion.

Modes (--mode):
  bulk_import        -- import an appointment CSV (default)
  validate_only      -- sanitize, validate and detect duplicates; no writes
  manual_create      -- create one appointment from a JSON request file
  register_customer  -- self-registration / activation of a customer profile

Usage (bulk_import):
    python -m booking_etl.import_appointments_csv \\
        --mode bulk_import \\
        --db-dsn "$DB_DSN" \\
        --csv-path "uploads/appointments.csv" \\
        --operator-id "staff-42" \\
        --duplicate-strategy skip \\
        --failure-policy partial

Usage (manual_create):
    python -m booking_etl.import_appointments_csv \\
        --mode manual_create \\
        --db-dsn "$DB_DSN" \\
        --request-path "requests/appointment.json" \\
        --operator-id "staff-42"

Usage (register_customer):
    CUSTOMER_CREDENTIAL_HASH='$argon2id$...' \\
    python -m booking_etl.import_appointments_csv \\
        --mode register_customer \\
        --db-dsn "$DB_DSN" \\
        --email "jane@example.com" --first-name Jane
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from booking_etl.audit import AuditRecorder
from booking_etl.batch_executor import FAILURE_POLICIES, PARTIAL
from booking_etl.booking_rules import (
    BookingRules,
    BookingRulesValidationError,
    load_booking_rules,
)
from booking_etl.catalog import PostgresCatalog
from booking_etl.duplicates import DUPLICATE_STRATEGIES, REJECT, SKIP
from booking_etl.notify import NullNotifier, WebhookNotifier
from booking_etl.pipeline import ManualAppointmentRequest, create_appointment, run_import
from booking_etl.rate_limit import OperatorRateLimiter, RateLimitExceededError
from booking_etl.resolution import CustomerAlreadyRegisteredError, register_customer
from booking_etl.sanitize import FileError
from booking_etl.shared import (
    ErrorReportWriter,
    build_import_report,
    error_report_rows,
    write_run_report,
)

MODES = ("bulk_import", "validate_only", "manual_create", "register_customer")


@click.command()
@click.option(
    "--mode",
    type=click.Choice(MODES),
    default="bulk_import",
    show_default=True,
    help="Ingestion mode",
)
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
@click.option("--csv-path", default=None, type=click.Path(), help="[bulk_import|validate_only] Input CSV")
@click.option("--request-path", default=None, type=click.Path(), help="[manual_create] JSON appointment request")
@click.option(
    "--duplicate-strategy",
    type=click.Choice(DUPLICATE_STRATEGIES),
    default=None,
    help="skip (bulk default), overwrite, or reject (manual default)",
)
@click.option(
    "--failure-policy",
    type=click.Choice(FAILURE_POLICIES),
    default=PARTIAL,
    show_default=True,
)
@click.option("--send-notifications", is_flag=True, default=False)
@click.option("--operator-id", default=None, help="Operator performing the import")
@click.option(
    "--rules-file",
    default="config/booking_rules.yml",
    show_default=True,
    type=click.Path(),
    help="Booking rules YAML",
)
@click.option("--webhook-url", default=None, help="Notification endpoint (omit to disable delivery)")
@click.option(
    "--webhook-token-env",
    default="BOOKING_WEBHOOK_TOKEN",
    show_default=True,
    help="Env var name holding the notification bearer token",
)
@click.option(
    "--max-imports-per-hour",
    default=None,
    type=int,
    help="Override import_limits.max_imports_per_hour",
)
@click.option("--batch-size", default=None, type=int, help="Override import_limits.batch_size")
@click.option("--email", default=None, help="[register_customer] Customer email")
@click.option("--first-name", default=None, help="[register_customer] First name")
@click.option("--last-name", default=None, help="[register_customer] Last name")
@click.option("--phone", default=None, help="[register_customer] Phone")
@click.option(
    "--credential-env",
    default="CUSTOMER_CREDENTIAL_HASH",
    show_default=True,
    help="[register_customer] Env var name holding the credential hash",
)
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default=None,
    type=click.Path(),
    help="Error report CSV (default: artifacts/rejects/{run_id}.csv)",
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    default="INFO",
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    csv_path: str | None,
    request_path: str | None,
    duplicate_strategy: str | None,
    failure_policy: str,
    send_notifications: bool,
    operator_id: str | None,
    rules_file: str,
    webhook_url: str | None,
    webhook_token_env: str,
    max_imports_per_hour: int | None,
    batch_size: int | None,
    email: str | None,
    first_name: str | None,
    last_name: str | None,
    phone: str | None,
    credential_env: str,
    dry_run: bool,
    rejects_path: str | None,
    run_id: str | None,
    log_level: str,
) -> None:
    """Unified appointment ingestion CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "register_customer":
        _run_register_customer(db_dsn, email, first_name, last_name, phone, credential_env, run_id)
        return

    rules = _load_rules(Path(rules_file), run_id)
    if max_imports_per_hour is not None:
        rules.max_imports_per_hour = max_imports_per_hour
    if batch_size is not None:
        rules.batch_size = batch_size

    notifier = NullNotifier()
    if send_notifications and webhook_url:
        # Read token from env, never from CLI args
        notifier = WebhookNotifier(url=webhook_url, token=os.environ.get(webhook_token_env) or None)
    elif send_notifications:
        click.echo(f"[{run_id}] --send-notifications without --webhook-url: delivery disabled")

    if mode == "manual_create":
        _run_manual_create(
            db_dsn, request_path, rules, operator_id,
            duplicate_strategy or REJECT, send_notifications, notifier,
            dry_run, run_id, started_at,
        )
        return

    _validate_bulk_flags(csv_path, run_id)
    csv_file = Path(csv_path)  # type: ignore[arg-type]
    if not csv_file.exists():
        click.echo(f"[{run_id}] FATAL: CSV not found: {csv_file}", err=True)
        sys.exit(1)

    rejects = ErrorReportWriter(Path(rejects_path or f"artifacts/rejects/{run_id}.csv"))
    audit = None if (dry_run or mode == "validate_only") else AuditRecorder(db_dsn)
    conn = psycopg.connect(db_dsn, autocommit=True)
    try:
        result = run_import(
            conn,
            csv_file.name,
            csv_file.read_bytes(),
            PostgresCatalog(conn),
            rules,
            duplicate_strategy=duplicate_strategy or SKIP,
            failure_policy=failure_policy,
            send_notifications=send_notifications,
            operator_id=operator_id,
            notifier=notifier,
            audit=audit,
            rate_limiter=OperatorRateLimiter(max_per_window=rules.max_imports_per_hour),
            import_id=run_id,
            dry_run=dry_run,
            validate_only=(mode == "validate_only"),
            progress=lambda done, total: click.echo(f"[{run_id}] Progress: {done}/{total} rows"),
        )
    except RateLimitExceededError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    except FileError as exc:
        click.echo(f"[{run_id}] FATAL: file rejected ({exc.code}): {exc.message}", err=True)
        sys.exit(1)
    finally:
        if audit is not None:
            audit.flush()
            audit.close()
        conn.close()

    summary = result.summary
    try:
        for original, reason in error_report_rows(summary, result.originals):
            rejects.write(original, reason)
    finally:
        rejects.close()

    click.echo(build_import_report(summary, dry_run=dry_run))
    if rejects.rows_written:
        click.echo(f"[{run_id}] Error report: {rejects_path or f'artifacts/rejects/{run_id}.csv'}")
    if audit is not None and audit.failed:
        click.echo(f"[{run_id}] WARNING: {audit.failed} audit event(s) could not be written", err=True)

    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {"csv_path": csv_path, "content_hash": result.content_hash},
        summary,
        rules_hash=rules.yaml_hash,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if summary.status in ("rolled_back", "rejected", "cancelled", "aborted"):
        click.echo(f"[{run_id}] Import {summary.status}; exiting non-zero", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Done.")


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _run_manual_create(
    db_dsn: str,
    request_path: str | None,
    rules: BookingRules,
    operator_id: str | None,
    duplicate_strategy: str,
    send_notifications: bool,
    notifier: WebhookNotifier | NullNotifier,
    dry_run: bool,
    run_id: str,
    started_at: str,
) -> None:
    if request_path is None:
        click.echo(f"[{run_id}] FATAL: manual_create mode requires: --request-path", err=True)
        sys.exit(1)
    try:
        data = json.loads(Path(request_path).read_text(encoding="utf-8"))
        request = ManualAppointmentRequest.from_dict(data)
    except (OSError, ValueError, TypeError) as exc:
        click.echo(f"[{run_id}] FATAL: cannot read request {request_path}: {exc}", err=True)
        sys.exit(1)

    audit = None if dry_run else AuditRecorder(db_dsn)
    conn = psycopg.connect(db_dsn, autocommit=True)
    try:
        summary = create_appointment(
            conn, request, PostgresCatalog(conn), rules,
            operator_id=operator_id,
            duplicate_strategy=duplicate_strategy,
            send_notifications=send_notifications,
            notifier=notifier,
            audit=audit,
            dry_run=dry_run,
        )
    finally:
        if audit is not None:
            audit.flush()
            audit.close()
        conn.close()

    click.echo(build_import_report(summary, dry_run=dry_run))
    report_path = write_run_report(
        run_id, started_at, "manual_create", dry_run,
        {"request_path": request_path},
        summary,
        rules_hash=rules.yaml_hash,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if summary.created + summary.updated == 0:
        click.echo(f"[{run_id}] Appointment not created ({summary.status})", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Done.")


def _run_register_customer(
    db_dsn: str,
    email: str | None,
    first_name: str | None,
    last_name: str | None,
    phone: str | None,
    credential_env: str,
    run_id: str,
) -> None:
    missing = [k for k, v in {"--email": email, "--first-name": first_name}.items() if not v]
    if missing:
        click.echo(
            f"[{run_id}] FATAL: register_customer mode requires: {', '.join(missing)}",
            err=True,
        )
        sys.exit(1)
    # Read credential from env, never from CLI args
    credential_hash = os.environ.get(credential_env, "")
    if not credential_hash:
        click.echo(f"[{run_id}] FATAL: env var {credential_env} must be set", err=True)
        sys.exit(1)

    conn = psycopg.connect(db_dsn, autocommit=True)
    try:
        with conn.transaction():
            result = register_customer(
                conn, email, first_name, credential_hash,  # type: ignore[arg-type]
                last_name=last_name, phone=phone,
            )
    except CustomerAlreadyRegisteredError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    finally:
        conn.close()

    action = "created" if result.created else "activated"
    click.echo(f"[{run_id}] Customer {result.id} {action}.")


# ---------------------------------------------------------------------------
# Flag / config validation
# ---------------------------------------------------------------------------

def _load_rules(rules_file: Path, run_id: str) -> BookingRules:
    if not rules_file.exists():
        click.echo(f"[{run_id}] Rules file {rules_file} not found; using built-in defaults")
        return BookingRules()
    try:
        return load_booking_rules(rules_file)
    except BookingRulesValidationError as exc:
        click.echo(f"[{run_id}] FATAL: invalid rules file {rules_file}: {exc}", err=True)
        sys.exit(1)


def _validate_bulk_flags(csv_path: str | None, run_id: str) -> None:
    required = {"--csv-path": csv_path}
    missing = [k for k, v in required.items() if v is None]
    if missing:
        click.echo(
            f"[{run_id}] FATAL: bulk_import mode requires: {', '.join(missing)}",
            err=True,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
