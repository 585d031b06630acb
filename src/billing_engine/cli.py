"""Billing engine command line interface.

Operational entry points for the scheduler and reconciliation sweeps:

Usage:
    python -m billing_engine.cli process-recurring [--force] [--retry-failed] [--dry-run]
    python -m billing_engine.cli verify-pending --older-than-minutes 15
    python -m billing_engine.cli reconcile-refunds --older-than-minutes 30
    python -m billing_engine.cli gateways
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import timedelta
from typing import Any, Callable

from sqlalchemy.orm import Session, sessionmaker

from billing_engine.config import BillingConfig, get_settings
from billing_engine.database import init_db
from billing_engine.exceptions import BillingError
from billing_engine.gateways.registry import ClientRegistry, GatewayRegistry
from billing_engine.services import (
    OutcomeStatus,
    PaymentService,
    RecurringBillingService,
    RefundService,
)

logger = logging.getLogger(__name__)


def positive_int(s: str) -> int:
    """Parse a strictly positive integer argument."""
    value = int(s)
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {s}")
    return value


class BillingCli:
    """Billing engine command line interface."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        clients: ClientRegistry | None = None,
        config: BillingConfig | None = None,
    ) -> None:
        self.parser = self._build_parser()
        self._session_factory = session_factory
        self._clients = clients
        self._config = config

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m billing_engine.cli",
            description="Billing engine operational tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # process-recurring command
        recurring = subparsers.add_parser(
            "process-recurring",
            help="Charge recurring profiles that are due",
        )
        recurring.add_argument(
            "--force",
            action="store_true",
            help="Skip the calendar-day guard and charge everything past due",
        )
        recurring.add_argument(
            "--retry-failed",
            action="store_true",
            help="Retry profiles with failed attempts instead of the regular pass",
        )
        recurring.add_argument(
            "--max-retries",
            type=positive_int,
            default=3,
            help="Maximum failure_count for --retry-failed (default: 3)",
        )
        recurring.add_argument(
            "--profile",
            type=str,
            metavar="PROFILE_ID",
            help="Process a single profile by its public id",
        )
        recurring.add_argument(
            "--dry-run",
            action="store_true",
            help="List the profiles that would be charged without charging",
        )

        # verify-pending command
        verify = subparsers.add_parser(
            "verify-pending",
            help="Re-query the gateway for stale pending payments",
        )
        verify.add_argument(
            "--older-than-minutes",
            type=positive_int,
            help="Only payments created at least this long ago",
        )
        verify.add_argument(
            "--limit",
            type=positive_int,
            help="Maximum payments to verify",
        )

        # reconcile-refunds command
        refunds = subparsers.add_parser(
            "reconcile-refunds",
            help="Settle stale pending refunds from gateway state",
        )
        refunds.add_argument(
            "--older-than-minutes",
            type=positive_int,
            help="Only refunds requested at least this long ago",
        )

        # gateways command
        subparsers.add_parser(
            "gateways",
            help="List configured payment gateways (no credentials)",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        handlers: dict[str, Callable[[argparse.Namespace], int]] = {
            "process-recurring": self._cmd_process_recurring,
            "verify-pending": self._cmd_verify_pending,
            "reconcile-refunds": self._cmd_reconcile_refunds,
            "gateways": self._cmd_gateways,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1
        try:
            return handler(parsed)
        except BillingError as e:
            print(f"ERROR: {e.message}", file=sys.stderr)
            return 1
        finally:
            if self._clients is not None:
                self._clients.close()

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    @property
    def session_factory(self) -> sessionmaker[Session]:
        if self._session_factory is None:
            self._session_factory = init_db(get_settings().database_url)
        return self._session_factory

    @property
    def clients(self) -> ClientRegistry:
        if self._clients is None:
            self._clients = ClientRegistry.default(get_settings().gateway_client_config())
        return self._clients

    @property
    def config(self) -> BillingConfig:
        if self._config is None:
            self._config = get_settings().billing_config()
        return self._config

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _cmd_process_recurring(self, args: argparse.Namespace) -> int:
        """Run a recurring billing pass."""
        service = RecurringBillingService(self.session_factory, self.clients, config=self.config)

        if args.profile:
            if args.dry_run:
                print(f"[DRY RUN] Would process profile {args.profile}")
                return 0
            outcome = service.process_single(args.profile)
            print(f"{outcome.profile_id}: {outcome.status.value} {outcome.message}".rstrip())
            return 1 if outcome.status is OutcomeStatus.FAILED else 0

        if args.dry_run:
            if args.retry_failed:
                profiles = service.retry_candidates(max_attempts=args.max_retries)
            else:
                profiles = service.due_profiles(force=args.force)
            print(f"[DRY RUN] {len(profiles)} profile(s) would be charged:")
            for due in profiles:
                print(
                    f"  {due.profile_id}  due {due.next_billing_date.isoformat()}"
                    f"  failures={due.failure_count}"
                )
            return 0

        if args.retry_failed:
            result = service.retry_failed_payments(max_attempts=args.max_retries)
        else:
            result = service.process_due_payments(force=args.force)

        print(json.dumps(result.to_dict(), indent=2))
        return 0 if result.success else 1

    def _cmd_verify_pending(self, args: argparse.Namespace) -> int:
        """Verify stale pending payments."""
        older_than = (
            timedelta(minutes=args.older_than_minutes) if args.older_than_minutes else None
        )
        with self.session_factory() as session:
            service = PaymentService(session, self.clients, config=self.config)
            summary = service.verify_pending(older_than, limit=args.limit)

        print(f"Checked:   {summary.checked}")
        print(f"Updated:   {summary.updated}")
        print(f"Unchanged: {summary.unchanged}")
        self._print_errors(summary.errors)
        return 0 if summary.success else 1

    def _cmd_reconcile_refunds(self, args: argparse.Namespace) -> int:
        """Settle stale pending refunds."""
        older_than = (
            timedelta(minutes=args.older_than_minutes) if args.older_than_minutes else None
        )
        with self.session_factory() as session:
            service = RefundService(session, self.clients, config=self.config)
            summary = service.reconcile_pending_refunds(older_than)

        print(f"Checked:       {summary.checked}")
        print(f"Completed:     {summary.completed}")
        print(f"Failed:        {summary.failed}")
        print(f"Still pending: {summary.still_pending}")
        self._print_errors(summary.errors)
        return 0 if summary.success else 1

    def _cmd_gateways(self, args: argparse.Namespace) -> int:
        """List gateways without credentials."""
        with self.session_factory() as session:
            gateways = [g.public_config() for g in GatewayRegistry(session).list_all()]

        for gateway in gateways:
            gateway["adapter"] = self.clients.find(gateway["code"]) is not None
        print(json.dumps(gateways, indent=2))
        return 0

    def _print_errors(self, errors: list[dict[str, Any]]) -> None:
        if not errors:
            return
        print(f"\n{len(errors)} error(s):")
        for error in errors:
            print(f"  - {error}")


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cli = BillingCli()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
