from __future__ import annotations

import argparse
import logging
import time
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from config import AppSettings, config
from db.db import init_db_url
from domain.cash import CashTransactionType
from domain.compliance import ReportStatus, ScheduledReport, ScheduledReportId
from services.app_services import AppServices, build_services

logger = logging.getLogger(__name__)


def build(settings: AppSettings) -> AppServices:
    logger.info("Opening database %s", settings.database_url)
    return build_services(settings, init_db_url(settings.database_url))


def cmd_balance(services: AppServices, args: argparse.Namespace) -> None:
    print(f"{args.operator_id}: ${services.ledger.get_balance(args.operator_id):.2f}")


def cmd_history(services: AppServices, args: argparse.Namespace) -> None:
    for tx in services.ledger.get_history(args.operator_id, args.limit):
        print(
            f"{tx.timestamp.isoformat()}  {tx.type:<10} {tx.amount:>12.2f} {tx.balance_after:>12.2f}  {tx.description}"
        )


def cmd_apply(services: AppServices, args: argparse.Namespace) -> None:
    tx = services.ledger.apply_transaction(
        args.operator_id,
        args.operator_name,
        args.yard_id,
        args.amount,
        args.type,
        args.description,
        related_vin=args.vin,
        recorded_by=args.recorded_by,
    )
    print(f"Recorded {tx.id}; balance is now ${tx.balance_after:.2f}")


def cmd_set_balance(services: AppServices, args: argparse.Namespace) -> None:
    tx = services.ledger.set_balance_directly(
        args.operator_id, args.operator_name, args.yard_id, args.new_balance, args.reason, args.set_by
    )
    print(f"Adjusted by ${tx.amount:.2f}; balance is now ${tx.balance_after:.2f}")


def cmd_reconcile(services: AppServices, args: argparse.Namespace) -> None:
    operator_ids = [args.operator_id] if args.operator_id else [a.operator_id for a in services.ledger.list_accounts()]
    for operator_id in operator_ids:
        result = services.ledger.reconcile(operator_id)
        state = "OK" if result.is_consistent else f"MISMATCH {result.discrepancy:+.2f}"
        print(
            f"{operator_id}: cached=${result.cached_balance:.2f} derived=${result.derived_balance:.2f} "
            f"transactions={result.transaction_count} {state}"
        )


def cmd_reports(services: AppServices, args: argparse.Namespace) -> None:
    status = ReportStatus(args.status) if args.status else None
    reports = services.scheduler.list_reports(status)
    for report in reports:
        print(_format_report(report))
    print(f"{len(reports)} report(s); {services.scheduler.pending_count()} scheduled")


def cmd_process_reports(services: AppServices, args: argparse.Namespace) -> None:
    result = services.scheduler.process_due_reports()
    print(f"Sent {result.sent}, failed {result.failed}, skipped {result.skipped}, errors {result.errors}")


def cmd_retry_report(services: AppServices, args: argparse.Namespace) -> None:
    result = services.scheduler.retry_report(ScheduledReportId(UUID(args.report_id)))
    print(f"{'Sent' if result.success else 'Failed'}: {result.message}")


def cmd_run_scheduler(services: AppServices, args: argparse.Namespace) -> None:
    services.poller.start()
    try:
        while services.poller.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        services.poller.stop()


def cmd_queue_depth(services: AppServices, args: argparse.Namespace) -> None:
    print(f"{services.queue.depth} queued entries; {len(services.queue.dead_letters())} dead-lettered")


def cmd_queue_flush(services: AppServices, args: argparse.Namespace) -> None:
    applied = services.queue.flush()
    print(f"Applied {applied} entries; {services.queue.depth} remain")


def _format_report(report: ScheduledReport) -> str:
    line = (
        f"{report.id}  {report.report_kind:<8} {report.vin}  {report.status:<9} "
        f"due={report.schedule_at.isoformat()} attempts={report.attempt_count}"
    )
    if report.last_error:
        line += f"  [{report.failure_kind}] {report.last_error}"
    return line


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Salvage yard cash ledger and NMVTIS compliance reporting.")
    sub = parser.add_subparsers(dest="command", required=True)

    balance = sub.add_parser("balance", help="Show an operator's cash balance")
    balance.add_argument("operator_id")
    balance.set_defaults(func=cmd_balance)

    history = sub.add_parser("history", help="Show an operator's transactions, newest first")
    history.add_argument("operator_id")
    history.add_argument("--limit", type=int, default=20)
    history.set_defaults(func=cmd_history)

    apply = sub.add_parser("apply", help="Record a signed cash movement")
    apply.add_argument("operator_id")
    apply.add_argument("amount", type=Decimal)
    apply.add_argument("--type", required=True, choices=[t.value for t in CashTransactionType])
    apply.add_argument("--operator-name", required=True)
    apply.add_argument("--yard-id", required=True)
    apply.add_argument("--description", required=True)
    apply.add_argument("--vin")
    apply.add_argument("--recorded-by")
    apply.set_defaults(func=cmd_apply)

    set_balance = sub.add_parser("set-balance", help="Set a balance by recording the adjustment")
    set_balance.add_argument("operator_id")
    set_balance.add_argument("new_balance", type=Decimal)
    set_balance.add_argument("--operator-name", required=True)
    set_balance.add_argument("--yard-id", required=True)
    set_balance.add_argument("--reason", required=True)
    set_balance.add_argument("--set-by", required=True)
    set_balance.set_defaults(func=cmd_set_balance)

    reconcile = sub.add_parser("reconcile", help="Compare cached balances with the transaction log")
    reconcile.add_argument("operator_id", nargs="?")
    reconcile.set_defaults(func=cmd_reconcile)

    reports = sub.add_parser("reports", help="List compliance reports")
    reports.add_argument("--status", choices=[s.value for s in ReportStatus])
    reports.set_defaults(func=cmd_reports)

    process = sub.add_parser("process-reports", help="Run one compliance scan now")
    process.set_defaults(func=cmd_process_reports)

    retry = sub.add_parser("retry-report", help="Retry one failed compliance report")
    retry.add_argument("report_id")
    retry.set_defaults(func=cmd_retry_report)

    run_scheduler = sub.add_parser("run-scheduler", help="Poll for due reports until interrupted")
    run_scheduler.set_defaults(func=cmd_run_scheduler)

    queue_depth = sub.add_parser("queue-depth", help="Show how many offline writes are waiting")
    queue_depth.set_defaults(func=cmd_queue_depth)

    queue_flush = sub.add_parser("queue-flush", help="Replay queued offline writes")
    queue_flush.set_defaults(func=cmd_queue_flush)

    return parser


def main(argv: Sequence[str] | None = None, *, services: AppServices | None = None) -> None:
    args = build_parser().parse_args(argv)
    if services is None:
        services = build(config())
    args.func(services, args)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    main()
