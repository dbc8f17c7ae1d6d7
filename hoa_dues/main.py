"""HOA Dues Engine -- Command Line Entry Point.

Wires the SQLite document store, the SQLite outbox, the email sender and
the template engine from config.yaml, then runs one operation:

    account PARCEL          print one account snapshot
    notices --actor NAME    create pending dues notices and publish their events
    dispatch                drain due outbox events through the dispatch consumer
    payment-confirm         publish a payment confirmation for one payment
    orphans                 list pending notices older than the orphan age
    requeue EVENT_ID        move a parked outbox event back to pending
    history [PARCEL]        list sent and pending communications
    report OUT.xlsx         export the membership roll to a workbook
    update-config NAME      create or overwrite one hoa_config value
    update-owner PARCEL ID  edit owner contact fields
    update-property PARCEL  toggle email delivery or edit comments

Usage::

    # From the project root:
    python -m hoa_dues.main account R12345

    # Create this year's notices, then send them:
    python -m hoa_dues.main notices --actor treasurer
    python -m hoa_dues.main dispatch --limit 50

    # With a custom config:
    python -m hoa_dues.main --config path/to/custom.yaml report out/dues.xlsx --dues-owed
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .aggregator import AccountAggregator
from .bulk import AccountFilters, BulkAccountBuilder
from .config import HoaDuesConfig, get_config
from .dispatch import DispatchConsumer
from .errors import DuesEngineError
from .events import STATUS_PARKED, STATUS_PENDING, OutboxEventBus
from .mailer import EmailSender, sender_from_settings
from .models import AccountSnapshot
from .money import format_currency
from .notices import NoticeGenerator
from .reports import write_dues_report
from .store import SqliteDocumentStore
from .template_engine import TemplateEngine
from .updates import AccountUpdater, ConfigUpdate, OwnerPatch, PropertyPatch

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

@dataclass
class Services:
    """Everything a command needs, built once from config."""
    config: HoaDuesConfig
    store: SqliteDocumentStore
    outbox: OutboxEventBus
    sender: EmailSender
    templates: TemplateEngine

    @property
    def aggregator(self) -> AccountAggregator:
        return AccountAggregator(
            self.store,
            self.config.notices.payment_lookback_days,
            self.config.notices.recent_notice_limit,
        )

    @property
    def builder(self) -> BulkAccountBuilder:
        return BulkAccountBuilder(self.store, self.config.notices.threshold)

    @property
    def notices(self) -> NoticeGenerator:
        return NoticeGenerator(self.store, self.outbox, self.builder, self.config.notices)

    @property
    def updater(self) -> AccountUpdater:
        return AccountUpdater(self.store)

    @property
    def consumer(self) -> DispatchConsumer:
        return DispatchConsumer(
            self.store,
            self.sender,
            self.templates,
            sender_address=self.config.email.sender_address,
            settings=self.config.notices,
        )


def build_services(config: HoaDuesConfig) -> Services:
    return Services(
        config=config,
        store=SqliteDocumentStore(config.store.resolved_path),
        outbox=OutboxEventBus(
            config.outbox.resolved_path,
            max_attempts=config.outbox.max_attempts,
            backoff_steps=tuple(config.outbox.backoff_steps),
        ),
        sender=sender_from_settings(config.email),
        templates=TemplateEngine(paths=config.template_paths),
    )


def configure_logging(config: HoaDuesConfig, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, str(config.logging.level).upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.logging.log_file:
        handlers.append(logging.FileHandler(config.logging.log_file, encoding="utf-8"))
    logging.basicConfig(level=level, format=_LOG_FORMAT, datefmt="%H:%M:%S", handlers=handlers)


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def format_account(snapshot: AccountSnapshot) -> str:
    """Human-readable account summary for the terminal."""
    prop = snapshot.property_rec
    owner = snapshot.current_owner
    lines = [
        "=" * 65,
        f"  Parcel {snapshot.parcel_id}",
        "=" * 65,
    ]
    if prop is None:
        lines.append("  (no property record)")
        return "\n".join(lines)

    lines.append(f"  Location            : {prop.parcel_location}")
    lines.append(f"  Owner               : {owner.mailing_name if owner else '(none)'}")
    lines.append(f"  Emails              : {', '.join(snapshot.email_addresses) or '(none)'}")
    lines.append("-" * 65)
    lines.append("  Assessments:")
    for view in snapshot.assessments:
        status = "paid" if view.paid else ("DUE" if view.dues_due else "open")
        lines.append(
            f"    FY {view.fy}  {format_currency(view.dues_amt):>12s}  "
            f"due {view.date_due.isoformat()}  {status}"
        )
    if snapshot.calc_lines:
        lines.append("-" * 65)
        lines.append("  Outstanding:")
        for line in snapshot.calc_lines:
            lines.append(f"    {line.description:<40s} {format_currency(line.amount):>12s}")
    lines.append("-" * 65)
    lines.append(f"  TOTAL DUE           : {format_currency(snapshot.total_due)}")
    lines.append(f"  Current year only   : {'yes' if snapshot.only_current_year_owed else 'no'}")
    if snapshot.payment_instructions:
        lines.append(f"  Payment             : {snapshot.payment_instructions}")
    lines.append("=" * 65)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_account(services: Services, args: argparse.Namespace) -> int:
    snapshot = services.aggregator.get_account(
        args.parcel, owner_id=args.owner, fiscal_year=args.fy,
    )
    print(format_account(snapshot))
    return 0 if snapshot.property_rec is not None else 1


def cmd_notices(services: Services, args: argparse.Namespace) -> int:
    created = services.notices.create_dues_notice_batch(args.actor)
    print(f"\nCreated {created} dues notice(s); {services.outbox.count(STATUS_PENDING)} event(s) pending.")
    return 0


def cmd_dispatch(services: Services, args: argparse.Namespace) -> int:
    limit = args.limit or services.config.outbox.batch_limit
    report = services.consumer.run_outbox(services.outbox, limit=limit)
    print(
        f"\nDispatch: {report.delivered} delivered, {report.retried} retried, "
        f"{report.parked} parked ({services.outbox.count(STATUS_PARKED)} parked in total)"
    )
    for error in report.errors:
        print(f"  {error}")
    return 0 if report.parked == 0 else 1


def cmd_payment_confirm(services: Services, args: argparse.Namespace) -> int:
    published = services.notices.request_payment_confirmation(args.payment_id, args.parcel)
    print("Payment confirmation queued." if published else "Nothing to send.")
    return 0


def cmd_orphans(services: Services, args: argparse.Namespace) -> int:
    older_than = timedelta(hours=args.hours) if args.hours is not None else None
    orphans = services.notices.find_orphaned_notices(older_than)
    for comm in orphans:
        print(f"  {comm.create_ts}  {comm.parcel_id:<14s} {comm.email_addr}  ({comm.id})")
    print(f"\n{len(orphans)} pending notice(s) with no send recorded.")
    return 0


def cmd_requeue(services: Services, args: argparse.Namespace) -> int:
    if services.outbox.requeue(args.event_id):
        print(f"Requeued {args.event_id}")
        return 0
    print(f"No parked event {args.event_id}")
    return 1


def cmd_history(services: Services, args: argparse.Namespace) -> int:
    aggregator = services.aggregator
    if args.parcel:
        comms = aggregator.list_communications(args.parcel)
    else:
        comms = aggregator.list_recent_notice_emails(args.limit)
    for comm in comms:
        print(f"  {comm.create_ts}  {comm.parcel_id:<14s} {comm.sent_status.value}  {comm.email_addr}")
    print(f"\n{len(comms)} communication(s).")
    return 0


def cmd_report(services: Services, args: argparse.Namespace) -> int:
    filters = AccountFilters(
        dues_owed=args.dues_owed,
        skip_email=args.skip_email,
        current_year_paid=args.current_year_paid,
        current_year_unpaid=args.current_year_unpaid,
        test_email=args.test_email,
    )
    accounts = services.builder.list_accounts(filters)
    path = write_dues_report(accounts, args.output)
    print(f"\nExported {len(accounts)} account(s) to: {path}")
    return 0


def cmd_update_config(services: Services, args: argparse.Namespace) -> int:
    update = ConfigUpdate(name=args.name, value=args.value, description=args.description)
    entry = services.updater.update_config(update, args.actor)
    print(f"{entry.name} = {entry.value!r}")
    return 0


def cmd_update_owner(services: Services, args: argparse.Namespace) -> int:
    patch = OwnerPatch(
        owner_name1=args.name1,
        owner_name2=args.name2,
        mailing_name=args.mailing_name,
        owner_phone=args.phone,
        email_addr=args.email,
        email_addr2=args.email2,
        comments=args.comments,
    )
    if not patch.operations():
        print("Nothing to update.")
        return 1
    owner = services.updater.update_owner(args.parcel, args.owner_id, patch, args.actor)
    print(f"Owner {owner.owner_id} on {owner.parcel_id} updated: {', '.join(owner.email_addresses) or '(no email)'}")
    return 0


def cmd_update_property(services: Services, args: argparse.Namespace) -> int:
    patch = PropertyPatch(use_email=args.use_email, comments=args.comments)
    if not patch.operations():
        print("Nothing to update.")
        return 1
    prop = services.updater.update_property(args.parcel, patch, args.actor)
    print(f"Property {prop.parcel_id} updated (UseEmail={int(prop.use_email)})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hoa-dues",
        description="HOA Dues Engine - account lookups, dues notices and email dispatch",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m hoa_dues.main account R12345 --fy LATEST\n"
            "  python -m hoa_dues.main notices --actor treasurer\n"
            "  python -m hoa_dues.main dispatch --limit 50\n"
            "  python -m hoa_dues.main report out/dues.xlsx --dues-owed\n"
        ),
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: project root config.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("account", help="Show one account")
    p.add_argument("parcel")
    p.add_argument("--owner", default=None, help="Only this OwnerID")
    p.add_argument("--fy", default=None, help="Fiscal year, or LATEST")
    p.set_defaults(func=cmd_account)

    p = sub.add_parser("notices", help="Create dues notices for every account that owes")
    p.add_argument("--actor", required=True, help="User name stamped on the records")
    p.set_defaults(func=cmd_notices)

    p = sub.add_parser("dispatch", help="Send pending notices from the outbox")
    p.add_argument("--limit", type=int, default=None)
    p.set_defaults(func=cmd_dispatch)

    p = sub.add_parser("payment-confirm", help="Queue a payment confirmation email")
    p.add_argument("parcel")
    p.add_argument("payment_id")
    p.set_defaults(func=cmd_payment_confirm)

    p = sub.add_parser("orphans", help="List pending notices that were never sent")
    p.add_argument("--hours", type=float, default=None, help="Minimum age (default from config)")
    p.set_defaults(func=cmd_orphans)

    p = sub.add_parser("requeue", help="Retry a parked outbox event")
    p.add_argument("event_id")
    p.set_defaults(func=cmd_requeue)

    p = sub.add_parser("history", help="List communications, newest first")
    p.add_argument("parcel", nargs="?", default=None, help="One parcel (default: email notices for all)")
    p.add_argument("--limit", type=int, default=None, help="Row cap (default from config)")
    p.set_defaults(func=cmd_history)

    p = sub.add_parser("report", help="Export accounts to an .xlsx workbook")
    p.add_argument("output")
    p.add_argument("--dues-owed", action="store_true")
    p.add_argument("--skip-email", action="store_true")
    p.add_argument("--current-year-paid", action="store_true")
    p.add_argument("--current-year-unpaid", action="store_true")
    p.add_argument("--test-email", action="store_true")
    p.set_defaults(func=cmd_report)

    p = sub.add_parser("update-config", help="Create or overwrite one hoa_config value")
    p.add_argument("name")
    p.add_argument("value")
    p.add_argument("--description", default="")
    p.add_argument("--actor", required=True)
    p.set_defaults(func=cmd_update_config)

    p = sub.add_parser("update-owner", help="Edit an owner's names, phone, emails or comments")
    p.add_argument("parcel")
    p.add_argument("owner_id")
    p.add_argument("--actor", required=True)
    p.add_argument("--name1", default=None)
    p.add_argument("--name2", default=None)
    p.add_argument("--mailing-name", default=None)
    p.add_argument("--phone", default=None)
    p.add_argument("--email", default=None)
    p.add_argument("--email2", default=None)
    p.add_argument("--comments", default=None)
    p.set_defaults(func=cmd_update_owner)

    p = sub.add_parser("update-property", help="Toggle email delivery or edit property comments")
    p.add_argument("parcel")
    p.add_argument("--actor", required=True)
    p.add_argument("--use-email", action=argparse.BooleanOptionalAction, default=None)
    p.add_argument("--comments", default=None)
    p.set_defaults(func=cmd_update_property)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    args = build_parser().parse_args(argv)
    config = get_config(args.config)
    configure_logging(config, args.verbose)

    try:
        services = build_services(config)
        return args.func(services, args)
    except DuesEngineError as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"\nERROR: {exc}")
        return 1
    except Exception as exc:
        logger.exception("Unexpected error in %s", args.command)
        print(f"\nUNEXPECTED ERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
