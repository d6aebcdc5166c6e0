"""CLI entry point for mailledger.

Commands:
    mailledger sync [--full] [--days-back N]   Sync financial emails into the ledger
    mailledger status                          Ledger counts and last sync
    mailledger transactions [filters]          List recent transactions
    mailledger summary                         Balance, spending and income totals
    mailledger subscriptions                   List detected subscriptions
    mailledger currency [CODE]                 Show or set the reporting currency
    mailledger last-sync                       Show when the last sync completed
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_MIGRATIONS_DIR = Path(__file__).parent / "database" / "migrations"


def _setup_logging() -> None:
    """Configure logging based on MAILLEDGER_LOG_LEVEL env var."""
    level = os.environ.get("MAILLEDGER_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from mailledger.config import Config

    config_dir = os.environ.get("MAILLEDGER_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_migrations_dir() -> Path:
    """Get the migrations directory path."""
    return Path(os.environ.get("MAILLEDGER_MIGRATIONS_DIR", DEFAULT_MIGRATIONS_DIR))


def _get_repo():
    """Create a migrated Repository connected to the configured database."""
    from mailledger.database.repository import Repository

    db_path = os.environ.get("MAILLEDGER_DB_PATH", "mailledger.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations(_get_migrations_dir())
    return repo


def _make_claude_fn(config=None):
    """Create a Claude API callback for email extraction.

    Returns a callable (system: str, prompt: str) -> str, or None if
    ANTHROPIC_API_KEY is not set.
    """
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        return None

    model = config.claude_model if config else "claude-sonnet-4-20250514"
    max_tokens = config.claude_max_tokens if config else 1024

    try:
        import anthropic

        client = anthropic.Anthropic(api_key=api_key)

        def claude_fn(system: str, prompt: str) -> str:
            response = client.messages.create(
                model=model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
            return response.content[0].text

        return claude_fn
    except Exception as e:
        logger.warning("Claude API not available: %s", e)
        return None


def _get_gmail(config):
    """Create a GmailClient from MAILLEDGER_CREDENTIALS/_GMAIL_USER or _GMAIL_TOKEN."""
    from mailledger.gmail.client import GmailClient

    return GmailClient(
        service_account_file=os.environ.get("MAILLEDGER_CREDENTIALS"),
        target_user=os.environ.get("MAILLEDGER_GMAIL_USER"),
        token_file=os.environ.get("MAILLEDGER_GMAIL_TOKEN"),
        max_results=config.max_results,
    )


def _money(amount: float, currency: str) -> str:
    symbol = {"INR": "₹", "USD": "$", "EUR": "€", "GBP": "£"}.get(currency, currency + " ")
    return f"{symbol}{amount:,.2f}"


# ── Command handlers ─────────────────────────────────────


def cmd_sync(args: argparse.Namespace) -> int:
    """Sync financial emails from Gmail into the ledger."""
    from mailledger.extractors.claude import ClaudeExtractor, make_extractor
    from mailledger.reconcile.dedup import DuplicateDetector
    from mailledger.reconcile.engine import Reconciler
    from mailledger.reconcile.reversal import ReversalLinker
    from mailledger.sync.orchestrator import SyncOrchestrator, SyncState

    config = _get_config()
    repo = _get_repo()

    extractor = make_extractor(config, _make_claude_fn(config))
    reconciler = Reconciler(
        repo,
        detector=DuplicateDetector(repo, fuzzy_threshold=config.fuzzy_threshold),
        linker=ReversalLinker(
            repo,
            window_days=config.reversal_window_days,
            lookback=config.reversal_lookback,
        ),
    )

    def on_progress(processed: int, total: int, new: int) -> None:
        print(f"\r  {processed}/{total} emails, {new} new transactions", end="", flush=True)

    orchestrator = SyncOrchestrator(
        repo,
        _get_gmail(config),
        extractor,
        reconciler,
        reporting_currency=config.reporting_currency,
        default_currency=config.default_currency,
        observer=on_progress,
        broad_search=isinstance(extractor, ClaudeExtractor),
    )
    days_back = args.days_back if args.days_back is not None else config.days_back
    result = orchestrator.run(full_sync=args.full, days_back=days_back)
    print()
    repo.close()

    if result.state == SyncState.FAILED:
        print(f"Sync failed: {result.error}")
        return 1

    print(f"Sync {result.state.value}")
    print("=" * 40)
    print(f"  Emails:              {result.processed}/{result.total}")
    print(f"  New transactions:    {result.new_transactions}")
    print(f"  Reversals linked:    {result.reversals}")
    print(f"  Duplicates:          {result.duplicates}")
    print(f"  Already processed:   {result.skipped}")
    print(f"  Other currency:      {result.excluded_currency}")
    print(f"  Subscriptions:       {result.subscriptions}")
    print(f"  Failed:              {result.failed + result.extraction_errors}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Display ledger counts and link integrity."""
    from mailledger.database.queries import find_link_violations, get_status_counts

    repo = _get_repo()
    counts = get_status_counts(repo.conn)
    violations = find_link_violations(repo.conn)

    print("mailledger Status")
    print("=" * 40)
    print(f"  Total transactions:  {counts['total_txns']:,}")
    print(f"  Duplicates:          {counts['duplicates']:,}")
    print(f"  Reversals:           {counts['reversals']:,}")
    print(f"  Processed emails:    {counts['processed_emails']:,}")
    print(f"  Subscriptions:       {counts['subscriptions']:,}")
    print(f"  Last sync:           {repo.get_last_sync() or 'never'}")
    if violations:
        print(f"\n  Link violations:     {len(violations)}")
        for v in violations[:10]:
            print(f"    {v['id']}: {v['problem']}")

    repo.close()
    return 1 if violations else 0


def cmd_transactions(args: argparse.Namespace) -> int:
    """List transactions, newest first."""
    repo = _get_repo()
    txns = repo.list_transactions(
        date_from=args.start,
        date_to=args.end,
        category=args.category,
        direction=args.type,
        limit=args.limit,
    )
    if not txns:
        print("No transactions.")
        repo.close()
        return 0

    for t in txns:
        sign = "+" if t.direction == "credit" else "-"
        flags = []
        if t.is_duplicate:
            flags.append("dup")
        if t.reverses:
            flags.append("reversal")
        if t.reversed_by:
            flags.append("reversed")
        print(
            f"  {t.date}  {sign}{t.amount:>10.2f}  {(t.category or ''):<14}"
            f"  {t.description[:40]:<40}  {','.join(flags)}"
        )
    repo.close()
    return 0


def cmd_summary(args: argparse.Namespace) -> int:
    """Print balance, spending by category and income by category."""
    from mailledger.database.queries import (
        get_balance_summary,
        get_income_summary,
        get_spending_by_category,
    )

    repo = _get_repo()
    currency = repo.get_setting("user_currency") or _get_config().reporting_currency
    balance = get_balance_summary(repo.conn)

    print("Summary")
    print("=" * 40)
    print(f"  Income:    {_money(balance['total_income'], currency)}")
    print(f"  Expenses:  {_money(balance['total_expense'], currency)}")
    print(f"  Balance:   {_money(balance['balance'], currency)}")

    spending = get_spending_by_category(repo.conn)
    if spending:
        print("\nSpending by category:")
        for row in spending:
            print(f"  {row['category']:<20} {_money(row['total'], currency):>14}  ({row['count']})")

    income = get_income_summary(repo.conn)
    if income:
        print("\nIncome by category:")
        for row in income:
            print(f"  {row['category']:<20} {_money(row['total'], currency):>14}  ({row['count']})")

    repo.close()
    return 0


def cmd_subscriptions(args: argparse.Namespace) -> int:
    """List detected subscriptions."""
    repo = _get_repo()
    subs = repo.list_subscriptions()
    if not subs:
        print("No subscriptions detected.")
        repo.close()
        return 0

    for s in subs:
        print(
            f"  {s.name:<24} {_money(s.amount, s.currency):>12}  {s.billing_cycle:<9}"
            f"  {s.status:<9}  next: {s.next_billing_date or '-'}"
        )
    repo.close()
    return 0


def cmd_currency(args: argparse.Namespace) -> int:
    """Show or set the reporting currency stored in the database."""
    repo = _get_repo()
    if args.code:
        code = args.code.strip().upper()
        if len(code) != 3 or not code.isalpha():
            print(f"Invalid currency code: {args.code}")
            repo.close()
            return 1
        repo.set_setting("user_currency", code)
        print(f"Reporting currency set to {code}")
    else:
        stored = repo.get_setting("user_currency")
        print(stored or _get_config().reporting_currency)
    repo.close()
    return 0


def cmd_last_sync(args: argparse.Namespace) -> int:
    """Show when the last sync completed."""
    repo = _get_repo()
    print(repo.get_last_sync() or "never")
    repo.close()
    return 0


# ── Main entry point ─────────────────────────────────────


_COMMANDS = {
    "sync": cmd_sync,
    "status": cmd_status,
    "transactions": cmd_transactions,
    "summary": cmd_summary,
    "subscriptions": cmd_subscriptions,
    "currency": cmd_currency,
    "last-sync": cmd_last_sync,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="mailledger",
        description="Reconciled ledger from financial emails",
    )
    subparsers = parser.add_subparsers(dest="command")

    # sync
    sync_p = subparsers.add_parser("sync", help="Sync financial emails from Gmail")
    sync_p.add_argument("--full", action="store_true", help="Reprocess already processed emails")
    sync_p.add_argument("--days-back", type=int, default=None, help="Search window in days")

    # status
    subparsers.add_parser("status", help="Show ledger counts and last sync")

    # transactions
    txn_p = subparsers.add_parser("transactions", help="List transactions")
    txn_p.add_argument("--limit", type=int, default=50)
    txn_p.add_argument("--type", choices=["credit", "debit"])
    txn_p.add_argument("--category")
    txn_p.add_argument("--start", help="From date (YYYY-MM-DD)")
    txn_p.add_argument("--end", help="To date (YYYY-MM-DD)")

    # summary
    subparsers.add_parser("summary", help="Balance and category totals")

    # subscriptions
    subparsers.add_parser("subscriptions", help="List detected subscriptions")

    # currency
    cur_p = subparsers.add_parser("currency", help="Show or set the reporting currency")
    cur_p.add_argument("code", nargs="?", help="ISO currency code, e.g. INR")

    # last-sync
    subparsers.add_parser("last-sync", help="Show when the last sync completed")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
