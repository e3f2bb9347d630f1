"""Declutter command-line interface."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, NoReturn

import typer

from . import __version__
from .config import AccountConfig, Config, ConfigError, load_config
from .decision import decide, summarize
from .items import ItemSourceError, SnapshotItemSource
from .ledger import AuditEntry, AuditLedger, LedgerError, RollbackConflictError
from .logging import configure_logging
from .mailbox import GmailMailbox, MailboxClient, MailboxError, authorize as authorize_gmail
from .pipeline import MAX_ARCHIVE_DAYS, MIN_ARCHIVE_DAYS, ExecutionPipeline, RunReport
from .policies import RuleStore, context_factory
from .types import Decision

app = typer.Typer(help="Declutter inbox disposition utilities.")
LOGGER = logging.getLogger(__name__)


@dataclass
class CLIState:
    """Stores shared CLI options."""

    config_path: Path | None
    dry_run: bool = False


@dataclass
class Environment:
    """Objects every command needs, built once per invocation."""

    config: Config
    items: SnapshotItemSource
    ledger: AuditLedger
    pipeline: ExecutionPipeline
    mailboxes: dict[str, MailboxClient] = field(default_factory=dict)


@app.callback()
def _declutter(
    ctx: typer.Context,
    config: Annotated[
        Path | None,
        typer.Option(
            "-c",
            "--config",
            help="Path to config (env DECLUTTER_CONFIG or ~/.config/declutter/config.yaml).",
        ),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            help="Report what would change without touching the mailbox or the audit log.",
        ),
    ] = False,
) -> None:
    """Capture global CLI options."""

    resolved = config.expanduser() if config else None
    ctx.obj = CLIState(config_path=resolved, dry_run=dry_run)


@app.command()
def version() -> None:
    """Print the installed version."""

    typer.echo(__version__)


@app.command()
def authorize(
    ctx: typer.Context,
    account: Annotated[
        str | None,
        typer.Option("-a", "--account", help="Account (defaults to first configured account)."),
    ] = None,
) -> None:
    """Authorise Gmail access for an account and store its token."""

    config = _load_config(_state(ctx).config_path)
    target = _resolve_account(config, account)
    if target.gmail is None:
        _config_failure(ConfigError(f"Account '{target.name}' has no gmail settings."))
    try:
        token_path = authorize_gmail(target.gmail)
    except MailboxError as exc:
        _failure(str(exc))
    typer.echo(f"{target.name}: token stored at {token_path}")


@app.command()
def preview(
    ctx: typer.Context,
    account: Annotated[
        str | None,
        typer.Option("-a", "--account", help="Account to preview (omit for all accounts)."),
    ] = None,
) -> None:
    """Show what the next run would archive or move to spam."""

    env = _load_environment(_state(ctx))
    for acct in _select_accounts(env.config, account):
        try:
            report = env.pipeline.preview(acct.name)
        except ConfigError as exc:
            _config_failure(exc)
        except ItemSourceError as exc:
            _failure(f"Cannot enumerate items for '{acct.name}': {exc}")
        typer.echo(f"{acct.name}: {report.total} eligible item(s)")
        for category_id, count in sorted(report.by_category.items()):
            typer.echo(f"  {category_id}: {count}")
        if report.oldest is not None:
            typer.echo(f"  oldest: {report.oldest.isoformat()}")
            typer.echo(f"  newest: {report.newest.isoformat()}")
        typer.echo(f"  blocked by protection: {report.protected_blocked}")
        suffix = " (scan limit reached)" if report.truncated else ""
        typer.echo(f"  scanned: {report.scanned}{suffix}")


@app.command()
def run(
    ctx: typer.Context,
    account: Annotated[
        str | None,
        typer.Option("-a", "--account", help="Account to process (omit for all accounts)."),
    ] = None,
    recount: Annotated[
        bool,
        typer.Option("--recount/--no-recount", help="Count items still eligible after the run."),
    ] = True,
) -> None:
    """Archive or move to spam every eligible item, up to the per-run limit."""

    state = _state(ctx)
    if state.dry_run:
        preview(ctx, account=account)
        return
    env = _load_environment(state)
    targets = _select_accounts(env.config, account)
    _ensure_mailboxes(env, targets)
    failed = False
    for outcome in env.pipeline.execute_accounts([acct.name for acct in targets], recount=recount):
        if outcome.error is not None:
            failed = True
            LOGGER.error("Run for %s aborted: %s", outcome.account, outcome.error)
            typer.secho(f"{outcome.account}: run aborted: {outcome.error}", fg=typer.colors.RED, err=True)
            continue
        _echo_run(outcome.report)
    if failed:
        raise typer.Exit(1)


@app.command("archive-older-than")
def archive_older_than(
    ctx: typer.Context,
    days: Annotated[
        int,
        typer.Argument(
            min=MIN_ARCHIVE_DAYS,
            max=MAX_ARCHIVE_DAYS,
            help="Archive unprotected inbox items received more than this many days ago.",
        ),
    ],
    account: Annotated[
        str | None,
        typer.Option("-a", "--account", help="Account (defaults to first configured account)."),
    ] = None,
) -> None:
    """Bulk-archive old inbox items regardless of category policy."""

    state = _state(ctx)
    env = _load_environment(state)
    target = _resolve_account(env.config, account)
    if not state.dry_run:
        _ensure_mailboxes(env, [target])
    try:
        report = env.pipeline.archive_older_than(target.name, days, dry_run=state.dry_run)
    except ConfigError as exc:
        _config_failure(exc)
    except ItemSourceError as exc:
        _failure(f"Cannot enumerate items for '{target.name}': {exc}")
    _echo_run(report)


@app.command()
def explain(
    ctx: typer.Context,
    item_id: Annotated[str, typer.Argument(..., help="Item id as stored in the snapshot.")],
    account: Annotated[
        str | None,
        typer.Option("-a", "--account", help="Account (defaults to first configured account)."),
    ] = None,
) -> None:
    """Print the decision and full trace for one item."""

    env = _load_environment(_state(ctx))
    target = _resolve_account(env.config, account)
    try:
        item = env.items.get(target.name, item_id)
        context = env.pipeline.context(target.name)
    except ConfigError as exc:
        _config_failure(exc)
    except ItemSourceError as exc:
        _failure(str(exc))
    if item is None:
        _failure(f"Item '{item_id}' not found for account '{target.name}'.")

    decision = decide(item, context)
    typer.echo(f"Item: {item.id}")
    typer.echo(f"Account: {target.name}")
    typer.echo(f"Sender: {item.sender or '-'}")
    typer.echo(f"Received: {item.received_at.isoformat()}")
    _echo_decision(decision, context)


@app.command()
def audit(
    ctx: typer.Context,
    account: Annotated[
        str | None,
        typer.Option("-a", "--account", help="Only show entries for this account."),
    ] = None,
    run_id: Annotated[
        str | None,
        typer.Option("--run", help="Only show entries from this run."),
    ] = None,
) -> None:
    """List audit log entries."""

    env = _load_environment(_state(ctx))
    entries = env.ledger.entries_for_run(run_id) if run_id else env.ledger.entries(account)
    if run_id and account:
        entries = [entry for entry in entries if entry.account == account]
    if not entries:
        typer.echo("No audit entries.")
        return
    for entry in entries:
        typer.echo(_format_entry(entry))


@app.command()
def rollback(
    ctx: typer.Context,
    entry_id: Annotated[
        str | None,
        typer.Argument(help="Audit entry to revert."),
    ] = None,
    run_id: Annotated[
        str | None,
        typer.Option("--run", help="Revert every applied entry of this run instead."),
    ] = None,
) -> None:
    """Revert one audited action, or a whole run."""

    if bool(entry_id) == bool(run_id):
        _failure("Pass either an entry id or --run, not both.", code=2)
    env = _load_environment(_state(ctx))

    if entry_id:
        entry = env.ledger.get(entry_id)
        if entry is None:
            _failure(f"Audit entry not found: {entry_id}")
        mailbox = _mailbox(env, entry.account)
        try:
            reverted = env.ledger.rollback_entry(
                entry_id, mailbox, timeout=env.config.execution.timeout
            )
        except RollbackConflictError as exc:
            _failure(str(exc))
        except MailboxError as exc:
            _failure(f"Rollback failed ({exc.kind}): {exc}")
        typer.echo(f"Reverted {reverted.action_type.value} of {reverted.item_id}.")
        return

    entries = env.ledger.entries_for_run(run_id)
    if not entries:
        _failure(f"No audit entries for run {run_id}.")
    # A run only ever covers one account.
    mailbox = _mailbox(env, entries[0].account)
    report = env.ledger.rollback_run(run_id, mailbox, timeout=env.config.execution.timeout)
    typer.echo(f"Run {run_id}: reverted {report.reverted} entr{'y' if report.reverted == 1 else 'ies'}.")
    for error in report.errors:
        typer.secho(f"  failed {error} [{error.kind}]", fg=typer.colors.YELLOW, err=True)
    if report.errors:
        raise typer.Exit(1)


def _state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise RuntimeError("CLI state missing from context.")
    return state


def _load_environment(state: CLIState) -> Environment:
    config = _load_config(state.config_path)
    try:
        configure_logging(config.logging, config.root_dir)
        ledger = AuditLedger.in_dir(config.root_dir)
    except ConfigError as exc:
        _config_failure(exc)
    except LedgerError as exc:
        _failure(str(exc))
    items = SnapshotItemSource(config.items_dir)
    mailboxes: dict[str, MailboxClient] = {}
    pipeline = ExecutionPipeline(
        context_factory=context_factory(RuleStore(config.rules_dir), config.classification),
        item_source=items,
        mailbox_for=lambda name: mailboxes[name],
        ledger=ledger,
        limits=config.execution,
        marker_label=config.marker_label,
    )
    return Environment(
        config=config, items=items, ledger=ledger, pipeline=pipeline, mailboxes=mailboxes
    )


def _ensure_mailboxes(env: Environment, accounts: list[AccountConfig]) -> None:
    for acct in accounts:
        _mailbox(env, acct.name)


def _mailbox(env: Environment, name: str) -> MailboxClient:
    cached = env.mailboxes.get(name)
    if cached is not None:
        return cached
    try:
        acct = env.config.account(name)
    except ConfigError as exc:
        _config_failure(exc)
    if acct.gmail is None:
        _config_failure(ConfigError(f"Account '{name}' has no gmail settings."))
    mailbox = GmailMailbox(acct.gmail)
    env.mailboxes[name] = mailbox
    return mailbox


def _load_config(path: Path | None) -> Config:
    try:
        return load_config(path)
    except ConfigError as exc:
        _config_failure(exc)


def _config_failure(exc: ConfigError) -> NoReturn:
    typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED, err=True)
    raise typer.Exit(2) from exc


def _failure(message: str, *, code: int = 1) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code)


def _resolve_account(config: Config, name: str | None) -> AccountConfig:
    if not config.accounts:
        _config_failure(ConfigError("No accounts configured."))
    if name is None:
        return config.accounts[0]
    try:
        return config.account(name)
    except ConfigError:
        _failure(f"Unknown account '{name}'.")


def _select_accounts(config: Config, name: str | None) -> list[AccountConfig]:
    if name is not None:
        return [_resolve_account(config, name)]
    return list(config.accounts)


def _echo_run(report: RunReport) -> None:
    if report.dry_run:
        typer.echo(f"{report.account}: {report.eligible} item(s) would be archived (dry run)")
    else:
        typer.echo(
            f"{report.account}: applied {report.processed} of {report.eligible} "
            f"eligible item(s) in run {report.run_id}"
        )
    if report.remaining is not None:
        typer.echo(f"  remaining eligible: {report.remaining}")
    if report.truncated:
        typer.echo(f"  scan stopped after {report.scanned} item(s)")
    for error in report.errors:
        typer.secho(f"  failed {error} [{error.kind}]", fg=typer.colors.YELLOW, err=True)


def _echo_decision(decision: Decision, context) -> None:
    typer.echo("Decision:")
    category = context.category_name(decision.category_id) or decision.category_id or "-"
    typer.echo(f"  category: {category}")
    typer.echo(f"  action: {decision.action.value}")
    scheduled = decision.scheduled_at.isoformat() if decision.scheduled_at else "n/a"
    typer.echo(f"  scheduled: {scheduled}")
    typer.echo(f"  winner: {decision.trace.winner.value}")
    typer.echo("Candidates:")
    if not decision.trace.candidates:
        typer.echo("  (none)")
    for candidate in decision.trace.candidates:
        confidence = f"{candidate.confidence:.2f}" if candidate.confidence is not None else "n/a"
        typer.echo(f"  {candidate.source.value}: {candidate.category_id} (confidence {confidence})")
    typer.echo("Overrides:")
    if not decision.trace.overrides:
        typer.echo("  (none)")
    for override in decision.trace.overrides:
        typer.echo(f"  {override.source.value}: {override.reason}")
    typer.echo(f"Summary: {summarize(decision, context)}")


def _format_entry(entry: AuditEntry) -> str:
    return (
        f"{entry.id} {entry.created_at.isoformat()} {entry.account} {entry.item_id} "
        f"{entry.action_type.value} {entry.status.value} run={entry.run_id or '-'} "
        f"{entry.reason}"
    )


def main() -> None:  # pragma: no cover - delegated to Typer
    app()


__all__ = ["app", "main"]
