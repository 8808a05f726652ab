"""Typer-based CLI for PhishBlock."""

import json
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .chain import get_ledger_client
from .config import PhishBlockConfig
from .guard import AnchoringGuard
from .journal import JournalWriter, read_journal_tail
from .models.anchoring import PipelineResult
from .models.report import AnchoredReport, to_document
from .paths import StatePaths
from .pipeline import AnchoringPipeline, current_phase
from .store import ReportNotFound, ReportStore
from .trigger import should_anchor

app = typer.Typer(
    name="phishblock",
    help="PhishBlock - anchor community phishing reports on-chain and archive the evidence",
    add_completion=False,
)

console = Console()

STATE_DIR_HELP = "Path to state directory (default: PHISHBLOCK_STATE_DIR env or ./phishblock_state)"
ENGINE_HELP = "Ledger/storage engine: 'auto' (real services) or 'fake' (in-memory dry run)"


@app.callback()
def _main(
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _load(state_dir: Optional[str]) -> tuple[PhishBlockConfig, StatePaths]:
    config = PhishBlockConfig.from_env(cli_state_dir=state_dir)
    return config, StatePaths.from_config(config)


def _open_store(paths: StatePaths) -> ReportStore:
    if not paths.db_file.exists():
        console.print(f"[red]Error: State not initialized at {paths.root}[/red]")
        console.print("[yellow]Run 'phishblock init' first[/yellow]")
        raise typer.Exit(code=1)
    return ReportStore(paths.db_file)


def _build_pipeline(config: PhishBlockConfig, engine: str) -> AnchoringPipeline:
    try:
        return AnchoringPipeline.from_config(config, engine=engine)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)


def _print_result(result: PipelineResult) -> None:
    if result.status == "completed":
        console.print(f"[green]✓ Report {result.report_id} anchored and archived[/green]")
        console.print(f"  [dim]Tx:[/dim]  {result.tx_hash}")
        console.print(f"  [dim]CID:[/dim] {result.cid}")
    elif result.status == "skipped":
        console.print(f"[yellow]Skipped {result.report_id}: {result.reason}[/yellow]")
    else:
        console.print(
            f"[red]✗ Report {result.report_id} failed in {result.failed_phase.value if result.failed_phase else '?'} "
            f"phase: {result.error}[/red]"
        )
        if result.tx_hash:
            console.print(f"  [dim]Tx (recorded, will not be re-sent):[/dim] {result.tx_hash}")
        console.print("[yellow]Run 'phishblock retry <id>' to resume[/yellow]")


@app.command()
def init(
    state_dir: str = typer.Option(None, "--state-dir", "-s", help=STATE_DIR_HELP),
):
    """Create the state directory, record store and journal.

    Idempotent - existing data is never overwritten.
    """
    config, paths = _load(state_dir)
    for directory in paths.get_all_directories():
        directory.mkdir(parents=True, exist_ok=True)
    ReportStore(paths.db_file)
    paths.journal_file.touch(exist_ok=True)
    console.print(f"[green]State ready at:[/green] {paths.root}")
    console.print(f"  [dim]Vote threshold:[/dim] {config.vote_threshold}")


@app.command()
def report(
    target: str = typer.Option(..., "--target", "-t", help="Reported URL or wallet address"),
    description: str = typer.Option("", "--description", "-d", help="What is suspicious about it"),
    author_id: str = typer.Option("", "--author-id", help="Reporter identity"),
    author_name: str = typer.Option("", "--author-name", help="Reporter display name"),
    state_dir: str = typer.Option(None, "--state-dir", "-s", help=STATE_DIR_HELP),
):
    """File a new report."""
    _config, paths = _load(state_dir)
    store = _open_store(paths)
    created = store.create_report(
        target=target, description=description, author_id=author_id, author_name=author_name
    )
    console.print(f"[green]✓ Report created:[/green] {created.report_id}")


@app.command()
def vote(
    report_id: str = typer.Argument(..., help="Report ID"),
    voter: str = typer.Option(..., "--voter", help="Voter identity"),
    value: int = typer.Option(1, "--value", help="1 (upvote) or -1 (downvote)"),
    engine: str = typer.Option("auto", "--engine", "-e", help=ENGINE_HELP),
    state_dir: str = typer.Option(None, "--state-dir", "-s", help=STATE_DIR_HELP),
):
    """Vote on a report; crossing the threshold starts anchoring."""
    config, paths = _load(state_dir)
    store = _open_store(paths)
    try:
        event = store.apply_vote(report_id, voter, value)
    except ReportNotFound:
        console.print(f"[red]Error: Report not found: {report_id}[/red]")
        raise typer.Exit(code=1)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)

    after = event.after or {}
    console.print(f"Votes: [green]+{after.get('upvotes', 0)}[/green] / [red]-{after.get('downvotes', 0)}[/red]")

    fire, reason = should_anchor(event.before, event.after, config.vote_threshold)
    if not fire:
        console.print(f"[dim]No anchoring: {reason}[/dim]")
        return
    pipeline = _build_pipeline(config, engine)
    _print_result(pipeline.run(report_id))


@app.command()
def anchor(
    report_id: str = typer.Argument(..., help="Report ID"),
    engine: str = typer.Option("auto", "--engine", "-e", help=ENGINE_HELP),
    state_dir: str = typer.Option(None, "--state-dir", "-s", help=STATE_DIR_HELP),
):
    """Run the pipeline for a report (the vote threshold still applies)."""
    config, paths = _load(state_dir)
    _open_store(paths)
    pipeline = _build_pipeline(config, engine)
    try:
        result = pipeline.run(report_id)
    except ReportNotFound:
        console.print(f"[red]Error: Report not found: {report_id}[/red]")
        raise typer.Exit(code=1)
    _print_result(result)
    if result.status == "failed":
        raise typer.Exit(code=1)


@app.command()
def retry(
    report_id: str = typer.Argument(..., help="Report ID"),
    engine: str = typer.Option("auto", "--engine", "-e", help=ENGINE_HELP),
    state_dir: str = typer.Option(None, "--state-dir", "-s", help=STATE_DIR_HELP),
):
    """Resume a failed report at its next uncompleted phase.

    A recorded ledger transaction is never re-submitted.
    """
    config, paths = _load(state_dir)
    store = _open_store(paths)
    existing = store.get_report(report_id)
    if existing is None:
        console.print(f"[red]Error: Report not found: {report_id}[/red]")
        raise typer.Exit(code=1)
    if isinstance(existing, AnchoredReport):
        console.print(f"[yellow]Report {report_id} is already anchored and collapsed[/yellow]")
        return

    console.print(f"Resuming {report_id} from [cyan]{current_phase(existing).value}[/cyan]")
    pipeline = _build_pipeline(config, engine)
    result = pipeline.run(report_id, resume=True)
    _print_result(result)
    if result.status == "failed":
        raise typer.Exit(code=1)


@app.command()
def show(
    report_id: str = typer.Argument(..., help="Report ID"),
    state_dir: str = typer.Option(None, "--state-dir", "-s", help=STATE_DIR_HELP),
):
    """Show a report and its anchoring phase."""
    _config, paths = _load(state_dir)
    store = _open_store(paths)
    found = store.get_report(report_id)
    if found is None:
        console.print(f"[red]Error: Report not found: {report_id}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[bold]Report {report_id}[/bold]  [cyan]{current_phase(found).value}[/cyan]")
    for line in json.dumps(to_document(found), indent=2, ensure_ascii=False).split("\n"):
        console.print(f"  {line}", highlight=False)

    history = read_journal_tail(paths.journal_file, n=5, report_id=report_id)
    if history:
        console.print("[bold]Recent pipeline events[/bold]")
        for event in history:
            console.print(f"  {event.ts.strftime('%Y-%m-%d %H:%M:%S')}  [magenta]{event.event_type}[/magenta]")


@app.command("list")
def list_reports(
    state_dir: str = typer.Option(None, "--state-dir", "-s", help=STATE_DIR_HELP),
):
    """List reports in feed order (newest first)."""
    _config, paths = _load(state_dir)
    store = _open_store(paths)
    reports = store.list_reports()
    if not reports:
        console.print("[dim]No reports[/dim]")
        return

    table = Table(title=f"{len(reports)} Report(s)")
    table.add_column("Created (UTC)", style="cyan", no_wrap=True)
    table.add_column("ID", style="yellow")
    table.add_column("Target")
    table.add_column("Votes", justify="right")
    table.add_column("Phase", style="magenta")
    for r in reports:
        target = r.target if len(r.target) <= 48 else r.target[:45] + "..."
        table.add_row(r.created_at, r.report_id, target, f"+{r.upvotes}/-{r.downvotes}", current_phase(r).value)
    console.print(table)


@app.command("check-tx")
def check_tx(
    tx_hash: str = typer.Argument(..., help="Transaction hash (0x...)"),
    rpc: str = typer.Option(None, "--rpc", help="RPC URL (default: BLOCKCHAIN_RPC env)"),
    state_dir: str = typer.Option(None, "--state-dir", "-s", help=STATE_DIR_HELP),
):
    """Fetch an anchor transaction and verify its reference against the report id."""
    config, _paths = _load(state_dir)
    if rpc:
        config.chain.rpc_url = rpc
    try:
        client = get_ledger_client(config, engine="web3")
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)

    info = client.inspect_transaction(tx_hash)
    console.print(f"[bold]Transaction[/bold] {info.tx_hash}")
    console.print(f"  [dim]From:[/dim]         {info.from_address or '-'}")
    console.print(f"  [dim]To:[/dim]           {info.to_address or '-'}")
    console.print(f"  [dim]Block:[/dim]        {info.block_number if info.block_number is not None else '-'}")
    console.print(f"  [dim]Status:[/dim]       {info.status if info.status is not None else '-'}")
    if info.report_id is None:
        console.print("[yellow]Input could not be decoded as anchor(bytes32,string)[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"  [dim]Report ID:[/dim]    {info.report_id}")
    console.print(f"  [dim]Reference:[/dim]    {info.reference}")
    if info.reference_matches:
        console.print("[green]✓ Reference matches keccak256(report id)[/green]")
    else:
        console.print("[red]✗ Reference does not match keccak256(report id)[/red]")
        raise typer.Exit(code=1)


@app.command()
def sweep(
    state_dir: str = typer.Option(None, "--state-dir", "-s", help=STATE_DIR_HELP),
):
    """Release anchoring leases left behind by crashed runs."""
    config, paths = _load(state_dir)
    store = _open_store(paths)
    guard = AnchoringGuard(store, lease_seconds=config.lease.lease_seconds)
    reclaimed = guard.sweep_expired()
    journal = JournalWriter(paths.journal_file)
    for report_id in reclaimed:
        journal.append_event("LEASE_RECLAIMED", {"by": "sweep"}, report_id=report_id)
    if reclaimed:
        console.print(f"[green]Released {len(reclaimed)} expired lease(s):[/green] {', '.join(reclaimed)}")
    else:
        console.print("[dim]No expired leases[/dim]")


journal_app = typer.Typer(help="Pipeline journal commands")
app.add_typer(journal_app, name="journal")


@journal_app.command("tail")
def journal_tail(
    n: int = typer.Option(20, "--n", help="Number of recent events to display"),
    full: bool = typer.Option(False, "--full", help="Show full payloads with JSON pretty-print"),
    report_id: str = typer.Option(None, "--report", "-r", help="Only show events for this report ID"),
    state_dir: str = typer.Option(None, "--state-dir", "-s", help=STATE_DIR_HELP),
):
    """Display the last N pipeline journal events."""
    _config, paths = _load(state_dir)
    events = read_journal_tail(paths.journal_file, n=n, report_id=report_id)

    if not events:
        console.print("[dim]No events in journal[/dim]")
        return

    if full:
        console.print(f"[bold]Last {len(events)} Journal Event(s)[/bold]\n")
        for i, event in enumerate(events, 1):
            console.print(f"[cyan]Event {i}/{len(events)}[/cyan]")
            console.print(f"  [dim]Run ID:[/dim]      {event.run_id}")
            console.print(f"  [dim]Timestamp:[/dim]   {event.ts.strftime('%Y-%m-%d %H:%M:%S')} UTC")
            console.print(f"  [dim]Event Type:[/dim]  [magenta]{event.event_type}[/magenta]")
            console.print(f"  [dim]Report ID:[/dim]   {event.report_id or '-'}")
            console.print("  [dim]Payload:[/dim]")
            for line in json.dumps(event.payload, indent=2).split("\n"):
                console.print(f"    {line}")
            console.print()
        return

    table = Table(title=f"Last {len(events)} Journal Event(s)")
    table.add_column("Timestamp (UTC)", style="cyan", no_wrap=True)
    table.add_column("Event Type", style="magenta")
    table.add_column("Report ID", style="yellow")
    table.add_column("Payload", style="dim")
    for event in events:
        payload_str = str(event.payload)
        if len(payload_str) > 60:
            payload_str = payload_str[:57] + "..."
        table.add_row(event.ts.strftime("%Y-%m-%d %H:%M:%S"), event.event_type, event.report_id or "-", payload_str)
    console.print(table)


@app.command()
def version():
    """Show PhishBlock version."""
    from . import __version__
    console.print(f"PhishBlock v{__version__}")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
