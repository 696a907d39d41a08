"""CLI entry point for the marketplace engine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from decimal import Decimal
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from marketplace import __version__
from marketplace.errors import MarketplaceError
from marketplace.models import (
    AssignmentMethod,
    IndependentWorkPolicy,
    MemberRole,
    RequestStatus,
)
from marketplace.service import MarketplaceService

console = Console()


class MarketGroup(click.Group):
    """Reports engine errors as one red line instead of a traceback."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except MarketplaceError as exc:
            raise click.ClickException(f"{exc.code}: {exc.message}") from exc


def _service(ctx: click.Context) -> MarketplaceService:
    obj = ctx.find_root().obj
    if obj.get("service") is None:
        obj["service"] = MarketplaceService(obj["data_dir"])
    return obj["service"]


def _choice(enum_cls: type) -> click.Choice:
    return click.Choice([member.value for member in enum_cls], case_sensitive=False)


@click.group(cls=MarketGroup)
@click.version_option(version=__version__, prog_name="market")
@click.option(
    "--data-dir",
    type=click.Path(path_type=Path),
    envvar="MARKET_DATA_DIR",
    default=None,
    help="Data directory (default ~/.marketplace)",
)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, data_dir: Path | None, verbose: bool) -> None:
    """Marketplace - request matching and settlement engine."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    ctx.obj = {"data_dir": data_dir, "service": None}


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Initialize the data directory and database."""
    service = _service(ctx)
    console.print(f"[green]Marketplace initialized at {service.db.data_dir}[/green]")
    console.print(f"  Database: {service.db.db_path}")
    console.print(f"  Config:   {service.db.data_dir / 'config.toml'}")


@main.command("config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Show the effective configuration."""
    config = _service(ctx).config
    table = Table(title="Configuration")
    table.add_column("Section", style="cyan")
    table.add_column("Key")
    table.add_column("Value", style="green")
    for section, values in asdict(config).items():
        for key, value in values.items():
            if key == "api_key" and value:
                value = "********"
            table.add_row(section, key, str(value))
    console.print(table)


# -- providers ---------------------------------------------------------------


@main.group()
def provider() -> None:
    """Register and inspect providers."""


@provider.command("add")
@click.argument("name")
@click.option("--spec", "specializations", multiple=True, help="Specialization (repeatable)")
@click.option("--experience", default=0, help="Years of experience")
@click.option("--rate", default="0", help="Hourly rate")
@click.option("--capacity", default=5, help="Maximum concurrent requests")
@click.option("--rating", default=0.0, help="Initial average rating")
@click.option("--exempt", is_flag=True, help="Exempt from withholding")
@click.option("--id", "provider_id", default=None, help="Explicit provider id")
@click.pass_context
def provider_add(
    ctx: click.Context,
    name: str,
    specializations: tuple[str, ...],
    experience: int,
    rate: str,
    capacity: int,
    rating: float,
    exempt: bool,
    provider_id: str | None,
) -> None:
    """Register a verified provider."""
    record = _service(ctx).directory.add_provider(
        name,
        specializations=specializations,
        experience_years=experience,
        hourly_rate=Decimal(rate),
        max_capacity=capacity,
        average_rating=rating,
        rating_count=1 if rating else 0,
        withholding_exempt=exempt,
        provider_id=provider_id,
    )
    console.print(f"[green]Provider {record.id}[/green] {record.name}")


@provider.command("list")
@click.pass_context
def provider_list(ctx: click.Context) -> None:
    """List providers with reputation and workload."""
    providers = _service(ctx).directory.list_providers()
    if not providers:
        console.print("[dim]No providers registered.[/dim]")
        return

    table = Table(title="Providers")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Specializations")
    table.add_column("Rate")
    table.add_column("Workload")
    table.add_column("Reputation", style="bold")
    table.add_column("Rating")
    table.add_column("Firm", style="dim")
    for p in providers:
        table.add_row(
            p.id,
            p.name,
            ", ".join(p.specializations),
            str(p.hourly_rate),
            f"{p.current_workload}/{p.max_capacity}",
            f"{p.reputation_score:.2f}",
            f"{p.average_rating:.2f} ({p.rating_count})",
            p.firm_id or "",
        )
    console.print(table)


@provider.command("rate")
@click.argument("provider_id")
@click.argument("stars", type=click.IntRange(1, 5))
@click.pass_context
def provider_rate(ctx: click.Context, provider_id: str, stars: int) -> None:
    """Record a client star rating (1-5)."""
    result = _service(ctx).rate_provider(provider_id, stars)
    console.print(f"{provider_id}: average {result.average_rating:.2f} over {result.rating_count} rating(s)")


# -- firms ---------------------------------------------------------------------


@main.group()
def firm() -> None:
    """Register firms and their members."""


@firm.command("add")
@click.argument("name")
@click.option("--commission", default="0", help="Commission percent")
@click.option("--policy", type=_choice(IndependentWorkPolicy), default="NO_INDEPENDENT_WORK")
@click.option("--min-ca", type=int, default=None, help="Minimum active members for firm assignment")
@click.option("--restrict", "restricted", multiple=True, help="Restricted client id (repeatable)")
@click.option("--id", "firm_id", default=None, help="Explicit firm id")
@click.pass_context
def firm_add(
    ctx: click.Context,
    name: str,
    commission: str,
    policy: str,
    min_ca: int | None,
    restricted: tuple[str, ...],
    firm_id: str | None,
) -> None:
    """Register a verified firm."""
    record = _service(ctx).directory.add_firm(
        name,
        commission_percent=Decimal(commission),
        independent_work_policy=IndependentWorkPolicy(policy.upper()),
        minimum_ca_required=min_ca,
        restricted_clients=restricted,
        firm_id=firm_id,
    )
    console.print(f"[green]Firm {record.id}[/green] {record.name} ({record.commission_percent}% commission)")


@firm.command("member")
@click.argument("firm_id")
@click.argument("provider_id")
@click.option("--role", type=_choice(MemberRole), default="ASSOCIATE")
@click.option("--policy", type=_choice(IndependentWorkPolicy), default=None, help="Override firm policy")
@click.pass_context
def firm_member(ctx: click.Context, firm_id: str, provider_id: str, role: str, policy: str | None) -> None:
    """Add a provider to a firm."""
    _service(ctx).directory.add_member(
        firm_id,
        provider_id,
        role=MemberRole(role.upper()),
        independent_work_policy=IndependentWorkPolicy(policy.upper()) if policy else None,
    )
    console.print(f"[green]{provider_id}[/green] joined {firm_id} as {role.upper()}")


@firm.command("approve")
@click.argument("firm_id")
@click.argument("provider_id")
@click.argument("requester_id")
@click.option("--by", "approved_by", required=True, help="Approving firm admin")
@click.pass_context
def firm_approve(ctx: click.Context, firm_id: str, provider_id: str, requester_id: str, approved_by: str) -> None:
    """Approve independent work for one client."""
    _service(ctx).directory.grant_approval(firm_id, provider_id, requester_id, approved_by)
    console.print(f"[green]Approved[/green] {provider_id} for {requester_id}")


# -- requests ------------------------------------------------------------------


@main.group()
def request() -> None:
    """Create and inspect service requests."""


@request.command("create")
@click.argument("requester_id")
@click.argument("category")
@click.argument("description")
@click.option("--budget", default=None, help="Budget (hourly rate ceiling)")
@click.option("--deadline", default=None, help="ISO deadline")
@click.option("--method", type=_choice(AssignmentMethod), default="AUTO")
@click.option("--provider", "provider_id", default=None, help="Explicit provider")
@click.option("--firm", "firm_id", default=None, help="Explicit firm")
@click.option("--allow-firm", is_flag=True, help="Let firms compete in auto-assignment")
@click.pass_context
def request_create(
    ctx: click.Context,
    requester_id: str,
    category: str,
    description: str,
    budget: str | None,
    deadline: str | None,
    method: str,
    provider_id: str | None,
    firm_id: str | None,
    allow_firm: bool,
) -> None:
    """Create a request and assign it."""
    created = _service(ctx).create_request(
        requester_id,
        category,
        description,
        budget=budget,
        deadline=deadline,
        assignment_method=AssignmentMethod(method.upper()),
        explicit_provider_id=provider_id,
        explicit_firm_id=firm_id,
        allow_firm_assignment=allow_firm,
    )
    score = f" (score {created.assignment_score:.2f})" if created.assignment_score is not None else ""
    console.print(f"[green]Request {created.id}[/green] assigned to {created.assigned_provider_id}{score}")


@request.command("show")
@click.argument("request_id")
@click.pass_context
def request_show(ctx: click.Context, request_id: str) -> None:
    """Show one request."""
    record = _service(ctx).get_request(request_id)
    console.print(f"[bold]Request:[/bold] {record.id}")
    console.print(f"[bold]Status:[/bold] {record.status.value}")
    console.print(f"[bold]Category:[/bold] {record.category}")
    console.print(f"[bold]Requester:[/bold] {record.requester_id}")
    console.print(f"[bold]Assigned:[/bold] {record.assigned_provider_id or '-'} (firm {record.assigned_firm_id or '-'})")
    console.print(f"[bold]Method:[/bold] {record.assignment_method.value}")
    if record.excluded_provider_ids:
        console.print(f"[bold]Excluded:[/bold] {', '.join(record.excluded_provider_ids)}")
    if record.amount is not None:
        console.print(f"[bold]Amount:[/bold] {record.amount}")
    elif record.payment_pending:
        console.print("[yellow]Payment pending[/yellow]")


@request.command("list")
@click.option("--status", type=_choice(RequestStatus), default=None)
@click.option("--limit", default=20, help="Number of requests to show")
@click.pass_context
def request_list(ctx: click.Context, status: str | None, limit: int) -> None:
    """List recent requests."""
    records = _service(ctx).lifecycle.list_requests(
        status=RequestStatus(status.upper()) if status else None, limit=limit
    )
    if not records:
        console.print("[dim]No requests yet.[/dim]")
        return

    table = Table(title="Requests")
    table.add_column("ID", style="cyan")
    table.add_column("Category")
    table.add_column("Status", style="yellow")
    table.add_column("Provider", style="green")
    table.add_column("Budget")
    table.add_column("Created")
    for r in records:
        table.add_row(
            r.id,
            r.category,
            r.status.value,
            r.assigned_provider_id or "-",
            str(r.budget) if r.budget is not None else "-",
            r.created_at[:16],
        )
    console.print(table)


@main.command()
@click.argument("request_id")
@click.option("--limit", default=None, type=int, help="Number of candidates")
@click.pass_context
def recommend(ctx: click.Context, request_id: str, limit: int | None) -> None:
    """Rank candidates for manual assignment."""
    ranked = _service(ctx).recommend(request_id, limit)
    if not ranked:
        console.print("[dim]No eligible candidates.[/dim]")
        return

    table = Table(title=f"Candidates for {request_id}")
    table.add_column("#")
    table.add_column("Candidate", style="cyan")
    table.add_column("Kind")
    table.add_column("Score", style="bold")
    table.add_column("Spec")
    table.add_column("Exp")
    table.add_column("Rating")
    table.add_column("Capacity")
    table.add_column("Budget")
    for i, scored in enumerate(ranked, 1):
        b = scored.breakdown
        table.add_row(
            str(i),
            scored.candidate.id,
            scored.candidate.kind.value,
            f"{scored.score:.2f}",
            f"{b.specialization:.0f}",
            f"{b.experience:.0f}",
            f"{b.rating:.2f}",
            f"{b.capacity:.1f}",
            f"{b.budget:.0f}",
        )
    console.print(table)


# -- settlement ----------------------------------------------------------------


@main.group()
def settle() -> None:
    """Run settlement jobs."""


@settle.command("run")
@click.option("--loop", is_flag=True, help="Keep polling for due jobs")
@click.option("--interval", default=5.0, help="Poll interval in seconds with --loop")
@click.pass_context
def settle_run(ctx: click.Context, loop: bool, interval: float) -> None:
    """Process due release and refund jobs."""
    worker = _service(ctx).worker()
    if loop:
        asyncio.run(worker.run_forever(poll_interval=interval))
        return
    report = asyncio.run(worker.run_once())
    console.print(
        f"Processed {report.processed}: [green]{report.succeeded} ok[/green], "
        f"[yellow]{report.retried} retrying[/yellow], [red]{report.dead_lettered} dead-lettered[/red]"
    )


@settle.command("reconcile")
@click.pass_context
def settle_reconcile(ctx: click.Context) -> None:
    """Queue releases missing for completed, paid requests."""
    queued = _service(ctx).reconcile()
    if not queued:
        console.print("[dim]Nothing to reconcile.[/dim]")
        return
    for payment_id in queued:
        console.print(f"[yellow]queued release[/yellow] {payment_id}")


@main.group()
def jobs() -> None:
    """Inspect and retry settlement jobs."""


@jobs.command("dead-letter")
@click.pass_context
def jobs_dead_letter(ctx: click.Context) -> None:
    """List dead-lettered jobs."""
    dead = _service(ctx).dead_letters()
    if not dead:
        console.print("[dim]Dead-letter queue is empty.[/dim]")
        return

    table = Table(title="Dead-lettered jobs")
    table.add_column("Job", style="cyan")
    table.add_column("Kind")
    table.add_column("Payment")
    table.add_column("Attempts")
    table.add_column("Last error", style="red", max_width=60)
    for job in dead:
        table.add_row(job.id, job.kind.value, job.payment_id, str(job.attempts), job.last_error or "")
    console.print(table)


@jobs.command("retry")
@click.argument("job_id")
@click.pass_context
def jobs_retry(ctx: click.Context, job_id: str) -> None:
    """Requeue a dead-lettered job."""
    job = _service(ctx).retry_job(job_id)
    console.print(f"[green]Requeued[/green] {job.id} ({job.kind.value} {job.payment_id})")


@main.command()
@click.option("--limit", default=20, help="Number of events to show")
@click.option("--subject", default=None, help="Only events for this request/payment")
@click.pass_context
def events(ctx: click.Context, limit: int, subject: str | None) -> None:
    """Show recent lifecycle events."""
    recent = _service(ctx).events.recent(limit=limit, subject_id=subject)
    if not recent:
        console.print("[dim]No events yet.[/dim]")
        return

    table = Table(title="Lifecycle events")
    table.add_column("#")
    table.add_column("Type", style="cyan")
    table.add_column("Subject")
    table.add_column("Payload", max_width=60)
    table.add_column("At")
    for event in recent:
        payload = ", ".join(f"{k}={v}" for k, v in event.payload.items())
        table.add_row(str(event.id), event.event_type, event.subject_id, payload, event.created_at[11:19])
    console.print(table)
