"""signflow CLI: operate contracts from the command line.

Usage:
    signflow create "Service agreement" -s "Ana Lima <ana@example.com>" --pdf nda.pdf
    signflow send <contract-id>
    signflow link <contract-id> [--email ana@example.com]
    signflow list [--status pending]
    signflow evidence <contract-id> -o signed.pdf
    signflow serve [--port 8400]
"""

import logging
import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import SignflowConfig
from .errors import SigningError
from .evidence import EvidenceGenerator
from .lifecycle import ContractLifecycleEngine
from .models import AuditAction, AuditEntry, ContractStatus, Signatory
from .resolver import build_signing_link
from .store import ContractStore
from .validators import mask_cpf, validate_pdf_upload

console = Console()
engine = ContractLifecycleEngine()

_SIGNATORY_RE = re.compile(r"^\s*(?P<name>.*?)\s*<(?P<email>[^>]+)>\s*$")

STATUS_COLORS = {
    ContractStatus.DRAFT: "dim",
    ContractStatus.SENT: "yellow",
    ContractStatus.PENDING: "blue",
    ContractStatus.SIGNED: "green",
    ContractStatus.EXPIRED: "red",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _fail(message: str) -> None:
    console.print(f"[red]{message}[/]")
    sys.exit(1)


def parse_signatory(value: str) -> Signatory:
    """Parse ``"Name <email>"`` (or a bare e-mail) into a Signatory."""
    match = _SIGNATORY_RE.match(value)
    if match:
        email = match.group("email").strip()
        name = match.group("name") or email.split("@")[0]
    else:
        email = value.strip()
        name = email.split("@")[0]
    return Signatory(name=name, email=email)


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(),
    default=None,
    help="signflow data directory (default: ~/.signflow)",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log to stderr")
@click.pass_context
def main(ctx: click.Context, data_dir: Optional[str], verbose: bool) -> None:
    """signflow: contract signing with drawn signatures and evidence PDFs."""
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")
    ctx.ensure_object(dict)
    store = ContractStore(Path(data_dir) if data_dir else None)
    ctx.obj["store"] = store
    ctx.obj["config"] = SignflowConfig.load(store.base)


# ---------------------------------------------------------------------------
# Create / list / show
# ---------------------------------------------------------------------------

@main.command()
@click.argument("title")
@click.option("--signatory", "-s", "signatories", multiple=True, help='"Name <email>" (repeatable)')
@click.option("--client", "client_name", default=None, help="Client display name")
@click.option("--client-id", default=None, help="CRM client id")
@click.option("--expires-in", "expires_in", type=int, default=None, help="Days until the signing deadline")
@click.option("--pdf", type=click.Path(exists=True, dir_okay=False), default=None, help="Source PDF")
@click.pass_context
def create(
    ctx: click.Context,
    title: str,
    signatories: tuple[str, ...],
    client_name: Optional[str],
    client_id: Optional[str],
    expires_in: Optional[int],
    pdf: Optional[str],
) -> None:
    """Create a draft contract."""
    store: ContractStore = ctx.obj["store"]
    config: SignflowConfig = ctx.obj["config"]
    now = _now()

    pdf_data = None
    if pdf:
        pdf_data = Path(pdf).read_bytes()
        try:
            validate_pdf_upload(len(pdf_data), "application/pdf", config.max_source_pdf_bytes)
        except SigningError as exc:
            _fail(str(exc))

    try:
        contract = engine.create(
            title=title,
            signatories=[parse_signatory(s) for s in signatories],
            now=now,
            client_id=client_id,
            client_name=client_name,
            expires_at=now + timedelta(days=expires_in) if expires_in else None,
        )
    except SigningError as exc:
        _fail(str(exc))

    if pdf_data is not None:
        contract.file_url = f"/api/contracts/{contract.id}/source"
    store.save_contract(contract)
    if pdf_data is not None:
        store.save_source(contract.id, pdf_data)

    console.print(
        Panel(
            f"[bold green]Contract created[/]\n\n"
            f"  Title:       {contract.title}\n"
            f"  ID:          {contract.id}\n"
            f"  Signatories: {len(contract.signatories)}\n"
            f"  Expires:     {contract.expires_at.strftime('%Y-%m-%d %H:%M') if contract.expires_at else 'never'}\n"
            f"  Status:      {contract.status.value}",
            title="signflow",
            border_style="green",
        )
    )


@main.command("list")
@click.option("--status", default=None, help="Filter by stored status")
@click.pass_context
def list_contracts(ctx: click.Context, status: Optional[str]) -> None:
    """List all contracts."""
    store: ContractStore = ctx.obj["store"]
    try:
        status_filter = ContractStatus(status) if status else None
    except ValueError:
        _fail(f"Unknown status: {status}")
    contracts = store.list_contracts(status=status_filter)

    if not contracts:
        console.print("[dim]No contracts found.[/]")
        return

    now = _now()
    table = Table(title="signflow contracts")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Title", style="cyan")
    table.add_column("Client")
    table.add_column("Status", justify="center")
    table.add_column("Signed", justify="right")
    table.add_column("Created")

    for c in contracts:
        effective = engine.effective_status(c, now)
        color = STATUS_COLORS.get(effective, "white")
        table.add_row(
            c.id[:12],
            c.title,
            c.client_name or "-",
            f"[{color}]{effective.value}[/]",
            f"{c.signed_count}/{len(c.signatories)}",
            c.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@main.command()
@click.argument("contract_id")
@click.pass_context
def show(ctx: click.Context, contract_id: str) -> None:
    """Show a contract and its signatories."""
    store: ContractStore = ctx.obj["store"]
    try:
        contract = store.load_contract(contract_id)
    except SigningError as exc:
        _fail(str(exc))

    effective = engine.effective_status(contract, _now())
    color = STATUS_COLORS.get(effective, "white")
    console.print(
        Panel(
            f"  Title:   {contract.title}\n"
            f"  ID:      {contract.id}\n"
            f"  Client:  {contract.client_name or '-'}\n"
            f"  Status:  [{color}]{effective.value}[/]\n"
            f"  Sent:    {contract.sent_at.strftime('%Y-%m-%d %H:%M') if contract.sent_at else '-'}\n"
            f"  Expires: {contract.expires_at.strftime('%Y-%m-%d %H:%M') if contract.expires_at else 'never'}\n"
            f"  Version: {contract.version}",
            title=contract.title,
            border_style=color,
        )
    )

    table = Table(title="Signatories")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("E-mail")
    table.add_column("Signed", justify="center")
    table.add_column("At")
    table.add_column("CPF", style="dim")
    table.add_column("Location", style="dim")

    for i, s in enumerate(contract.signatories, start=1):
        where = "-"
        if s.location is not None:
            if s.location.address:
                where = s.location.address
            elif s.location.has_coordinates:
                where = f"{s.location.latitude:.4f}, {s.location.longitude:.4f}"
        table.add_row(
            str(i),
            s.name,
            s.email,
            "[green]yes[/]" if s.signed else "[dim]no[/]",
            s.signed_at.strftime("%Y-%m-%d %H:%M") if s.signed_at else "-",
            mask_cpf(s.cpf) if s.cpf else "-",
            where,
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

@main.command()
@click.argument("contract_id")
@click.pass_context
def send(ctx: click.Context, contract_id: str) -> None:
    """Mark a contract as sent and print its signing links."""
    store: ContractStore = ctx.obj["store"]
    config: SignflowConfig = ctx.obj["config"]
    now = _now()
    try:
        contract = store.update_contract(contract_id, lambda c: engine.send(c, now))
    except SigningError as exc:
        _fail(str(exc))

    console.print(f"[green]Sent[/] {contract.title} ({contract.id[:8]})")
    for s in contract.signatories:
        url = build_signing_link(config.public_base_url, config.signing_route, contract.id, s.email)
        console.print(f"  {s.name}: [cyan]{url}[/]")


@main.command()
@click.argument("contract_id")
@click.pass_context
def duplicate(ctx: click.Context, contract_id: str) -> None:
    """Copy a contract into a new draft."""
    store: ContractStore = ctx.obj["store"]
    try:
        source = store.load_contract(contract_id)
    except SigningError as exc:
        _fail(str(exc))

    copy = engine.duplicate(source, _now())
    store.save_contract(copy)
    pdf = store.get_source(contract_id)
    if pdf is not None:
        store.save_source(copy.id, pdf)
    console.print(f"[green]Duplicated[/] as {copy.title} ({copy.id})")


@main.command()
@click.argument("contract_id")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation")
@click.pass_context
def delete(ctx: click.Context, contract_id: str, yes: bool) -> None:
    """Delete a contract and its files. Irreversible."""
    store: ContractStore = ctx.obj["store"]
    if not yes:
        click.confirm(f"Delete contract {contract_id}?", abort=True)
    if not store.delete_contract(contract_id):
        _fail(f"Contract not found: {contract_id}")
    store.append_audit(
        AuditEntry(contract_id=contract_id, action=AuditAction.DELETED, timestamp=_now())
    )
    console.print(f"[green]Deleted[/] {contract_id}")


# ---------------------------------------------------------------------------
# Links, audit, evidence
# ---------------------------------------------------------------------------

@main.command()
@click.argument("contract_id")
@click.option("--email", default=None, help="Scope the link to one signatory")
@click.pass_context
def link(ctx: click.Context, contract_id: str, email: Optional[str]) -> None:
    """Print the signing link for a contract."""
    store: ContractStore = ctx.obj["store"]
    config: SignflowConfig = ctx.obj["config"]
    try:
        contract = store.load_contract(contract_id)
    except SigningError as exc:
        _fail(str(exc))

    if email:
        signatory = contract.find_signatory(email)
        if signatory is None:
            _fail(f"{email} is not a signatory on this contract")
        email = signatory.email
    click.echo(build_signing_link(config.public_base_url, config.signing_route, contract.id, email))


@main.command()
@click.argument("contract_id")
@click.pass_context
def audit(ctx: click.Context, contract_id: str) -> None:
    """Show the audit trail for a contract."""
    store: ContractStore = ctx.obj["store"]
    entries = store.get_audit_trail(contract_id)

    if not entries:
        console.print("[dim]No audit entries found.[/]")
        return

    table = Table(title="Audit Trail")
    table.add_column("Time", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("Actor")
    table.add_column("Details")

    for e in entries:
        table.add_row(
            e.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            e.action.value,
            e.actor_name or e.actor_email or "-",
            e.details,
        )

    console.print(table)


@main.command()
@click.argument("contract_id")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help="Output PDF path")
@click.pass_context
def evidence(ctx: click.Context, contract_id: str, output: Optional[str]) -> None:
    """Write the evidence PDF of a fully signed contract."""
    store: ContractStore = ctx.obj["store"]
    try:
        contract = store.load_contract(contract_id)
        bundle = EvidenceGenerator(store).generate(contract, now=_now())
    except SigningError as exc:
        _fail(str(exc))

    out_path = Path(output) if output else Path(f"contract-{contract.id[:8]}-signed.pdf")
    out_path.write_bytes(bundle.pdf)
    console.print(
        Panel(
            f"[bold green]Evidence written[/]\n\n"
            f"  File:   {out_path}\n"
            f"  Code:   {bundle.verification_code}\n"
            f"  Digest: {bundle.digest[:32]}...",
            title="signflow",
            border_style="green",
        )
    )


# ---------------------------------------------------------------------------
# Serve
# ---------------------------------------------------------------------------

@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8400, help="Port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Start the signflow API server."""
    import uvicorn

    from . import api

    store: ContractStore = ctx.obj["store"]
    api.configure(store.base)
    console.print(f"[bold]signflow API[/] listening on [cyan]http://{host}:{port}[/]")
    uvicorn.run(api.app, host=host, port=port, log_level="info")
