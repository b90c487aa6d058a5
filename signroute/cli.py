"""Command line interface for managing templates and routing documents."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError

from signroute import (
    ApprovalEngine,
    GraphValidator,
    TemplateService,
    WorkflowInstantiator,
    WorkflowSnapshot,
    WorkflowTemplate,
    get_repository,
    get_transport,
)
from signroute.collaborators import StaticRoleDirectory
from signroute.config import SignrouteConfig, load_config
from signroute.constants import EVENTS_TOPIC
from signroute.exceptions import SignrouteError

app = typer.Typer(help="CLI for signroute approval workflows")

# Command groups
template_app = typer.Typer(help="Commands for managing workflow templates")
workflow_app = typer.Typer(help="Commands for routing documents")
events_app = typer.Typer(help="Commands for watching workflow notifications")

app.add_typer(template_app, name="template")
app.add_typer(workflow_app, name="workflow")
app.add_typer(events_app, name="events")


@app.callback()
def main() -> None:
    """signroute CLI entry point."""
    pass


def _config() -> SignrouteConfig:
    return load_config()


def _validator(config: SignrouteConfig) -> GraphValidator:
    return GraphValidator(config.validation.strictness)


def _engine(config: SignrouteConfig) -> ApprovalEngine:
    return ApprovalEngine(
        get_repository(),
        role_directory=StaticRoleDirectory(config.roles),
        transport=get_transport(config=config),
        config=config.engine,
    )


def _run(coro):
    """Run ``coro`` and turn domain errors into a red message and exit 1."""
    try:
        return asyncio.run(coro)
    except SignrouteError as exc:
        typer.secho(f"{exc.code}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _load_template_file(path: Path) -> WorkflowTemplate:
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        data = yaml.safe_load(path.read_text()) or {}
        return WorkflowTemplate.model_validate(data)
    except (yaml.YAMLError, ValidationError) as exc:
        typer.secho(f"Invalid template file {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_snapshot(snapshot: WorkflowSnapshot) -> None:
    typer.echo(
        f"Workflow {snapshot.workflow_id} (document {snapshot.document_id}): "
        f"{snapshot.status.value}"
    )
    if snapshot.active_step_ids:
        typer.echo(f"Active steps: {', '.join(snapshot.active_step_ids)}")
    for entry in snapshot.history:
        line = f"- L{entry.level} {entry.role} [{entry.step_id}]: {entry.status.value}"
        if entry.at:
            line += f" by {entry.actor_id} at {entry.at.isoformat()}"
        if entry.note:
            line += f" ({entry.note})"
        typer.echo(line)


# ----------------------------------------------------------------------
# Templates


@template_app.command("import")
def template_import(path: Path) -> None:
    """
    Store a template defined in a YAML file.

    The file holds a template document: name, document_type_id, mode, steps
    and connections. Step ids in the file are kept so connections can refer
    to them. The template is validated and stored even when invalid, so it
    can be fixed and re-imported; instantiation re-checks it.

    Example:
        signroute template import ./templates/leave_request.yaml
    """
    template = _load_template_file(path)
    validator = _validator(_config())
    report = validator.validate_template(template)
    stored = _run(TemplateService(get_repository(), validator).save(template))
    typer.echo(f"Imported template {stored.id} ({stored.name}) v{stored.version}")
    if stored.id != template.id:
        typer.echo(f"Template {template.id} is in use; previous version deactivated")
    if not report.is_valid:
        typer.secho("Template has violations:", fg=typer.colors.YELLOW)
        for violation in report.violations:
            typer.echo(f"  - {violation}")


@template_app.command("check")
def template_check(
    path: Path,
    relaxed: bool = typer.Option(
        False, help="Accept several start steps if there is at least one end step"
    ),
) -> None:
    """Validate a template file without storing it."""
    template = _load_template_file(path)
    validator = _validator(_config())
    report = validator.validate_template(template, "relaxed" if relaxed else None)
    _echo_report(report.is_valid, report.violations)


@template_app.command("validate")
def template_validate(template_id: str) -> None:
    """Validate a stored template."""
    config = _config()
    service = TemplateService(get_repository(), _validator(config))
    report = _run(service.validate(template_id))
    _echo_report(report.is_valid, report.violations)


def _echo_report(is_valid: bool, violations: list[str]) -> None:
    if is_valid:
        typer.echo("Template is valid")
        return
    typer.secho("Template is invalid:", fg=typer.colors.RED)
    for violation in violations:
        typer.echo(f"  - {violation}")
    raise typer.Exit(code=1)


@template_app.command("list")
def template_list() -> None:
    """List stored templates with version and activity flag."""
    templates = _run(TemplateService(get_repository()).list())
    if not templates:
        typer.echo("No templates found")
        return
    for t in templates:
        state = "active" if t.is_active else "inactive"
        typer.echo(f"{t.id}\t{t.name}\tv{t.version}\t{state}\t{len(t.steps)} steps")


@template_app.command("deactivate")
def template_deactivate(template_id: str) -> None:
    """Prevent new workflows from using a template."""
    _run(TemplateService(get_repository()).deactivate(template_id))
    typer.echo(f"Template {template_id} deactivated")


# ----------------------------------------------------------------------
# Workflows


@workflow_app.command("create")
def workflow_create(
    document_id: str,
    template_id: str,
    initiator: Optional[str] = typer.Option(None, help="User starting the workflow"),
) -> None:
    """
    Start routing a document through a template.

    Example:
        signroute workflow create doc-42 3f1c...
        # Output: Created workflow 9a2b... for document doc-42
    """
    config = _config()
    instantiator = WorkflowInstantiator(
        get_repository(), _validator(config), transport=get_transport(config=config)
    )
    workflow = _run(instantiator.create(document_id, template_id, initiator))
    typer.echo(f"Created workflow {workflow.id} for document {document_id}")


@workflow_app.command("approve")
def workflow_approve(
    workflow_id: str,
    user_id: str,
    evidence_ref: str,
    note: Optional[str] = typer.Option(None, help="Note stored with the approval"),
    step: Optional[str] = typer.Option(None, help="Step to approve when several are active"),
) -> None:
    """Approve the active step of a workflow."""
    snapshot = _run(
        _engine(_config()).approve_step(
            workflow_id, user_id, evidence_ref, note=note, step_id=step
        )
    )
    _echo_snapshot(snapshot)


@workflow_app.command("reject")
def workflow_reject(
    workflow_id: str,
    user_id: str,
    reason: str,
    step: Optional[str] = typer.Option(None, help="Step to reject when several are active"),
) -> None:
    """Reject the active step of a workflow."""
    snapshot = _run(_engine(_config()).reject_step(workflow_id, user_id, reason, step_id=step))
    _echo_snapshot(snapshot)


@workflow_app.command("status")
def workflow_status(document_id: str) -> None:
    """Show the current workflow and approval history of a document."""
    snapshot = _run(_engine(_config()).get_status(document_id))
    _echo_snapshot(snapshot)


@workflow_app.command("pending")
def workflow_pending(user_id: str) -> None:
    """List workflows waiting for a signature from ``user_id``."""
    snapshots = _run(_engine(_config()).list_pending_for_user(user_id))
    if not snapshots:
        typer.echo("Nothing pending")
        return
    for snapshot in snapshots:
        typer.echo(
            f"{snapshot.workflow_id}\t{snapshot.document_id}\t"
            f"{', '.join(snapshot.active_step_ids)}"
        )


@workflow_app.command("list")
def workflow_list(
    active: bool = typer.Option(False, help="Only show workflows still in progress"),
) -> None:
    """List workflows with their current status."""
    records = _run(get_repository().list_workflows(active_only=active))
    if not records:
        typer.echo("No workflows found")
        return
    for record in records:
        wf = record.workflow
        typer.echo(f"{wf.id}\t{wf.document_id}\t{wf.status.value}")


@events_app.command("tail")
def events_tail(
    lifespan: float = typer.Option(5.0, help="Seconds to listen before exiting"),
    workflow: Optional[str] = typer.Option(None, help="Only show events of this workflow"),
) -> None:
    """Print workflow notifications as they arrive on the configured transport."""
    transport = get_transport(config=_config())

    async def _tail() -> int:
        seen = 0
        try:
            async for raw, event in transport.subscribe(EVENTS_TOPIC, lifespan):
                await transport.ack(raw)
                if workflow and event.workflow_id != workflow:
                    continue
                seen += 1
                typer.echo(
                    f"{event.timestamp.isoformat()}\t{event.event_type}\t{event.workflow_id}\t"
                    f"{event.step_id or '-'}\t{event.actor_id or '-'}\t{event.status.value}"
                )
        finally:
            await transport.disconnect()
        return seen

    if not _run(_tail()):
        typer.echo("No events received")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
