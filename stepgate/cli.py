"""Command line interface for stepgate templates and checklists."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
import yaml

from stepgate.checklist import ActionOutcome, ChecklistEngine
from stepgate.contracts import Checklist, Template
from stepgate.errors import ConflictError, StepgateError
from stepgate.payload import TemplateDeserializer
from stepgate.stores import get_execution_store, get_template_store
from stepgate.transitions import generate_sequential
from stepgate.validation import validate_template

app = typer.Typer(help="CLI for stepgate workflow templates")

# Command groups
template_app = typer.Typer(help="Commands for managing workflow templates")
checklist_app = typer.Typer(help="Commands for inspecting instance checklists")
step_app = typer.Typer(help="Commands for acting on instance steps")

app.add_typer(template_app, name="template")
app.add_typer(checklist_app, name="checklist")
app.add_typer(step_app, name="step")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """stepgate CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_template_file(path: Path) -> Template:
    if not path.exists():
        typer.secho(f"File not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:
        typer.secho(f"Could not parse {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho(f"{path} does not contain a template", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return TemplateDeserializer.template(data)


def _fail(exc: StepgateError) -> None:
    typer.secho(f"Error: {exc}", fg=typer.colors.RED)
    if isinstance(exc, ConflictError):
        for message in exc.blocker_messages:
            typer.echo(f"  blocked by: {message}")
    raise typer.Exit(code=1)


def _print_checklist(checklist: Checklist) -> None:
    typer.echo(
        f"Instance {checklist.instance_id} ({checklist.progress_mode.value}): "
        f"{checklist.progress}% complete"
    )
    for item in checklist.items:
        flags = []
        if item.is_gate:
            flags.append("gate")
        if item.is_automated:
            flags.append("automated")
        line = f"{item.sequence_order}. {item.name or item.key} [{item.status.value}]"
        if flags:
            line += f" ({', '.join(flags)})"
        if item.blocked_by:
            line += f" blocked by {', '.join(str(b) for b in item.blocked_by)}"
        typer.echo(line)


@template_app.command("validate")
def template_validate(path: Path) -> None:
    """
    Validate a template definition file.

    Accepts the admin API payload shape in YAML or JSON and runs the pre-save
    checks on it.

    Example:
        stepgate template validate ./templates/course_review.yaml
        # Output: Template "Course review" is valid (4 steps)
    """
    template = _load_template_file(path)
    problem = validate_template(template)
    if problem is not None:
        typer.secho(problem, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f'Template "{template.name}" is valid ({len(template.steps)} steps)')


@template_app.command("sequence")
def template_sequence(path: Path) -> None:
    """Print the template's transitions with default sequential edges added."""
    template = _load_template_file(path)
    names = {s.identifier: s.key for s in template.steps}
    for transition in generate_sequential(template.steps, template.transitions):
        typer.echo(
            f"{names.get(transition.from_step, transition.from_step)} -> "
            f"{names.get(transition.to_step, transition.to_step)}\t{transition.type}"
        )


@template_app.command("list")
def template_list(
    include_archived: bool = typer.Option(False, help="Include archived templates"),
) -> None:
    """List templates from the configured store."""
    store = get_template_store()
    filters = None if include_archived else {"active": True}
    try:
        templates = asyncio.run(store.list_templates(filters))
    except StepgateError as exc:
        _fail(exc)
    if not templates:
        typer.echo("No templates found")
        return
    for template in templates:
        mode = template.progress_mode.value if template.progress_mode else "-"
        typer.echo(
            f"{template.id}\t{template.name}\t{template.workflow_type.value}\t{mode}"
        )


@template_app.command("show")
def template_show(template_id: int) -> None:
    """Show a template and its steps."""
    store = get_template_store()
    try:
        template = asyncio.run(store.get_template(template_id))
    except StepgateError as exc:
        _fail(exc)
    if template is None:
        typer.echo("Template not found")
        raise typer.Exit(code=1)
    mode = template.progress_mode.value if template.progress_mode else "-"
    typer.echo(f"Template {template.id}: {template.name} ({mode})")
    keys = {s.identifier: s.key for s in template.steps}
    for step in template.steps:
        line = f"{step.sequence_order}. {step.key} - {step.name}"
        if step.is_gate:
            line += " [gate]"
        if step.depends_on:
            line += f" after {', '.join(keys.get(d, str(d)) for d in step.depends_on)}"
        typer.echo(line)


@checklist_app.command("show")
def checklist_show(instance_id: int) -> None:
    """Show the derived checklist of a workflow instance."""
    engine = ChecklistEngine(get_execution_store())
    try:
        checklist = asyncio.run(engine.load(instance_id))
    except StepgateError as exc:
        _fail(exc)
    _print_checklist(checklist)


@step_app.command("complete")
def step_complete(
    instance_id: int,
    step_id: int,
    reason: str = typer.Option(None, help="Optional completion note"),
) -> None:
    """Complete a manual step of a workflow instance."""
    engine = ChecklistEngine(get_execution_store())

    async def run():
        await engine.load(instance_id)
        return await engine.complete(instance_id, step_id, reason=reason)

    try:
        result = asyncio.run(run())
    except StepgateError as exc:
        _fail(exc)
    if result.outcome is ActionOutcome.ALREADY_COMPLETED:
        typer.echo(f"Step {step_id} is already completed")
    else:
        typer.echo(f"Step {step_id} completed")
    if result.checklist is not None:
        _print_checklist(result.checklist)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
