"""CLI for the provisioner: create, inspect, edit and delete compound assistants."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click

from provisioner.config import CONFIG_FILENAME, ConfigError, ProvisionerConfig, load_config
from provisioner.identity import derive_child_names, derive_slug
from provisioner.ledger import JsonFileLedgerStore, Ledger, LedgerCorruptError
from provisioner.logging import configure_logging
from provisioner.models import (
    AssistantSpec,
    AssistantUpdate,
    CompoundAssistant,
    UploadFile,
    Visibility,
)
from provisioner.orchestrator import (
    AssistantNotFoundError,
    ProvisioningError,
    ProvisioningOrchestrator,
)
from provisioner.resource_api import HttpResourceAPI, ResourceAPI

T = TypeVar("T")

_VISIBILITY_CHOICE = click.Choice([v.value for v in Visibility])


def _make_api(config: ProvisionerConfig) -> ResourceAPI:
    return HttpResourceAPI(
        base_url=config.api.base_url,
        tenant=config.api.tenant,
        api_key=config.api.api_key,
        timeout_s=config.api.timeout_s,
        max_retries=config.api.max_retries,
    )


def _load(ctx: click.Context) -> ProvisionerConfig:
    config_path: Path = ctx.obj["config_path"]
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    configure_logging(config.logging.level, config.logging.format, tenant=config.api.tenant)
    return config


def _run(
    ctx: click.Context,
    action: Callable[[ProvisioningOrchestrator], Awaitable[T]],
) -> T:
    """Build the orchestrator from config, run *action*, and map errors to exit 1."""
    config = _load(ctx)

    async def _main() -> T:
        api = _make_api(config)
        try:
            orchestrator = ProvisioningOrchestrator(
                api,
                Ledger(JsonFileLedgerStore(config.ledger_path)),
                embedding_model=config.api.embedding_model,
            )
            return await action(orchestrator)
        finally:
            await api.aclose()

    try:
        return asyncio.run(_main())
    except (ProvisioningError, AssistantNotFoundError, LedgerCorruptError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


def _echo_assistant(entity: CompoundAssistant) -> None:
    click.echo(json.dumps(entity.to_record(), ensure_ascii=False, indent=2))


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=Path(CONFIG_FILENAME),
    show_default=True,
    help="Path to provisioner.toml (or the directory holding it)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path) -> None:
    """Provision compound assistants on the Resource API."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.argument("display_name")
@click.option("--prompt", "system_prompt", required=True, help="System prompt text")
@click.option("--description", default="", help="Short description")
@click.option("--language", default="de", show_default=True, help="Language tag")
@click.option("--icon", default=None, help="Icon shown in the catalogue")
@click.option("--color", default=None, help="Card color")
@click.option("--visibility", type=_VISIBILITY_CHOICE, default=Visibility.ALL.value)
@click.option(
    "--file",
    "files",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Document to upload after creation (repeatable)",
)
@click.pass_context
def create(
    ctx: click.Context,
    display_name: str,
    system_prompt: str,
    description: str,
    language: str,
    icon: str | None,
    color: str | None,
    visibility: str,
    files: tuple[Path, ...],
) -> None:
    """Create a compound assistant named DISPLAY_NAME."""
    extra = {k: v for k, v in {"icon": icon, "color": color}.items() if v is not None}
    try:
        spec = AssistantSpec(
            display_name=display_name,
            description=description,
            system_prompt=system_prompt,
            language=language,
            visibility=Visibility(visibility),
            files=[UploadFile.from_path(path) for path in files],
            **extra,
        )
    except ValueError as exc:
        click.echo(f"Invalid input: {exc}", err=True)
        sys.exit(1)

    entity = _run(ctx, lambda orchestrator: orchestrator.create(spec))
    click.echo(f"Created assistant {entity.slug}")
    _echo_assistant(entity)


@cli.command("list")
@click.pass_context
def list_cmd(ctx: click.Context) -> None:
    """List assistants recorded in the ledger."""
    config = _load(ctx)
    try:
        assistants = Ledger(JsonFileLedgerStore(config.ledger_path)).list()
    except LedgerCorruptError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    if not assistants:
        click.echo("No assistants recorded.")
        return

    click.echo(f"{'Slug':<30} {'Documents':<10} {'Visibility':<11} {'Display name'}")
    click.echo("-" * 80)
    for entity in sorted(assistants, key=lambda a: a.slug):
        click.echo(
            f"{entity.slug:<30} {entity.documents_count:<10} "
            f"{entity.visibility.value:<11} {entity.display_name}"
        )


@cli.command()
@click.argument("slug")
@click.pass_context
def show(ctx: click.Context, slug: str) -> None:
    """Show the ledger record for SLUG."""
    config = _load(ctx)
    try:
        entity = Ledger(JsonFileLedgerStore(config.ledger_path)).get(slug)
    except LedgerCorruptError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    if entity is None:
        click.echo(f"Error: no assistant named {slug!r}", err=True)
        sys.exit(1)
    _echo_assistant(entity)


@cli.command()
@click.argument("slug")
@click.option("--display-name", default=None)
@click.option("--description", default=None)
@click.option("--prompt", "system_prompt", default=None, help="New system prompt")
@click.option("--icon", default=None)
@click.option("--color", default=None)
@click.option("--visibility", type=_VISIBILITY_CHOICE, default=None)
@click.pass_context
def edit(
    ctx: click.Context,
    slug: str,
    display_name: str | None,
    description: str | None,
    system_prompt: str | None,
    icon: str | None,
    color: str | None,
    visibility: str | None,
) -> None:
    """Edit metadata (and optionally the system prompt) of SLUG."""
    try:
        changes = AssistantUpdate(
            display_name=display_name,
            description=description,
            system_prompt=system_prompt,
            icon=icon,
            color=color,
            visibility=Visibility(visibility) if visibility else None,
        )
    except ValueError as exc:
        click.echo(f"Invalid input: {exc}", err=True)
        sys.exit(1)

    entity = _run(ctx, lambda orchestrator: orchestrator.update(slug, changes))
    click.echo(f"Updated assistant {entity.slug}")


@cli.command()
@click.argument("slug")
@click.pass_context
def delete(ctx: click.Context, slug: str) -> None:
    """Delete SLUG and its remote resources."""
    _run(ctx, lambda orchestrator: orchestrator.delete_by_slug(slug))
    click.echo(f"Deleted assistant {slug}")


@cli.command()
@click.argument("slug")
@click.argument(
    "paths",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.pass_context
def upload(ctx: click.Context, slug: str, paths: tuple[Path, ...]) -> None:
    """Upload documents into the pool of SLUG."""
    files = [UploadFile.from_path(path) for path in paths]
    entity = _run(ctx, lambda orchestrator: orchestrator.upload_documents(slug, files))
    click.echo(f"Uploaded {len(files)} file(s); {entity.slug} now has {entity.documents_count}")


@cli.command()
@click.argument("slug")
@click.pass_context
def reindex(ctx: click.Context, slug: str) -> None:
    """Trigger a rebuild of the search index of SLUG."""
    _run(ctx, lambda orchestrator: orchestrator.reindex(slug))
    click.echo(f"Reindex triggered for {slug}")


@cli.command()
@click.argument("slug")
@click.pass_context
def status(ctx: click.Context, slug: str) -> None:
    """Show search index status and health for SLUG."""
    index = _run(ctx, lambda orchestrator: orchestrator.index_status(slug))
    click.echo(f"{index.name}: status={index.status or 'unknown'} health={index.health or 'unknown'}")


@cli.command()
@click.argument("display_name")
def slug(display_name: str) -> None:
    """Print the slug and remote resource names derived from DISPLAY_NAME."""
    value = derive_slug(display_name)
    if not value:
        click.echo("Error: display name yields an empty identifier", err=True)
        sys.exit(1)
    names = derive_child_names(value)
    click.echo(value)
    for label, name in names._asdict().items():
        click.echo(f"  {label:<9} {name}")
