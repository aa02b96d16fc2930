"""
CLI interface for tether.

Usage:
    tether create places --field title=Home --field lat=45.0 --field lng=9.0
    tether ingest-images ~/Pictures/trip/
    tether get places <id>
"""

import json
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import typer
from typing_extensions import Annotated

from .api import EntityDetails, IngestResult, ObjectService, RawFile
from .errors import TetherError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import Entity, KeyValue

# Maximum number of files to ingest from a directory at once
MAX_DIR_FILES = 1000


# Configure quiet mode by default (suppress verbose library output)
# Set TETHER_VERBOSE=1 to enable debug mode via environment
if os.environ.get("TETHER_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


app = typer.Typer(
    name="tether",
    help="Linked notes, places, people and photos.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="TETHER_STORE_PATH",
        help="Path to the store directory (default: ~/.tether/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Linked notes, places, people and photos."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

LimitOption = Annotated[
    int,
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return"
    )
]

OffsetOption = Annotated[
    int,
    typer.Option(
        "--offset",
        help="Number of results to skip"
    )
]

LinkOption = Annotated[
    Optional[list[str]],
    typer.Option(
        "--link", "-l",
        help="Link to an existing entity, as table:id (repeatable)"
    )
]

KindArgument = Annotated[str, typer.Argument(help="Entity kind, e.g. places, notes, todos")]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _open_service() -> ObjectService:
    """Open the store, reporting startup failures as a clean error."""
    try:
        return ObjectService(_store_override)
    except (TetherError, OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@contextmanager
def _service() -> Iterator[ObjectService]:
    """Open the store for one command; TetherErrors exit with status 1."""
    svc = _open_service()
    try:
        yield svc
    except TetherError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    finally:
        svc.close()


def _parse_pairs(values: Optional[list[str]], option: str) -> list[tuple[str, str]]:
    """Parse repeated key=value options."""
    pairs = []
    for item in values or []:
        if "=" not in item:
            typer.echo(f"Error: Invalid {option} format '{item}'. Use key=value", err=True)
            raise typer.Exit(1)
        k, v = item.split("=", 1)
        pairs.append((k.strip(), v))
    return pairs


def _collect_paths(paths: list[Path]) -> list[Path]:
    """Expand directories to their regular, non-hidden files."""
    files = []
    for path in paths:
        path = path.expanduser()
        if path.is_dir():
            entries = sorted(
                p for p in path.iterdir()
                if p.is_file() and not p.is_symlink() and not p.name.startswith(".")
            )
            if len(entries) > MAX_DIR_FILES:
                typer.echo(
                    f"Error: {path} has {len(entries)} files (max {MAX_DIR_FILES})", err=True
                )
                raise typer.Exit(1)
            files.extend(entries)
        elif path.is_file():
            files.append(path)
        else:
            typer.echo(f"Error: No such file: {path}", err=True)
            raise typer.Exit(1)
    return files


def _read_files(paths: list[Path]) -> list[RawFile]:
    raw_files = []
    for path in _collect_paths(paths):
        try:
            raw_files.append(RawFile.from_path(path))
        except OSError as e:
            typer.echo(f"Error: Cannot read {path}: {e}", err=True)
            raise typer.Exit(1)
    return raw_files


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False))


def _format_entity_line(entity: Entity) -> str:
    extras = []
    for name, value in entity.fields.items():
        if name == "content":
            text = str(value or "").replace("\n", " ")
            value = text[:60] + ("..." if len(text) > 60 else "")
        extras.append(f"{name}={value}")
    suffix = f"  ({', '.join(extras)})" if extras else ""
    return f"{entity.ref.token}  {entity.title}{suffix}"


def _echo_entities(entities: list[Entity]) -> None:
    if _get_json_output():
        _echo_json([e.to_dict() for e in entities])
        return
    if not entities:
        typer.echo("No results.")
        return
    for entity in entities:
        typer.echo(_format_entity_line(entity))


def _format_kv(kv: KeyValue) -> str:
    return f"[{kv.id}] {kv.key}: {kv.value}"


def _echo_kv(kv: KeyValue) -> None:
    if _get_json_output():
        _echo_json(kv.to_dict())
    else:
        typer.echo(_format_kv(kv))


def _echo_details(details: EntityDetails) -> None:
    if _get_json_output():
        _echo_json(details.to_dict())
        return
    entity = details.entity
    typer.echo(f"{entity.ref.token}")
    typer.echo(f"  title: {entity.title}")
    typer.echo(f"  created: {entity.created_at}")
    for name, value in entity.fields.items():
        typer.echo(f"  {name}: {value}")
    if details.key_values:
        typer.echo("key-values:")
        for kv in details.key_values:
            typer.echo(f"  {_format_kv(kv)}")
    if details.related:
        typer.echo("related:")
        for summary in details.related:
            typer.echo(f"  {summary['kind']}:{summary['id']}  {summary['title']}")


def _echo_ingest(result: IngestResult) -> None:
    if _get_json_output():
        _echo_json({
            "created": [e.to_dict() for e in result.created],
            "places": [e.to_dict() for e in result.places],
            "failed": result.failed,
        })
    else:
        for entity in result.created:
            typer.echo(_format_entity_line(entity))
        for place in result.places:
            typer.echo(f"new place: {_format_entity_line(place)}")
    for name in result.failed:
        typer.echo(f"Skipped: {name}", err=True)
    if result.failed and not result.created:
        raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def init():
    """Create the store directory, config and database if missing."""
    with _service() as svc:
        typer.echo(f"Store ready at {svc.store_path}")


@app.command()
def create(
    kind: KindArgument,
    field: Annotated[Optional[list[str]], typer.Option(
        "--field", "-f",
        help="Field as key=value, e.g. title=Home (repeatable)"
    )] = None,
    kv: Annotated[Optional[list[str]], typer.Option(
        "--kv",
        help="Key-value attribute as key=value (repeatable)"
    )] = None,
    link: LinkOption = None,
):
    """
    Create an entity.

    \b
    Examples:
        tether create people -f title="Ada"
        tether create todos -f title="Buy milk" --link people:<id>
        tether create custom-objects -f title=Oak -f object_type=Tree -f mood=3
    """
    fields = dict(_parse_pairs(field, "--field"))
    key_values = _parse_pairs(kv, "--kv")
    with _service() as svc:
        entity = svc.create_generic(kind, fields, key_values, link or [])
        if _get_json_output():
            _echo_json(entity.to_dict())
        else:
            typer.echo(_format_entity_line(entity))


@app.command()
def get(
    kind: KindArgument,
    id: Annotated[str, typer.Argument(help="Entity id")],
    depth: Annotated[Optional[int], typer.Option(
        "--depth",
        min=1,
        help="Link hops to follow for related items (default from config)"
    )] = None,
):
    """Show an entity with its key-values and related items."""
    with _service() as svc:
        _echo_details(svc.fetch_with_related(kind, id, depth))


@app.command("list")
def list_entities(
    kind: KindArgument,
    type: Annotated[Optional[list[str]], typer.Option(
        "--type", "-t",
        help="Filter custom objects by type (repeatable)"
    )] = None,
    limit: LimitOption = 20,
    offset: OffsetOption = 0,
):
    """List entities of one kind."""
    with _service() as svc:
        _echo_entities(svc.list(kind, limit=limit, offset=offset, types=type))


@app.command()
def recent(
    limit: LimitOption = 20,
    offset: OffsetOption = 0,
):
    """List entities of every kind, open todos first."""
    with _service() as svc:
        _echo_entities(svc.recent(limit=limit, offset=offset))


@app.command()
def search(
    term: Annotated[str, typer.Argument(help="Title substring (at least 3 characters)")],
    limit: LimitOption = 25,
):
    """Find entities by title."""
    with _service() as svc:
        _echo_entities(svc.search(term, limit=limit))


@app.command()
def update(
    kind: KindArgument,
    id: Annotated[str, typer.Argument(help="Entity id")],
    field: Annotated[str, typer.Argument(help="Field to change: title, content (notes), status (todos)")],
    value: Annotated[str, typer.Argument(help="New value")],
):
    """Change one field of an entity."""
    with _service() as svc:
        stored = svc.update_field(kind, id, field, value)
        entity = svc.get(kind, id)
        if _get_json_output():
            _echo_json(entity.to_dict())
        else:
            typer.echo(f"{entity.ref.token} {field} = {stored}")


@app.command()
def delete(
    kind: KindArgument,
    id: Annotated[str, typer.Argument(help="Entity id")],
):
    """Delete an entity with its key-values, links and stored file."""
    with _service() as svc:
        entity = svc.get(kind, id)
        svc.delete_entity(entity.kind, entity.id)
        typer.echo(f"Deleted {entity.ref.token}")


@app.command("kv-add")
def kv_add(
    kind: KindArgument,
    id: Annotated[str, typer.Argument(help="Entity id")],
    key: Annotated[str, typer.Argument(help="Attribute key")],
    value: Annotated[str, typer.Argument(help="Attribute value")],
):
    """Attach a key-value attribute to an entity."""
    with _service() as svc:
        _echo_kv(svc.add_kv(kind, id, key, value))


@app.command("kv-update")
def kv_update(
    kv_id: Annotated[int, typer.Argument(help="Key-value id")],
    key: Annotated[str, typer.Argument(help="Attribute key")],
    value: Annotated[str, typer.Argument(help="Attribute value")],
):
    """Replace a key-value attribute."""
    with _service() as svc:
        _echo_kv(svc.update_kv(kv_id, key, value))


@app.command("kv-delete")
def kv_delete(
    kv_id: Annotated[int, typer.Argument(help="Key-value id")],
):
    """Delete a key-value attribute."""
    with _service() as svc:
        svc.delete_kv(kv_id)
        typer.echo(f"Deleted key-value {kv_id}")


@app.command()
def link(
    a: Annotated[str, typer.Argument(help="First entity as table:id")],
    b: Annotated[str, typer.Argument(help="Second entity as table:id")],
):
    """Link two entities. Links are undirected."""
    with _service() as svc:
        added = svc.link(a, b)
        typer.echo(f"Linked {a} <-> {b}" if added else f"Already linked: {a} <-> {b}")


@app.command()
def unlink(
    a: Annotated[str, typer.Argument(help="First entity as table:id")],
    b: Annotated[str, typer.Argument(help="Second entity as table:id")],
):
    """Remove the link between two entities."""
    with _service() as svc:
        removed = svc.unlink(a, b)
        typer.echo(f"Unlinked {a} <-> {b}" if removed else f"No link: {a} <-> {b}")


@app.command("ingest-images")
def ingest_images(
    paths: Annotated[list[Path], typer.Argument(help="Image files or directories")],
    link: LinkOption = None,
):
    """
    Import photos. HEIC and other formats are converted to JPEG.

    Geotagged photos are linked to the nearest place within the
    configured radius, or to a new place created at their coordinates.
    """
    raw_files = _read_files(paths)
    with _service() as svc:
        _echo_ingest(svc.create_images(raw_files, link or []))


@app.command("ingest-files")
def ingest_files(
    paths: Annotated[list[Path], typer.Argument(help="Files or directories")],
    link: LinkOption = None,
):
    """Import files as-is."""
    raw_files = _read_files(paths)
    with _service() as svc:
        _echo_ingest(svc.create_files(raw_files, link or []))


@app.command()
def types():
    """List custom object types in use."""
    with _service() as svc:
        values = svc.custom_object_types()
        if _get_json_output():
            _echo_json(values)
        else:
            for value in values:
                typer.echo(value)


@app.command()
def keys():
    """List key-value keys in use."""
    with _service() as svc:
        values = svc.kv_keys()
        if _get_json_output():
            _echo_json(values)
        else:
            for value in values:
                typer.echo(value)


@app.command()
def bootstrap():
    """Show every place and whether the store holds anything."""
    with _service() as svc:
        data = svc.bootstrap()
        if _get_json_output():
            _echo_json({
                "places": [p.to_dict() for p in data["places"]],
                "has_objects": data["has_objects"],
            })
        else:
            for place in data["places"]:
                typer.echo(_format_entity_line(place))
            typer.echo(f"has objects: {'yes' if data['has_objects'] else 'no'}")


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to the store's error log, show clean message to user
        from .errors import log_exception
        command = " ".join(["tether", *sys.argv[1:]])
        log_path = log_exception(e, context=command, store_path=_store_override)
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
