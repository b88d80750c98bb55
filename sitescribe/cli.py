"""Command line interface: index, search, status, clean, prune, doctor, serve."""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

import click

from . import __version__
from .config import SiteScribeConfig
from .embeddings import create_embeddings_provider
from .errors import SiteScribeError
from .indexing import IndexPipeline
from .indexing.mirror import clean_mirror_for_scope
from .models import IndexOptions, Scope
from .scope import resolve_scope
from .search import SearchEngine
from .utils import parse_duration, parse_iso_timestamp, sanitize_scope_name
from .vector import create_vector_store

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILES = ("sitescribe.yaml", "sitescribe.yml", "sitescribe.json")


class CommandError(click.ClickException):
    """Error shown to the user as ``Error: CODE: message`` with exit code 1."""

    def __init__(self, error: SiteScribeError):
        super().__init__(f"{error.code}: {error.message}")


def setup_logging(config: SiteScribeConfig, verbose: bool = False, quiet: bool = False):
    """Configure console logging and the optional rotating debug log file."""
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(message)s", stream=sys.stderr, force=True)

    if config.logging.debug_log_file:
        log_file = config.resolve_path(config.logging.debug_log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        # Use RotatingFileHandler for automatic log rotation
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=config.logging.max_bytes,
            backupCount=config.logging.backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        )

        package_logger = logging.getLogger("sitescribe")
        package_logger.setLevel(logging.DEBUG)
        package_logger.addHandler(file_handler)
        logger.debug(f"[CONFIG] Debug log file: {log_file.absolute()}")


def _find_config_file() -> Path | None:
    for name in DEFAULT_CONFIG_FILES:
        candidate = Path.cwd() / name
        if candidate.is_file():
            return candidate
    return None


def _load_config(ctx: click.Context) -> SiteScribeConfig:
    """Load config once per invocation and configure logging from it."""
    obj = ctx.ensure_object(dict)
    if "config" not in obj:
        try:
            config = SiteScribeConfig.from_env(config_path=obj.get("config_path") or _find_config_file())
        except SiteScribeError as e:
            raise CommandError(e) from e
        if obj.get("quiet"):
            config.show_progress = False
        setup_logging(config, verbose=obj.get("verbose", False), quiet=obj.get("quiet", False))
        obj["config"] = config
    return obj["config"]


@click.group()
@click.version_option(__version__, prog_name="sitescribe")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="Config file (JSON/YAML)")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Warnings and errors only, no progress bars")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool, quiet: bool):
    """SiteScribe: semantic search index for your site."""
    ctx.ensure_object(dict)
    ctx.obj.update(config_path=config_path, verbose=verbose, quiet=quiet)


@cli.command()
@click.option("--scope", "scope_override", help="Scope name override")
@click.option("--changed-only/--no-changed-only", default=True, show_default=True, help="Embed changed chunks only")
@click.option("--force", is_flag=True, help="Re-embed every chunk, ignoring stored hashes and model drift")
@click.option("--dry-run", is_flag=True, help="Compute changes and cost without embedding or writing")
@click.option("--source", "source_override", type=click.Choice(["static-output", "crawl", "content-files"]))
@click.option("--max-pages", type=int, help="Limit the number of source pages")
@click.option("--max-chunks", type=int, help="Limit the number of chunks")
@click.option("--json", "as_json", is_flag=True, help="Print stats as JSON")
@click.pass_context
def index(ctx, scope_override, changed_only, force, dry_run, source_override, max_pages, max_chunks, as_json):
    """Index the site into the configured vector store."""
    config = _load_config(ctx)
    options = IndexOptions(
        scope_override=scope_override,
        changed_only=changed_only,
        force=force,
        dry_run=dry_run,
        source_override=source_override,
        max_pages=max_pages,
        max_chunks=max_chunks,
        verbose=ctx.obj.get("verbose", False),
    )

    try:
        pipeline = IndexPipeline(config, create_embeddings_provider(config), create_vector_store(config))
        stats = pipeline.run(options)
    except SiteScribeError as e:
        raise CommandError(e) from e

    if as_json:
        click.echo(json.dumps(stats.to_dict(), indent=2))
        return

    click.echo(f"pages processed: {stats.pages_processed}")
    click.echo(f"chunks total: {stats.chunks_total}")
    click.echo(f"chunks changed: {stats.chunks_changed}")
    click.echo(f"embeddings created: {stats.new_embeddings}")
    click.echo(f"deletes: {stats.deletes}")
    click.echo(f"routes: {stats.route_exact} exact, {stats.route_best_effort} best-effort")
    click.echo(f"estimated tokens: {stats.estimated_tokens}")
    click.echo(f"estimated cost (USD): {stats.estimated_cost_usd:.6f}")
    if dry_run:
        click.echo("dry run: nothing was embedded or written")


@cli.command()
@click.argument("query")
@click.option("--top-k", type=int, default=10, show_default=True)
@click.option("--scope", help="Scope name override")
@click.option("--path-prefix", help="Only return pages at or below this URL path")
@click.option("--tag", "tags", multiple=True, help="Required tag (repeatable)")
@click.option("--rerank", is_flag=True, help="Rerank with the configured reranker")
@click.option("--group-by", type=click.Choice(["page", "chunk"]), default="page", show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print the raw response as JSON")
@click.pass_context
def search(ctx, query, top_k, scope, path_prefix, tags, rerank, group_by, as_json):
    """Search the index."""
    config = _load_config(ctx)
    request = {"q": query, "top_k": top_k, "rerank": rerank, "group_by": group_by}
    if scope:
        request["scope"] = scope
    if path_prefix:
        request["path_prefix"] = path_prefix
    if tags:
        request["tags"] = list(tags)

    try:
        response = SearchEngine.from_config(config).search(request)
    except SiteScribeError as e:
        raise CommandError(e) from e

    if as_json:
        click.echo(json.dumps(response, indent=2))
        return

    if not response["results"]:
        click.echo("no results")
        return

    for i, result in enumerate(response["results"], 1):
        click.echo(f"{i}. [{result['score']:.4f}] {result['title']} ({result['url']})")
        if result.get("section_title"):
            click.echo(f"   section: {result['section_title']}")
        click.echo(f"   {result['snippet']}")
    timings = response["meta"]["timings_ms"]
    click.echo(f"\n{len(response['results'])} results in {timings['total']}ms (scope: {response['scope']})")


@cli.command()
@click.pass_context
def status(ctx):
    """Show indexed scopes for this project."""
    config = _load_config(ctx)
    store = create_vector_store(config)
    try:
        current = resolve_scope(config)
    except SiteScribeError as e:
        raise CommandError(e) from e

    health = store.health()
    click.echo(f"project: {config.project_id}")
    click.echo(f"store: {config.resolve_path(config.vector.path)} ({'ok' if health.get('ok') else 'unavailable'})")
    click.echo(f"current scope: {current.scope_name}")
    click.echo(f"embedding model: {config.embeddings.model}")

    scopes = store.list_scopes(config.project_id)
    if not scopes:
        click.echo("no indexed scopes")
        return

    click.echo("")
    for info in scopes:
        marker = "*" if info.scope_name == current.scope_name else " "
        drift = "" if info.model_id == config.embeddings.model else " (model differs from config)"
        click.echo(
            f"{marker} {info.scope_name}: {info.vector_count or 0} vectors, model {info.model_id}{drift}, "
            f"last indexed {info.last_indexed_at}"
        )
        if info.last_estimate_tokens is not None:
            click.echo(
                f"    last run: {info.last_estimate_changed_chunks or 0} changed chunks, "
                f"~{info.last_estimate_tokens} tokens (${info.last_estimate_cost_usd or 0:.4f})"
            )


@cli.command()
@click.option("--scope", "scope_override", help="Scope name override")
@click.option("--remote", is_flag=True, help="Also delete the scope's vectors, pages and registry entry")
@click.pass_context
def clean(ctx, scope_override, remote):
    """Delete local mirror files (and optionally indexed data) for a scope."""
    config = _load_config(ctx)
    try:
        scope = resolve_scope(config, scope_override)
    except SiteScribeError as e:
        raise CommandError(e) from e

    clean_mirror_for_scope(config.state_dir, scope)
    click.echo(f"deleted mirror files for scope {scope.scope_name}")

    if remote:
        create_vector_store(config).delete_scope(scope)
        click.echo(f"deleted indexed data for scope {scope.scope_name}")


def _read_scopes_file(path: Path, sanitize: bool) -> set[str]:
    names = set()
    for line in path.read_text(encoding="utf-8").splitlines():
        name = line.split("#", 1)[0].strip()
        if name:
            names.add(sanitize_scope_name(name) if sanitize else name)
    return names


@cli.command()
@click.option("--apply", "apply_changes", is_flag=True, help="Delete the stale scopes (default: list only)")
@click.option("--scopes-file", type=click.Path(exists=True, dir_okay=False), help="File listing active scopes")
@click.option("--older-than", help="Treat scopes not indexed within this duration as stale (e.g. 30d)")
@click.pass_context
def prune(ctx, apply_changes, scopes_file, older_than):
    """List or delete stale scopes. The fixed scope is always kept."""
    config = _load_config(ctx)
    if not scopes_file and not older_than:
        raise click.UsageError("pass --scopes-file and/or --older-than")

    keep = _read_scopes_file(Path(scopes_file), config.scope.sanitize) if scopes_file else set()
    try:
        max_age = parse_duration(older_than) if older_than else None
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--older-than") from e

    store = create_vector_store(config)
    now = datetime.now(timezone.utc)

    stale = []
    for info in store.list_scopes(config.project_id):
        if info.scope_name == config.scope.fixed:
            continue
        stale_by_list = bool(keep) and info.scope_name not in keep
        stale_by_age = False
        if max_age is not None:
            indexed_at = parse_iso_timestamp(info.last_indexed_at)
            stale_by_age = indexed_at is not None and now - indexed_at > max_age
        if stale_by_list or stale_by_age:
            stale.append(info)

    if not stale:
        click.echo("no stale scopes found")
        return

    click.echo(f"stale scopes ({len(stale)}):")
    for info in stale:
        click.echo(f"  - {info.scope_name} last_indexed_at={info.last_indexed_at}")

    if not apply_changes:
        click.echo("dry run only. pass --apply to delete these scopes.")
        return

    for info in stale:
        scope = Scope(project_id=info.project_id, scope_name=info.scope_name)
        store.delete_scope(scope)
        clean_mirror_for_scope(config.state_dir, scope)
    click.echo(f"deleted scopes: {len(stale)}")


@cli.command()
@click.pass_context
def doctor(ctx):
    """Check config, credentials, store access and state directory."""
    checks: list[tuple[str, bool, str]] = []

    try:
        config = _load_config(ctx)
        checks.append(("config", True, f"project {config.project_id}"))
    except click.ClickException as e:
        click.echo(f"FAIL config: {e.message}")
        ctx.exit(1)

    try:
        mode = config.resolve_source_mode()
        checks.append(("source", True, mode))
    except SiteScribeError as e:
        checks.append(("source", False, e.message))

    if config.embeddings.provider == "openai":
        has_key = bool(config.embeddings.api_key)
        checks.append(("embeddings key", has_key, config.embeddings.api_key_env))
    if config.rerank.enabled and config.rerank.provider == "jina":
        checks.append(("rerank key", bool(config.rerank.api_key), config.rerank.api_key_env))

    try:
        health = create_vector_store(config).health()
        checks.append(("vector store", bool(health.get("ok")), health.get("details", "")))
    except OSError as e:
        checks.append(("vector store", False, str(e)))

    state_dir = config.state_dir
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        checks.append(("state dir", os.access(state_dir, os.W_OK), str(state_dir)))
    except OSError as e:
        checks.append(("state dir", False, str(e)))

    for name, ok, details in checks:
        click.echo(f"{'PASS' if ok else 'FAIL'} {name}{': ' + details if details else ''}")

    if not all(ok for _, ok, _ in checks):
        ctx.exit(1)


@cli.command()
@click.option("--host", help="Host to bind (default from config)")
@click.option("--port", type=int, help="Port to listen on (default from config)")
@click.option("--debug", is_flag=True, help="Flask debug mode")
@click.pass_context
def serve(ctx, host, port, debug):
    """Serve the search API over HTTP."""
    from .server import SearchServer

    config = _load_config(ctx)
    try:
        engine = SearchEngine.from_config(config)
    except SiteScribeError as e:
        raise CommandError(e) from e

    SearchServer(engine, config).run(port=port, host=host, debug=debug)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
