"""Plugin management CLI commands."""

from typing import NoReturn

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from uniplug.errors import UniplugError
from uniplug.install.dependencies import DependencyReport, DependencyStatus

console = Console()

_STATUS_STYLE = {
    DependencyStatus.SATISFIED: "green",
    DependencyStatus.MISSING: "red",
    DependencyStatus.VERSION_MISMATCH: "yellow",
    DependencyStatus.CHECK_FAILED: "magenta",
}


def _fail(error: BaseException) -> NoReturn:
    """Print a one-line summary plus the underlying cause, then exit 1."""
    console.print(f"[red]Error:[/red] {escape(str(error))}")
    cause = error.__cause__
    if cause is not None:
        console.print(f"  Cause: {escape(str(cause) or type(cause).__name__)}")
    raise SystemExit(1)


def _build_engine(config, platform=None, wait=False):
    from uniplug.install.engine import InstallEngine

    engine = InstallEngine.from_config(config)
    if platform:
        engine.platform_key = platform.lower()
    engine.wait_for_lock = wait
    return engine


def _print_advisories(name: str, report: DependencyReport) -> None:
    for entry in report.problems:
        dep = entry.dependency
        detail = f" ({entry.detail})" if entry.detail else ""
        console.print(
            f"  [yellow]Advisory:[/yellow] {escape(name)} needs {dep.type} dependency "
            f"'{escape(dep.name)}'{escape(dep.version and ' ' + dep.version or '')}: "
            f"{entry.status.value}{escape(detail)}"
        )


@click.group()
def plugin():
    """Manage uniconv plugins."""


@plugin.command()
@click.argument("targets", nargs=-1, required=True)
@click.option("--version", "version", default=None, help="Install this exact version (single plugin only)")
@click.option("--force", is_flag=True, help="Reinstall even if the version is already present")
@click.option("--platform", default=None, help="Platform key override (e.g. linux-x86_64)")
@click.option("--jobs", "-j", type=int, default=None, help="Parallel installs for collections")
@click.option("--wait", is_flag=True, help="Wait for a concurrent install instead of failing")
@click.pass_obj
def install(config, targets, version, force, platform, jobs, wait):
    """Install plugins by name or collections by +name."""
    from uniplug.install.batch import install_many
    from uniplug.registry.collections import CollectionResolver, is_collection_ref

    if version and (len(targets) != 1 or is_collection_ref(targets[0])):
        console.print("[red]Error:[/red] --version needs exactly one plugin name")
        raise SystemExit(2)

    engine = _build_engine(config, platform=platform, wait=wait)
    resolver = CollectionResolver(engine.store)

    try:
        batch = install_many(
            engine,
            resolver,
            targets,
            version=version,
            force=force,
            max_workers=jobs or config.max_workers,
        )
    except KeyboardInterrupt:
        engine.cancel()
        console.print("[yellow]Cancelled.[/yellow] Previously installed versions are unchanged.")
        raise SystemExit(130)
    except UniplugError as e:
        _fail(e)

    for result in batch.results:
        if result.success:
            outcome = result.outcome
            rec = outcome.record
            if outcome.changed:
                console.print(f"[green]Installed {escape(rec.name)} {escape(rec.version)}[/green]")
            else:
                console.print(f"{escape(rec.name)} {escape(rec.version)} is already installed")
            _print_advisories(rec.name, outcome.dependencies)
        else:
            console.print(f"[red]Failed to install {escape(result.name)}:[/red] {escape(str(result.error))}")
            cause = result.error.__cause__
            if cause is not None:
                console.print(f"  Cause: {escape(str(cause) or type(cause).__name__)}")

    if not batch.all_successful:
        raise SystemExit(1)


@plugin.command()
@click.argument("name", required=False)
@click.option("--all", "update_all", is_flag=True, help="Update every installed plugin")
@click.option("--platform", default=None, help="Platform key override (e.g. linux-x86_64)")
@click.pass_obj
def update(config, name, update_all, platform):
    """Update an installed plugin to its latest release."""
    if not name and not update_all:
        console.print("[red]Error:[/red] give a plugin name or --all")
        raise SystemExit(2)

    engine = _build_engine(config, platform=platform)
    names = [r.name for r in engine.list_installed()] if update_all else [name]
    if not names:
        console.print("No plugins installed.")
        return

    failed = False
    for plugin_name in names:
        try:
            outcome = engine.update_plugin(plugin_name)
        except KeyboardInterrupt:
            engine.cancel()
            console.print("[yellow]Cancelled.[/yellow] Previously installed versions are unchanged.")
            raise SystemExit(130)
        except UniplugError as e:
            if not update_all:
                _fail(e)
            console.print(f"[red]Failed to update {escape(plugin_name)}:[/red] {escape(str(e))}")
            failed = True
            continue

        rec = outcome.record
        if outcome.changed:
            console.print(
                f"[green]Updated {escape(rec.name)} "
                f"{escape(outcome.previous_version or '?')} -> {escape(rec.version)}[/green]"
            )
            _print_advisories(rec.name, outcome.dependencies)
        else:
            console.print(f"{escape(rec.name)} is up to date ({escape(rec.version)})")

    if failed:
        raise SystemExit(1)


@plugin.command()
@click.argument("name")
@click.pass_obj
def uninstall(config, name):
    """Remove an installed plugin."""
    engine = _build_engine(config)
    try:
        engine.uninstall(name)
    except UniplugError as e:
        _fail(e)
    console.print(f"[green]Removed {escape(name)}[/green]")


@plugin.command("list")
@click.pass_obj
def list_plugins(config):
    """List installed plugins (local records only)."""
    from uniplug.install.records import RecordStore

    installed = RecordStore(config.records_dir).list_records()
    if not installed:
        console.print("No plugins installed.")
        console.print("Install with: uniplug plugin install <name|+collection>")
        return

    table = Table(title="Installed Plugins")
    table.add_column("Name", style="cyan")
    table.add_column("Version")
    table.add_column("Interface")
    table.add_column("Installed")

    for rec in installed:
        table.add_row(escape(rec.name), escape(rec.version), rec.interface, rec.installed_at)

    console.print(table)


@plugin.command()
@click.argument("name")
@click.option("--refresh", is_flag=True, help="Revalidate cached manifests")
@click.pass_obj
def info(config, name, refresh):
    """Show registry details for a plugin."""
    engine = _build_engine(config)
    try:
        manifest = engine.store.get_manifest(name, refresh=refresh)
    except UniplugError as e:
        _fail(e)
    record = engine.get_record(name)

    console.print(f"[bold]{escape(manifest.name)}[/bold]  {escape(manifest.description)}")
    console.print(f"  Author: {escape(manifest.author or '-')}")
    console.print(f"  License: {escape(manifest.license or '-')}")
    if manifest.repository:
        console.print(f"  Repository: {escape(manifest.repository)}")
    if manifest.keywords:
        console.print(f"  Keywords: {escape(', '.join(manifest.keywords))}")
    console.print(f"  Latest: {escape(manifest.latest.version)} ({manifest.latest.interface.value})")
    console.print(f"  Installed: {escape(record.version) if record else 'no'}")
    console.print(f"  Platform: {escape(engine.platform_key)}")

    table = Table(title="Releases")
    table.add_column("Version", style="cyan")
    table.add_column("Interface")
    table.add_column("uniconv")
    table.add_column("Platforms")
    for release in manifest.releases:
        table.add_row(
            escape(release.version),
            release.interface.value,
            escape(release.uniconv_compat or "-"),
            escape(", ".join(release.platforms)),
        )
    console.print(table)

    deps = manifest.latest.dependencies
    if deps:
        console.print("[bold]Dependencies (latest)[/bold]")
        for dep in deps:
            constraint = f" {dep.version}" if dep.version else ""
            console.print(f"  {dep.name}{constraint} [{dep.type}]", markup=False)


@plugin.command()
@click.argument("query", required=False, default="")
@click.option("--interface", type=click.Choice(["cli", "native"]), default=None, help="Filter by interface kind")
@click.option("--refresh", is_flag=True, help="Revalidate the cached index")
@click.pass_obj
def search(config, query, interface, refresh):
    """Search the registry index by name, description or keyword."""
    from uniplug.registry.models import InterfaceKind

    engine = _build_engine(config)
    try:
        index = engine.store.get_index(refresh=refresh)
    except UniplugError as e:
        _fail(e)

    results = index.search(query, InterfaceKind.parse(interface) if interface else None)
    if not results:
        console.print(f"No plugins match '{escape(query)}'.")
        return

    table = Table(title="Registry Plugins")
    table.add_column("Name", style="cyan")
    table.add_column("Latest")
    table.add_column("Interface")
    table.add_column("Description")
    for entry in results:
        table.add_row(
            escape(entry.name), escape(entry.latest), entry.interface.value, escape(entry.description)
        )
    console.print(table)


@plugin.command()
@click.pass_obj
def collections(config):
    """List collections installable with +name."""
    engine = _build_engine(config)
    try:
        data = engine.store.get_collections()
    except UniplugError as e:
        _fail(e)

    if not data.collections:
        console.print("The registry defines no collections.")
        return

    table = Table(title="Collections")
    table.add_column("Name", style="cyan")
    table.add_column("Plugins")
    table.add_column("Description")
    for coll in data.collections:
        table.add_row(
            escape(f"+{coll.name}"), escape(", ".join(coll.plugins)), escape(coll.description)
        )
    console.print(table)


@plugin.command()
@click.argument("name")
@click.option("--version", "version", default=None, help="Check a specific release")
@click.pass_obj
def check(config, name, version):
    """Report whether a plugin's declared dependencies are present."""
    engine = _build_engine(config)
    try:
        report = engine.check_dependencies(name, version)
    except UniplugError as e:
        _fail(e)

    if not report.entries:
        console.print(f"{escape(name)} declares no dependencies.")
        return

    table = Table(title=f"Dependencies of {escape(name)}")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Required")
    table.add_column("Found")
    table.add_column("Status")
    for entry in report.entries:
        style = _STATUS_STYLE[entry.status]
        table.add_row(
            escape(entry.dependency.name),
            escape(entry.dependency.type),
            escape(entry.dependency.version or "-"),
            escape(entry.found_version or "-"),
            f"[{style}]{entry.status.value}[/{style}]",
        )
    console.print(table)
    if not report.ok:
        console.print("[yellow]Dependency checks are advisory; installation is not blocked.[/yellow]")


@plugin.command("clear-cache")
@click.pass_obj
def clear_cache(config):
    """Delete cached registry documents so the next lookup refetches them."""
    from uniplug.registry.cache import DocumentCache

    removed = DocumentCache(config.cache_dir).clear()
    console.print(f"Removed {removed} cached document(s) from {escape(str(config.cache_dir))}")
