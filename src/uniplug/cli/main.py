"""uniplug CLI - Main entry point."""

import logging
import logging.handlers
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape

from uniplug import __version__
from uniplug.config import ConfigError, load_settings

console = Console()

# Log rotation: 2 MB per file, keep 3 backups
_LOG_MAX_BYTES = 2 * 1024 * 1024
_LOG_BACKUP_COUNT = 3
_HANDLER_TAG = "_uniplug_handler"


def _setup_logging(log_dir: Path, verbose: bool = False) -> None:
    """Configure console and rotating file handlers on the root logger."""
    log_format = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Repeated invocations in one process (tests) must not stack handlers
    for handler in list(root_logger.handlers):
        if getattr(handler, _HANDLER_TAG, False):
            root_logger.removeHandler(handler)
            handler.close()

    stream = logging.StreamHandler()
    stream.setLevel(logging.DEBUG if verbose else logging.WARNING)
    stream.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    setattr(stream, _HANDLER_TAG, True)
    root_logger.addHandler(stream)

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / "uniplug.log",
            maxBytes=_LOG_MAX_BYTES,
            backupCount=_LOG_BACKUP_COUNT,
        )
    except OSError as e:
        root_logger.warning(f"File logging disabled: {e}")
        return
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(logging.Formatter(log_format))
    setattr(file_handler, _HANDLER_TAG, True)
    root_logger.addHandler(file_handler)


@click.group()
@click.version_option(version=__version__, prog_name="uniplug")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: ~/.uniplug/config.yaml)",
)
@click.option("--registry", default=None, help="Registry base URL or local directory")
@click.option(
    "--home",
    "data_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Data directory for installed plugins and cache",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def cli(ctx, config_path, registry, data_dir, verbose):
    """uniplug - plugin manager for uniconv.

    Installs plugins and collections from the uniconv plugin registry.
    """
    try:
        config = load_settings(config_path, registry_url=registry, data_dir=data_dir)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise SystemExit(1)
    _setup_logging(config.logs_dir, verbose)
    ctx.obj = config


from .plugin_commands import plugin  # noqa: E402

cli.add_command(plugin)


if __name__ == "__main__":
    cli()
