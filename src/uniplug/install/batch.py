"""Install several plugins (typically a collection) with bounded parallelism.

Each plugin install is independent: one failure is recorded and the others
carry on. Installs of the same plugin still serialize through its lock.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from uniplug.errors import UniplugError
from uniplug.registry.collections import CollectionResolver

from .engine import InstallEngine, InstallOutcome

logger = logging.getLogger(__name__)


@dataclass
class PluginResult:
    name: str
    outcome: Optional[InstallOutcome] = None
    error: Optional[UniplugError] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class BatchResult:
    results: List[PluginResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[PluginResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> List[PluginResult]:
        return [r for r in self.results if not r.success]

    @property
    def all_successful(self) -> bool:
        return all(r.success for r in self.results)


def install_many(
    engine: InstallEngine,
    resolver: CollectionResolver,
    refs: Iterable[str],
    version: Optional[str] = None,
    force: bool = False,
    max_workers: int = 4,
) -> BatchResult:
    """Resolve ``refs`` (names or ``+collections``) and install each plugin.

    Results keep the resolved order regardless of completion order.

    Raises:
        UnknownCollection, CyclicCollection: Before any install starts.
    """
    names = resolver.resolve_many(refs)
    logger.info(f"Installing {len(names)} plugin(s): {', '.join(names)}")

    def _one(name: str) -> PluginResult:
        try:
            return PluginResult(name, outcome=engine.install_plugin(name, version=version, force=force))
        except UniplugError as e:
            logger.error(f"Install of {name} failed: {e}")
            return PluginResult(name, error=e)
        except Exception as e:
            logger.exception(f"Unexpected error installing {name}")
            error = UniplugError(str(e) or type(e).__name__, plugin_name=name, operation="install")
            error.__cause__ = e
            return PluginResult(name, error=error)

    if len(names) <= 1:
        return BatchResult(results=[_one(n) for n in names])

    with ThreadPoolExecutor(
        max_workers=min(max_workers, len(names)),
        thread_name_prefix="uniplug-install",
    ) as pool:
        futures = [pool.submit(_one, n) for n in names]
        try:
            results = [f.result() for f in futures]
        except BaseException:
            for f in futures:
                f.cancel()
            engine.cancel()
            raise

    batch = BatchResult(results=results)
    logger.info(f"Installed {len(batch.succeeded)}/{len(names)} plugin(s)")
    return batch
