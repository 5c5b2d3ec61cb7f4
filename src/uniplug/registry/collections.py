"""Expand ``+collection`` references into ordered plugin name lists."""

import logging
from typing import Iterable, List, Optional

from uniplug.errors import CyclicCollection, UnknownCollection

from .models import CollectionsFile

logger = logging.getLogger(__name__)

COLLECTION_MARKER = "+"


def is_collection_ref(ref: str) -> bool:
    return ref.startswith(COLLECTION_MARKER)


class CollectionResolver:
    """Resolve install targets against the registry's collections file.

    ``collections`` is either a parsed CollectionsFile or any object with a
    ``get_collections()`` method (normally a ManifestStore). The file is only
    fetched when a ``+name`` reference is actually resolved.
    """

    def __init__(self, collections) -> None:
        self._source = collections
        self._file: Optional[CollectionsFile] = (
            collections if isinstance(collections, CollectionsFile) else None
        )

    def _collections(self) -> CollectionsFile:
        if self._file is None:
            self._file = self._source.get_collections()
        return self._file

    def resolve(self, ref: str) -> List[str]:
        """Expand one reference.

        A plain name resolves to itself. ``+name`` resolves to the member
        list in declared order, de-duplicated with the first occurrence
        winning. Members that are themselves ``+name`` references are
        expanded in place.

        Raises:
            UnknownCollection: The collection does not exist.
            CyclicCollection: Nested references loop back on themselves.
        """
        ref = ref.strip()
        if not is_collection_ref(ref):
            return [ref]
        out: List[str] = []
        self._expand(ref[len(COLLECTION_MARKER):], [], out)
        return out

    def resolve_many(self, refs: Iterable[str]) -> List[str]:
        """Expand several references into one ordered, de-duplicated list."""
        out: List[str] = []
        seen = set()
        for ref in refs:
            for name in self.resolve(ref):
                if name not in seen:
                    seen.add(name)
                    out.append(name)
        return out

    def _expand(self, name: str, stack: List[str], out: List[str]) -> None:
        if name in stack:
            cycle = stack[stack.index(name):] + [name]
            raise CyclicCollection([COLLECTION_MARKER + n for n in cycle])

        collection = self._collections().get(name)
        if collection is None:
            raise UnknownCollection(
                f"unknown collection '{COLLECTION_MARKER}{name}'", operation="resolve"
            )

        stack.append(name)
        for member in collection.plugins:
            if is_collection_ref(member):
                self._expand(member[len(COLLECTION_MARKER):], stack, out)
            elif member not in out:
                out.append(member)
        stack.pop()
        logger.debug(f"Expanded +{name} to {len(out)} plugin(s)")
