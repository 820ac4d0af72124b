"""Engine Registry — Maps engine kinds to adapter classes and caches instances.

Engines are created from an :class:`Index`'s ``engine_type`` and its
``engine_config`` merged over the global defaults for that kind.  Instances
are cached by ``(kind, hash of the effective config)`` so every index that
shares a backend connection shares one client.  A registry is meant to be
scoped to a request or operation (see
:class:`~searchindex.query.context.RequestContext`); tests build fresh
ones and nothing leaks between them.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Mapping
from typing import Any

from searchindex.engines.algolia.engine import AlgoliaEngine
from searchindex.engines.base.engine import SearchEngine
from searchindex.engines.base.exceptions import ConfigurationError
from searchindex.engines.elasticsearch.engine import ElasticsearchEngine
from searchindex.engines.meilisearch.engine import MeilisearchEngine
from searchindex.engines.opensearch.engine import OpenSearchEngine
from searchindex.engines.typesense.engine import TypesenseEngine
from searchindex.models.index import EngineType, Index

logger = logging.getLogger(__name__)

DEFAULT_ENGINE_CLASSES: dict[EngineType, type[SearchEngine]] = {
    EngineType.ALGOLIA: AlgoliaEngine,
    EngineType.MEILISEARCH: MeilisearchEngine,
    EngineType.TYPESENSE: TypesenseEngine,
    EngineType.ELASTICSEARCH: ElasticsearchEngine,
    EngineType.OPENSEARCH: OpenSearchEngine,
}

EngineKey = tuple[EngineType, str]


def config_hash(config: Mapping[str, Any]) -> str:
    """SHA-256 of the config serialised as canonical JSON."""
    canonical = json.dumps(dict(config), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class EngineRegistry:
    """Registry for engine classes and their live instances.

    Example:
        >>> registry = EngineRegistry(defaults={"meilisearch": {"host": "$MEILI_HOST"}})
        >>> engine = registry.get(index)
        >>> await engine.search(index, "solar")
        >>> await registry.shutdown_all()

    Args:
        defaults: Global per-kind settings (``{"elasticsearch": {"host": ...}}``);
            an index's own ``engine_config`` values override them.
        classes: Replacement ``EngineType -> class`` map, for tests.
    """

    def __init__(
        self,
        defaults: Mapping[str, Mapping[str, Any]] | None = None,
        classes: Mapping[EngineType, type[SearchEngine]] | None = None,
    ) -> None:
        self._defaults = {str(k): dict(v) for k, v in (defaults or {}).items()}
        self._classes: dict[EngineType, type[SearchEngine]] = dict(classes or DEFAULT_ENGINE_CLASSES)
        self._instances: dict[EngineKey, SearchEngine] = {}

    def register(self, engine_type: EngineType, engine_class: type[SearchEngine]) -> None:
        """Register (or replace) the adapter class for an engine kind."""
        if engine_type in self._classes:
            logger.info("Overriding engine class for %s with %s", engine_type.value, engine_class.__name__)
        self._classes[engine_type] = engine_class

    def engine_class(self, engine_type: EngineType) -> type[SearchEngine]:
        try:
            return self._classes[engine_type]
        except KeyError:
            raise ConfigurationError(
                f"No engine registered for '{engine_type.value}'. "
                f"Available engines: {[t.value for t in self._classes]}"
            ) from None

    def effective_config(self, index: Index) -> dict[str, Any]:
        """Global defaults for the index's kind overlaid with its own non-empty values."""
        merged = dict(self._defaults.get(index.engine_type.value, {}))
        merged.update({k: v for k, v in index.engine_config.items() if v is not None and v != ""})
        return merged

    def key_for(self, index: Index) -> EngineKey:
        return index.engine_type, config_hash(self.effective_config(index))

    def create(self, index: Index) -> SearchEngine:
        """Build a new, uncached engine for ``index``."""
        return self.engine_class(index.engine_type)(self.effective_config(index))

    def get(self, index: Index) -> SearchEngine:
        """Return the cached engine for ``index``, creating it on first use."""
        key = self.key_for(index)
        engine = self._instances.get(key)
        if engine is None:
            engine = self.create(index)
            self._instances[key] = engine
            logger.debug("Created %s engine for index %s", index.engine_type.value, index.handle)
        return engine

    async def shutdown_all(self) -> None:
        """Close every cached engine's client."""
        for (engine_type, _), engine in self._instances.items():
            try:
                await engine.close()
            except Exception:
                logger.warning("Error closing %s engine", engine_type.value, exc_info=True)
        self._instances.clear()

    @property
    def registered_engines(self) -> list[str]:
        return [t.value for t in self._classes]

    @property
    def active_engines(self) -> int:
        return len(self._instances)
