"""Embedding Client — Query embeddings for vector and hybrid search.

Talks to any OpenAI-compatible embeddings endpoint through the ``openai``
SDK.  Vectors are cached per ``(model, text)`` so repeated queries do not
pay for a second API call.
"""

from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING, Any

from openai import APIError, AsyncOpenAI

from searchindex.engines.base.exceptions import TransientError
from searchindex.models.index import FieldType, Index
from searchindex.models.options import SearchOptions

if TYPE_CHECKING:
    from searchindex.cache.manager import CacheManager
    from searchindex.config.settings import EmbeddingSettings

logger = logging.getLogger(__name__)

CACHE_PREFIX = "searchIndex:embedding"


class EmbeddingError(TransientError):
    """Raised when an embedding cannot be generated."""


class EmbeddingClient:
    """Async embeddings client wrapping the OpenAI-compatible API.

    Args:
        settings: Endpoint, key, default model and timeout.
        cache: Optional cache; vectors are stored for ``ttl`` seconds.
        ttl: Cache lifetime (defaults to 7 days).
        client: Pre-built ``AsyncOpenAI`` client, mainly for tests.
    """

    def __init__(
        self,
        settings: EmbeddingSettings,
        cache: CacheManager | None = None,
        ttl: int = 604800,
        client: Any = None,
    ) -> None:
        self._settings = settings
        self._cache = cache
        self._ttl = ttl
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            if not self._settings.api_key:
                raise EmbeddingError("No embeddings API key configured (SEARCHINDEX_EMBEDDINGS__API_KEY)")
            self._client = AsyncOpenAI(
                api_key=self._settings.api_key,
                base_url=self._settings.base_url,
                timeout=self._settings.timeout,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()
        self._client = None

    @staticmethod
    def cache_key(model: str, text: str) -> str:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"{CACHE_PREFIX}:{model}:{digest}"

    async def embed(self, text: str, model: str | None = None) -> list[float]:
        """Return the embedding vector for ``text``.

        Raises:
            EmbeddingError: If the API call fails or returns no vector.
        """
        model = model or self._settings.default_model
        key = self.cache_key(model, text)
        if self._cache is not None:
            cached = await self._cache.get(key)
            if cached:
                return [float(x) for x in cached]

        try:
            response = await self._get_client().embeddings.create(model=model, input=text)
        except APIError as e:
            raise EmbeddingError(f"Embedding request failed (model={model}): {e}") from e

        if not response.data:
            raise EmbeddingError(f"Embedding response for model {model} contained no vectors")
        vector = [float(x) for x in response.data[0].embedding]
        logger.debug("Generated embedding with %s (%d dims)", model, len(vector))

        if self._cache is not None:
            await self._cache.set(key, vector, ttl=self._ttl)
        return vector

    async def resolve_embedding_options(self, index: Index, query: str, options: SearchOptions) -> SearchOptions:
        """Fill ``embedding`` for ``vectorSearch`` requests.

        Leaves ``options`` unchanged when no vector is wanted, one is
        already present, the query is empty, or the index has no single
        embedding field.  Generation failures degrade to text search.
        """
        if not options.vector_search or options.embedding is not None or not query.strip():
            return options

        field = options.embedding_field or index.embedding_field_name()
        if field is None:
            logger.warning("vectorSearch requested on %s but no embedding field is mapped", index.handle)
            return options

        model = options.embedding_model or self._model_for_field(index, field)
        try:
            vector = await self.embed(query, model)
        except EmbeddingError as e:
            logger.warning("Falling back to text search on %s: %s", index.handle, e)
            return options
        return options.with_updates(embedding=vector, embedding_field=field)

    def _model_for_field(self, index: Index, field: str) -> str:
        for mapping in index.enabled_mappings():
            if mapping.index_field_name == field and mapping.index_field_type == FieldType.EMBEDDING:
                model = mapping.resolver_config.get("model")
                if model:
                    return str(model)
        return self._settings.default_model
