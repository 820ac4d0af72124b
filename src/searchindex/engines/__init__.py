"""Search engine layer — One adapter per supported backend.

Built-in engines:
  - algolia: Algolia hosted search
  - meilisearch: Meilisearch (instant, typo-tolerant search)
  - typesense: Typesense (typed collections, vector search)
  - elasticsearch: Elasticsearch v8+
  - opensearch: OpenSearch v2+

All of them implement :class:`~searchindex.engines.base.engine.SearchEngine`.
"""
