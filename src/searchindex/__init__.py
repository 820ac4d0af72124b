"""Search Index — Engine-agnostic search indexing and querying.

Synchronises documents into Algolia, Meilisearch, Typesense,
Elasticsearch or OpenSearch and exposes one query API across them.
"""

__version__ = "0.1.0"
