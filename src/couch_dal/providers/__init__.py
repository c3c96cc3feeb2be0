"""Provider implementations for external services.

Each provider module exports a `Provider` class alias for the main provider class,
along with its credentials and params types. Providers satisfy `QueryExecutor`
and can be passed directly to `paginate` and `build_indexes`.

Available providers (require optional dependencies):
- couchbase: Couchbase Server via the couchbase SDK
"""
