"""
Client sync application package.

Structure:
- app.main: SyncLayer wiring and session lifecycle.
- app.caching: Two-tier cache store (memory + Redis persistent tier).
- app.coalescing: At most one in-flight fetch per cache key.
- app.invalidation: Typed publish/subscribe for "resource changed".
- app.permissions: Shared permissions snapshot for the session.
- app.realtime: Push channels with bounded retries.
- app.documents: Document configuration service.
- app.adapters: HTTP clients for the documents and permissions APIs.
"""
