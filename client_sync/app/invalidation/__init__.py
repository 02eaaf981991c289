"""
Invalidation package.

The bus is the only way to force a refetch inside TTL: mutations, the
realtime reconciler and credential changes publish here, and the cache
store subscribes.
"""
