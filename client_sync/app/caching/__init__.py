"""
Sync caching package.

The memory tier is authoritative within a session; the persistent tier
survives restarts and is only ever an optimization. Storage failures
degrade to cache misses.
"""
