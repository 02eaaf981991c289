"""
Realtime package.

Push notifications only ever invalidate; the regular fetch path stays
the single source of cached values.
"""
