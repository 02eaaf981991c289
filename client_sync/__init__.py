"""
Client data synchronization layer.

Feeds document configuration, permissions and live-update signals to
presentation code through a request-coalescing, two-tier cache.
"""
