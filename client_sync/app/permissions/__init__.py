"""
Permissions package: one lazily loaded snapshot per session.
"""
