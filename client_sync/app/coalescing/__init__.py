"""
Request coalescing package.
"""
