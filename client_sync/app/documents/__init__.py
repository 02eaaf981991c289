"""
Documents package.
"""
