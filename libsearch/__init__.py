"""
libsearch - embedding-backed semantic search over a library of short texts.
"""

__version__ = "1.0.0"
