"""
Lineage, mutation and location queries against the genomics backend.

``queries`` holds one function per endpoint; ``reports`` combines them into
the view-models of the report pages.
"""

__all__ = []
