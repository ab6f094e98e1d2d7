"""
Data-access layer of the outbreak surveillance dashboard.

Queries the epidemiology, genomics and resource search backends, reshapes
their JSON into view-ready structures and hands each result back as an
``Outcome`` that records whether the value is real data or a fallback.
"""

__all__ = []
