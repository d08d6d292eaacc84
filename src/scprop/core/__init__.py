"""
Core data structures shared by every SCPROP component.
"""

from .count_table import (
    CountTable,
    FormatAdapter,
    normalize_counts,
    from_records,
)

__all__ = [
    "CountTable",
    "FormatAdapter",
    "normalize_counts",
    "from_records",
]
