"""Step-batched aggregation operators and accumulators, result sorting and operator-tree explanation."""

__version__ = "0.1.0"

__all__ = [
    "accumulators",
    "tables",
    "hash_aggregate",
    "khash_aggregate",
    "count_values",
    "sort",
    "explain",
    "remote",
]