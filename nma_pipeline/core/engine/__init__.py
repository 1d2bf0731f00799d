"""
Storage engine: table stores over polars frames.
"""

from nma_pipeline.core.engine.table_store import (
    TableStore,
    InMemoryTableStore,
    ParquetTableStore,
    BigQueryTableStore,
    get_table_store,
)

__all__ = [
    "TableStore",
    "InMemoryTableStore",
    "ParquetTableStore",
    "BigQueryTableStore",
    "get_table_store",
]
