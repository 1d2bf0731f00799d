"""
Table Store
Polars-backed table persistence for pipeline stages.

Every stage reads its inputs and fully replaces its outputs through a
TableStore. Backends:
- memory:   process-local dict (tests, dry runs)
- parquet:  one parquet file per table, written to a temp file then renamed
- bigquery: one BigQuery table per table name, loaded with WRITE_TRUNCATE
"""

import os
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import polars as pl

from nma_pipeline.app.config import settings
from nma_pipeline.core.exceptions import (
    NmaPipelineException,
    StorageUnavailableError,
    TableNotFoundError,
    classify_exception,
)
from nma_pipeline.core.utils.logging import create_structured_logger

logger = create_structured_logger(__name__)


class TableStore(ABC):
    """Read / full-replace / drop access to named tables."""

    backend: str = "abstract"

    @abstractmethod
    def read(self, name: str) -> pl.DataFrame:
        """
        Read a whole table.

        Raises:
            TableNotFoundError: If the table does not exist
            StorageUnavailableError: On I/O failure
        """

    @abstractmethod
    def write(self, name: str, df: pl.DataFrame) -> int:
        """Replace the table with df atomically. Returns rows written."""

    @abstractmethod
    def exists(self, name: str) -> bool:
        """Check whether a table exists."""

    @abstractmethod
    def drop(self, name: str) -> bool:
        """Drop a table if present. Returns True if something was dropped."""

    def list_tables(self) -> List[str]:
        return []


class InMemoryTableStore(TableStore):
    """Dict-backed store. Tables are held as immutable polars frames."""

    backend = "memory"

    def __init__(self, tables: Optional[Dict[str, pl.DataFrame]] = None):
        self._tables: Dict[str, pl.DataFrame] = dict(tables or {})
        self._lock = threading.Lock()

    def read(self, name: str) -> pl.DataFrame:
        with self._lock:
            if name not in self._tables:
                raise TableNotFoundError(name, context={"backend": self.backend})
            return self._tables[name]

    def write(self, name: str, df: pl.DataFrame) -> int:
        with self._lock:
            self._tables[name] = df
        logger.debug("Wrote table", table=name, rows=df.height, backend=self.backend)
        return df.height

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._tables

    def drop(self, name: str) -> bool:
        with self._lock:
            return self._tables.pop(name, None) is not None

    def list_tables(self) -> List[str]:
        with self._lock:
            return sorted(self._tables)


class ParquetTableStore(TableStore):
    """One parquet file per table under base_path."""

    backend = "parquet"

    def __init__(self, base_path: Optional[str] = None):
        self.base_path = Path(base_path or settings.parquet_base_path)

    def _path(self, name: str) -> Path:
        return self.base_path / f"{name}.parquet"

    def read(self, name: str) -> pl.DataFrame:
        path = self._path(name)
        if not path.exists():
            raise TableNotFoundError(name, context={"backend": self.backend, "path": str(path)})
        try:
            return pl.read_parquet(path)
        except OSError as e:
            raise StorageUnavailableError(
                message=f"Failed to read table '{name}': {e}",
                context={"table": name, "path": str(path)},
                original_error=e
            ) from e

    def write(self, name: str, df: pl.DataFrame) -> int:
        path = self._path(name)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            df.write_parquet(tmp_path)
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageUnavailableError(
                message=f"Failed to write table '{name}': {e}",
                context={"table": name, "path": str(path)},
                original_error=e
            ) from e

        logger.debug("Wrote table", table=name, rows=df.height, path=str(path))
        return df.height

    def exists(self, name: str) -> bool:
        return self._path(name).exists()

    def drop(self, name: str) -> bool:
        path = self._path(name)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list_tables(self) -> List[str]:
        if not self.base_path.exists():
            return []
        return sorted(p.stem for p in self.base_path.glob("*.parquet"))


class BigQueryTableStore(TableStore):
    """
    BigQuery-backed store.

    Reads page through query results into polars; writes load JSON rows with
    WRITE_TRUNCATE so each table is replaced in a single load job.
    """

    backend = "bigquery"

    # Polars dtype -> BigQuery type
    TYPE_MAPPING = {
        pl.Utf8: "STRING",
        pl.Int64: "INT64",
        pl.Int32: "INT64",
        pl.Int8: "INT64",
        pl.UInt32: "INT64",
        pl.Float64: "FLOAT64",
        pl.Boolean: "BOOL",
        pl.Date: "DATE",
        pl.Datetime: "TIMESTAMP",
    }

    def __init__(
        self,
        project_id: Optional[str] = None,
        dataset: Optional[str] = None,
        location: Optional[str] = None,
        client: Any = None
    ):
        from google.cloud import bigquery

        self.project_id = project_id or settings.gcp_project_id
        self.dataset = dataset or settings.bigquery_dataset
        self.location = location or settings.bigquery_location
        self.client = client or bigquery.Client(project=self.project_id, location=self.location)

    def _table_id(self, name: str) -> str:
        return f"{self.project_id}.{self.dataset}.{name}"

    def read(self, name: str) -> pl.DataFrame:
        from google.api_core import exceptions as google_exceptions

        table_id = self._table_id(name)
        try:
            table = self.client.get_table(table_id)
            rows = self.client.list_rows(table, page_size=settings.bigquery_page_size)
            records = [dict(row) for row in rows]
        except google_exceptions.NotFound as e:
            raise TableNotFoundError(name, context={"table_id": table_id}, original_error=e) from e
        except Exception as e:
            raise classify_exception(e) from e

        if not records:
            return pl.DataFrame(schema={field.name: self._polars_type(field) for field in table.schema})

        df = pl.DataFrame(records)
        logger.info("Loaded table from BigQuery", table_id=table_id, rows=df.height)
        return df

    def write(self, name: str, df: pl.DataFrame) -> int:
        from google.cloud import bigquery

        table_id = self._table_id(name)
        job_config = bigquery.LoadJobConfig(
            schema=self._bigquery_schema(df),
            write_disposition=bigquery.WriteDisposition.WRITE_TRUNCATE,
            source_format=bigquery.SourceFormat.NEWLINE_DELIMITED_JSON,
        )

        try:
            job = self.client.load_table_from_json(
                self._to_bigquery_compatible(df),
                table_id,
                job_config=job_config
            )
            job.result()
        except NmaPipelineException:
            raise
        except Exception as e:
            raise classify_exception(e) from e

        logger.info("Replaced BigQuery table", table_id=table_id, rows=df.height)
        return df.height

    def exists(self, name: str) -> bool:
        from google.api_core import exceptions as google_exceptions

        try:
            self.client.get_table(self._table_id(name))
            return True
        except google_exceptions.NotFound:
            return False

    def drop(self, name: str) -> bool:
        existed = self.exists(name)
        self.client.delete_table(self._table_id(name), not_found_ok=True)
        return existed

    def list_tables(self) -> List[str]:
        return sorted(t.table_id for t in self.client.list_tables(f"{self.project_id}.{self.dataset}"))

    def _bigquery_schema(self, df: pl.DataFrame) -> list:
        from google.cloud import bigquery

        fields = []
        for col, dtype in df.schema.items():
            if isinstance(dtype, pl.List):
                inner = self.TYPE_MAPPING.get(dtype.inner.base_type(), "STRING")
                fields.append(bigquery.SchemaField(col, inner, mode="REPEATED"))
            else:
                fields.append(bigquery.SchemaField(col, self.TYPE_MAPPING.get(dtype.base_type(), "STRING")))
        return fields

    @staticmethod
    def _polars_type(field: Any) -> Any:
        mapping = {
            "STRING": pl.Utf8,
            "INTEGER": pl.Int64,
            "INT64": pl.Int64,
            "FLOAT": pl.Float64,
            "FLOAT64": pl.Float64,
            "BOOLEAN": pl.Boolean,
            "BOOL": pl.Boolean,
            "DATE": pl.Date,
            "DATETIME": pl.Datetime,
            "TIMESTAMP": pl.Datetime,
        }
        dtype = mapping.get(field.field_type.upper(), pl.Utf8)
        return pl.List(dtype) if field.mode == "REPEATED" else dtype

    @staticmethod
    def _to_bigquery_compatible(df: pl.DataFrame) -> List[Dict[str, Any]]:
        """Dates and datetimes become ISO strings; everything else is JSON-native."""
        records = df.to_dicts()
        for record in records:
            for key, value in record.items():
                if isinstance(value, (date, datetime)):
                    record[key] = value.isoformat()
        return records


_STORE_BACKENDS = {
    "memory": InMemoryTableStore,
    "parquet": ParquetTableStore,
    "bigquery": BigQueryTableStore,
}


def get_table_store(backend: Optional[str] = None) -> TableStore:
    """
    Build the table store configured by settings.storage_backend.

    Args:
        backend: Override backend name (memory, parquet, bigquery)
    """
    name = backend or settings.storage_backend
    if name not in _STORE_BACKENDS:
        raise ValueError(f"Unknown storage backend: {name}. Expected one of {sorted(_STORE_BACKENDS)}")
    return _STORE_BACKENDS[name]()
