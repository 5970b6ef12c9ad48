"""Document stores: hierarchical paths, merge writes and per-batch atomicity."""

import copy
import json
import logging
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import psycopg2
import psycopg2.extras

from .errors import FatalConfigurationError, LoadBatchError, SinkUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class WriteOp:
    """One buffered write: ``set`` (optionally merging) or dotted-field ``update``"""

    kind: str  # set | update
    path: str
    data: Dict[str, Any]
    merge: bool = True
    meta: Dict[str, Any] = field(default_factory=dict)


def serialized_size(doc: Any) -> int:
    """Bytes the document occupies once encoded as compact UTF-8 JSON."""
    return len(
        json.dumps(doc, ensure_ascii=False, separators=(",", ":"), default=str).encode(
            "utf-8"
        )
    )


def validate_path(path: str) -> None:
    segments = path.split("/")
    if any(not segment for segment in segments) or len(segments) % 2:
        raise ValueError(
            f"Invalid document path '{path}': expected collection/id pairs"
        )


def deep_merge(base: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Merge maps recursively; lists and scalars are replaced wholesale."""
    merged = copy.deepcopy(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_update(base: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    """Apply dotted-path field updates (``"a.b": 1``) to a copy of ``base``."""
    updated = copy.deepcopy(base)
    for dotted, value in fields.items():
        target = updated
        parts = dotted.split(".")
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        target[parts[-1]] = copy.deepcopy(value)
    return updated


class DocumentStore(ABC):
    """Sink interface shared by every destination."""

    name = "store"

    def __init__(self, max_document_bytes: int = 1_000_000):
        self.max_document_bytes = max_document_bytes

    @abstractmethod
    def ping(self) -> None:
        """Raise SinkUnavailableError when the store cannot be reached."""

    @abstractmethod
    def get(self, path: str) -> Optional[Dict[str, Any]]:
        """Return the stored document or None."""

    @abstractmethod
    def commit_batch(self, ops: List[WriteOp]) -> None:
        """Apply all ops atomically or raise LoadBatchError."""

    def close(self) -> None:
        pass

    def _resolve(
        self, ops: List[WriteOp], load: Any
    ) -> Dict[str, Dict[str, Any]]:
        """Compute final documents for a batch; ``load(path)`` reads current state."""
        pending: Dict[str, Dict[str, Any]] = {}
        for op in ops:
            try:
                validate_path(op.path)
            except ValueError as e:
                raise LoadBatchError(str(e), [{"path": op.path}]) from e

            current = pending[op.path] if op.path in pending else load(op.path)
            if op.kind == "update":
                if current is None:
                    raise LoadBatchError(
                        f"Cannot update missing document {op.path}",
                        [{"path": op.path, "error": "not found"}],
                    )
                document = apply_update(current, op.data)
            elif op.merge and current is not None:
                document = deep_merge(current, op.data)
            else:
                document = copy.deepcopy(op.data)

            size = serialized_size(document)
            if size > self.max_document_bytes:
                raise LoadBatchError(
                    f"Document {op.path} is {size} bytes, limit is "
                    f"{self.max_document_bytes}",
                    [{"path": op.path, "error": "too large", "bytes": size}],
                )
            pending[op.path] = document
        return pending


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteDocumentStore(DocumentStore):
    """Documents as JSON text rows in a local SQLite file."""

    name = "sqlite"

    def __init__(self, db_path: str, max_document_bytes: int = 1_000_000):
        super().__init__(max_document_bytes)
        self.db_path = Path(db_path)
        # SQLite allows one writer; batches commit one at a time
        self._write_lock = threading.Lock()
        self._schema_ready = False

    def get_connection(self) -> sqlite3.Connection:
        """Get database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        conn = self.get_connection()
        try:
            with conn:
                conn.executescript(
                    """
                CREATE TABLE IF NOT EXISTS documents (
                    path TEXT PRIMARY KEY,
                    parent TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_documents_parent
                    ON documents(parent);
                """
                )
        finally:
            conn.close()
        self._schema_ready = True

    def ping(self) -> None:
        try:
            self.ensure_schema()
            conn = self.get_connection()
            try:
                conn.execute("SELECT 1").fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise SinkUnavailableError(f"SQLite store {self.db_path}: {e}") from e

    def get(self, path: str) -> Optional[Dict[str, Any]]:
        self.ensure_schema()
        conn = self.get_connection()
        try:
            row = conn.execute(
                "SELECT data FROM documents WHERE path = ?", (path,)
            ).fetchone()
        finally:
            conn.close()
        return json.loads(row["data"]) if row else None

    def list_paths(self, prefix: str = "") -> List[str]:
        self.ensure_schema()
        conn = self.get_connection()
        try:
            rows = conn.execute(
                "SELECT path FROM documents WHERE path LIKE ? ORDER BY path",
                (f"{prefix}%",),
            ).fetchall()
        finally:
            conn.close()
        return [row["path"] for row in rows]

    def commit_batch(self, ops: List[WriteOp]) -> None:
        try:
            self.ensure_schema()
        except sqlite3.Error as e:
            raise SinkUnavailableError(f"SQLite store {self.db_path}: {e}") from e

        with self._write_lock:
            conn = self.get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")

                def load(path: str) -> Optional[Dict[str, Any]]:
                    row = conn.execute(
                        "SELECT data FROM documents WHERE path = ?", (path,)
                    ).fetchone()
                    return json.loads(row["data"]) if row else None

                documents = self._resolve(ops, load)
                now = _utc_now()
                conn.executemany(
                    """
                    INSERT INTO documents (path, parent, data, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(path) DO UPDATE SET
                        data = excluded.data, updated_at = excluded.updated_at
                    """,
                    [
                        (
                            path,
                            path.rsplit("/", 1)[0],
                            json.dumps(doc, ensure_ascii=False, default=str),
                            now,
                        )
                        for path, doc in documents.items()
                    ],
                )
                conn.commit()
            except LoadBatchError:
                conn.rollback()
                raise
            except sqlite3.Error as e:
                conn.rollback()
                raise LoadBatchError(
                    f"SQLite batch failed: {e}", [{"path": op.path} for op in ops]
                ) from e
            finally:
                conn.close()


class PostgresDocumentStore(DocumentStore):
    """Documents as JSONB rows in PostgreSQL; batches run in one transaction."""

    name = "postgres"

    def __init__(self, database_url: str, max_document_bytes: int = 1_000_000):
        super().__init__(max_document_bytes)
        self.database_url = database_url
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def get_connection(self) -> Any:
        """Get PostgreSQL connection with proper settings."""
        try:
            conn = psycopg2.connect(
                self.database_url, cursor_factory=psycopg2.extras.RealDictCursor
            )
            conn.autocommit = False
            return conn
        except psycopg2.OperationalError as e:
            logger.error(f"Failed to connect to PostgreSQL: {e}")
            raise SinkUnavailableError(f"PostgreSQL unreachable: {e}") from e

    def ensure_schema(self) -> None:
        with self._schema_lock:
            if self._schema_ready:
                return
            conn = self.get_connection()
            try:
                with conn:
                    with conn.cursor() as cursor:
                        cursor.execute(
                            """
                        CREATE TABLE IF NOT EXISTS documents (
                            path TEXT PRIMARY KEY,
                            parent TEXT NOT NULL,
                            data JSONB NOT NULL,
                            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                        );
                        CREATE INDEX IF NOT EXISTS idx_documents_parent
                            ON documents(parent);
                        """
                        )
            finally:
                conn.close()
            self._schema_ready = True

    def ping(self) -> None:
        try:
            self.ensure_schema()
            conn = self.get_connection()
            try:
                with conn.cursor() as cursor:
                    cursor.execute("SELECT 1")
            finally:
                conn.close()
        except psycopg2.Error as e:
            logger.error(f"PostgreSQL is not usable: {e}")
            raise SinkUnavailableError(f"PostgreSQL not usable: {e}") from e

    def get(self, path: str) -> Optional[Dict[str, Any]]:
        self.ensure_schema()
        conn = self.get_connection()
        try:
            with conn.cursor() as cursor:
                cursor.execute("SELECT data FROM documents WHERE path = %s", (path,))
                row = cursor.fetchone()
        finally:
            conn.close()
        return row["data"] if row else None

    def commit_batch(self, ops: List[WriteOp]) -> None:
        self.ensure_schema()
        conn = self.get_connection()
        try:
            with conn.cursor() as cursor:
                paths = sorted({op.path for op in ops})
                # Row locks serialize concurrent batches touching the same paths
                cursor.execute(
                    "SELECT path, data FROM documents WHERE path = ANY(%s) FOR UPDATE",
                    (paths,),
                )
                existing = {row["path"]: row["data"] for row in cursor.fetchall()}
                documents = self._resolve(ops, existing.get)
                psycopg2.extras.execute_batch(
                    cursor,
                    """
                    INSERT INTO documents (path, parent, data, updated_at)
                    VALUES (%s, %s, %s, NOW())
                    ON CONFLICT (path) DO UPDATE SET
                        data = EXCLUDED.data, updated_at = NOW()
                    """,
                    [
                        (path, path.rsplit("/", 1)[0], psycopg2.extras.Json(doc))
                        for path, doc in documents.items()
                    ],
                )
            conn.commit()
        except LoadBatchError:
            conn.rollback()
            raise
        except psycopg2.OperationalError as e:
            conn.rollback()
            raise SinkUnavailableError(f"PostgreSQL unreachable: {e}") from e
        except psycopg2.Error as e:
            conn.rollback()
            raise LoadBatchError(
                f"PostgreSQL batch failed: {e}", [{"path": op.path} for op in ops]
            ) from e
        finally:
            conn.close()


class JsonExportStore(DocumentStore):
    """One pretty-printed JSON file per document path under an export directory."""

    name = "json"

    def __init__(self, export_dir: str, max_document_bytes: int = 1_000_000):
        super().__init__(max_document_bytes)
        self.export_dir = Path(export_dir)
        self._write_lock = threading.Lock()

    def _file_for(self, path: str) -> Path:
        parts = path.split("/")
        return self.export_dir.joinpath(*parts[:-1], f"{parts[-1]}.json")

    def ping(self) -> None:
        try:
            self.export_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SinkUnavailableError(f"Export dir {self.export_dir}: {e}") from e
        if not os.access(self.export_dir, os.W_OK):
            raise SinkUnavailableError(f"Export dir {self.export_dir} is not writable")

    def get(self, path: str) -> Optional[Dict[str, Any]]:
        file_path = self._file_for(path)
        if not file_path.exists():
            return None
        return json.loads(file_path.read_text(encoding="utf-8"))

    def commit_batch(self, ops: List[WriteOp]) -> None:
        with self._write_lock:
            documents = self._resolve(ops, self.get)
            staged = []
            try:
                for path, doc in documents.items():
                    target = self._file_for(path)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    temp = target.parent / f"{target.name}.tmp"
                    temp.write_text(
                        json.dumps(doc, ensure_ascii=False, indent=2, default=str),
                        encoding="utf-8",
                    )
                    staged.append((temp, target))
                for temp, target in staged:
                    os.replace(temp, target)
            except OSError as e:
                for temp, _ in staged:
                    temp.unlink(missing_ok=True)
                raise LoadBatchError(
                    f"JSON export batch failed: {e}", [{"path": op.path} for op in ops]
                ) from e


def create_document_store(destination: str, settings: Any) -> DocumentStore:
    """Factory function to create the store for a destination name."""
    limit = settings.max_document_bytes
    if destination == "sqlite":
        logger.info(f"Using SQLite document store at {settings.database_file}")
        return SQLiteDocumentStore(settings.database_file, max_document_bytes=limit)
    if destination == "postgres":
        if not settings.database_url or not settings.database_url.startswith("postgres"):
            raise FatalConfigurationError(
                "Destination 'postgres' requires DATABASE_URL=postgres://..."
            )
        logger.info("Using PostgreSQL document store")
        return PostgresDocumentStore(settings.database_url, max_document_bytes=limit)
    if destination == "json":
        logger.info(f"Using JSON export store at {settings.export_dir}")
        return JsonExportStore(settings.export_dir, max_document_bytes=limit)
    raise FatalConfigurationError(f"Unknown destination: {destination}")
