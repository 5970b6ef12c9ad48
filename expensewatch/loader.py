"""Size-aware, batched loading into a document store."""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from .errors import LoadBatchError, SinkUnavailableError
from .storage import DocumentStore, WriteOp, serialized_size

logger = logging.getLogger(__name__)

# Placeholder used when sizing shard headers before the shard count is known
_SIZING_SHARDS = 99_999


@dataclass
class LoadResult:
    successes: int = 0
    failures: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)

    def merge(self, other: "LoadResult") -> None:
        self.successes += other.successes
        self.failures += other.failures
        self.details.extend(other.details)


class ShardedBatchLoader:
    """Buffers merge writes into bounded batches and splits oversized entities.

    An entity whose serialized form exceeds the size limit is split into a
    primary document (metadata, first slice of items, ``totalShards``,
    ``shardIndex`` 1) and overflow documents at ``{path}/shards/{k}`` that
    carry only their slice plus ``totalShards``, ``shardIndex`` and
    ``parentKey``. Full batches are committed in the background, with at most
    ``max_concurrent_batches`` in flight. Batches that share a path commit in
    the order they were sealed.
    """

    def __init__(
        self,
        store: DocumentStore,
        max_document_bytes: int = 950_000,
        max_batch_size: int = 500,
        max_concurrent_batches: int = 2,
        pause_between_batches: float = 0.0,
    ):
        self.store = store
        self.max_document_bytes = max_document_bytes
        self.max_batch_size = max_batch_size
        self.pause_between_batches = pause_between_batches

        self._ops: List[WriteOp] = []
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_batches, thread_name_prefix="load-batch"
        )
        self._slots = threading.BoundedSemaphore(max_concurrent_batches)
        self._futures: List[Tuple[int, Future]] = []
        self._in_flight: List[Tuple[Future, Set[str]]] = []
        self._lock = threading.Lock()
        self._batches_sealed = 0
        self._pending = LoadResult()

    @classmethod
    def from_settings(cls, store: DocumentStore, settings: Any) -> "ShardedBatchLoader":
        return cls(
            store,
            max_document_bytes=settings.document_size_limit,
            max_batch_size=settings.max_batch_size,
            max_concurrent_batches=settings.max_concurrent_batches,
            pause_between_batches=settings.load_batch_pause_seconds,
        )

    # Buffering ------------------------------------------------------------

    def _enqueue(self, op: WriteOp) -> None:
        with self._lock:
            self._ops.append(op)
            ready = len(self._ops) >= self.max_batch_size
            if ready:
                batch, self._ops = self._ops, []
        if ready:
            self._submit(batch)

    def _reject(self, path: str, error: str, **extra: Any) -> None:
        logger.error(f"Rejected write to {path}: {error}")
        with self._lock:
            self._pending.failures += 1
            self._pending.details.append({"path": path, "error": error, **extra})

    def set(self, path: str, doc: Dict[str, Any], merge: bool = True) -> bool:
        """Queue a merge write. Returns False if the document can never fit."""
        size = serialized_size(doc)
        if size > self.max_document_bytes:
            self._reject(path, "document exceeds size limit", bytes=size)
            return False
        self._enqueue(WriteOp("set", path, doc, merge=merge))
        return True

    def update(self, path: str, fields: Dict[str, Any]) -> None:
        """Queue a dotted-field update of an existing document."""
        self._enqueue(WriteOp("update", path, fields))

    def set_entity(
        self,
        path: str,
        metadata: Dict[str, Any],
        items: List[Any],
        items_field: str = "items",
    ) -> int:
        """Queue an entity with a list of items, sharding it when too large.

        Returns the number of physical documents queued (0 on rejection).
        """
        shards = self.plan_shards(metadata, items, items_field, path)
        if shards is None:
            self._reject(path, "entity cannot be split under the size limit")
            return 0

        total = len(shards)
        for index, chunk in enumerate(shards, start=1):
            if index == 1:
                doc = dict(metadata)
                doc[items_field] = chunk
                doc.update(
                    {
                        "totalShards": total,
                        "shardIndex": 1,
                        "isSharded": total > 1,
                        "itemCount": len(items),
                    }
                )
                self._enqueue(WriteOp("set", path, doc))
            else:
                doc = {
                    items_field: chunk,
                    "totalShards": total,
                    "shardIndex": index,
                    "parentKey": path,
                }
                self._enqueue(WriteOp("set", f"{path}/shards/{index}", doc))
        if total > 1:
            logger.info(f"Split {path} into {total} shards ({len(items)} items)")
        return total

    def plan_shards(
        self,
        metadata: Dict[str, Any],
        items: List[Any],
        items_field: str = "items",
        path: str = "",
    ) -> Optional[List[List[Any]]]:
        """Greedily slice ``items`` so every shard fits; None if impossible."""
        primary_overhead = serialized_size(
            {
                **metadata,
                items_field: [],
                "totalShards": _SIZING_SHARDS,
                "shardIndex": _SIZING_SHARDS,
                "isSharded": False,
                "itemCount": len(items),
            }
        )
        overflow_overhead = serialized_size(
            {
                items_field: [],
                "totalShards": _SIZING_SHARDS,
                "shardIndex": _SIZING_SHARDS,
                "parentKey": path,
            }
        )
        if primary_overhead > self.max_document_bytes:
            return None

        shards: List[List[Any]] = []
        current: List[Any] = []
        budget = self.max_document_bytes - primary_overhead
        used = 0
        for item in items:
            size = serialized_size(item) + 1  # separator
            if size > self.max_document_bytes - overflow_overhead:
                return None
            if current and used + size > budget:
                shards.append(current)
                current, used = [], 0
                budget = self.max_document_bytes - overflow_overhead
            elif not current and size > budget:
                # Item fits an overflow shard but not the primary
                shards.append([])
                budget = self.max_document_bytes - overflow_overhead
            current.append(item)
            used += size
        shards.append(current)
        return shards

    # Committing -----------------------------------------------------------

    def _submit(self, batch: List[WriteOp]) -> None:
        with self._lock:
            self._batches_sealed += 1
            number = self._batches_sealed
        if number > 1 and self.pause_between_batches > 0:
            time.sleep(self.pause_between_batches)

        paths = {op.path for op in batch}
        self._slots.acquire()
        with self._lock:
            # A batch touching a path still in flight waits for that commit
            self._in_flight = [(f, p) for f, p in self._in_flight if not f.done()]
            blockers = [f for f, p in self._in_flight if p & paths]
            try:
                future = self._executor.submit(
                    self._commit_one, number, batch, blockers
                )
            except BaseException:
                self._slots.release()
                raise
            self._in_flight.append((future, paths))
            self._futures.append((number, future))
        future.add_done_callback(lambda _: self._slots.release())

    def _commit_one(
        self, number: int, batch: List[WriteOp], blockers: Sequence[Future] = ()
    ) -> LoadResult:
        if blockers:
            wait(blockers)
        try:
            self.store.commit_batch(batch)
        except SinkUnavailableError:
            raise
        except Exception as e:
            logger.error(f"Batch {number} ({len(batch)} writes) failed: {e}")
            return LoadResult(
                failures=len(batch),
                details=[
                    {
                        "batch": number,
                        "error": str(e),
                        "items": e.items if isinstance(e, LoadBatchError) else [],
                        "paths": [op.path for op in batch],
                    }
                ],
            )
        logger.debug(f"Batch {number} committed ({len(batch)} writes)")
        return LoadResult(successes=len(batch))

    def commit(self) -> LoadResult:
        """Flush the open batch and wait for every batch to settle.

        Failed batches are reported in the result. SinkUnavailableError is
        re-raised after all in-flight batches have settled.
        """
        with self._lock:
            batch, self._ops = self._ops, []
        if batch:
            self._submit(batch)

        with self._lock:
            futures, self._futures = self._futures, []
            result, self._pending = self._pending, LoadResult()

        unavailable: Optional[SinkUnavailableError] = None
        for number, future in futures:
            try:
                result.merge(future.result())
            except SinkUnavailableError as e:
                unavailable = unavailable or e
                result.failures += 1
                result.details.append({"batch": number, "error": str(e)})

        if unavailable is not None:
            raise unavailable

        logger.info(
            f"Load committed to {self.store.name}: {result.successes} writes ok, "
            f"{result.failures} failed"
        )
        return result

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "ShardedBatchLoader":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
