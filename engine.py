# engine.py
"""KVEngine: in-memory reads, append-only durable writes.

Every mutation updates the index synchronously and queues a durability job.
The flusher drains the queue to the log in batches on the writer thread, at
most one flush at a time, honoring the stream's backpressure. Startup replays
the log on a loader thread and resolves ``loaded`` with the live-key count.
"""

from __future__ import annotations

import os
import sys
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from errors import KVStoreError, StartupIOError, StoreClosedError, WriteError
from index import KeyIndex
from storage import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_ENCODING,
    DEFAULT_HIGH_WATER_MARK,
    LogWriter,
    Record,
    WriteCallback,
    encode_record,
    replay,
)
from writequeue import Batch, QueueEntry, WriteQueue

# --------------------------- Logging ---------------------------
_logger = logging.getLogger("kvstore.engine")
if not _logger.handlers:
    _h = logging.StreamHandler(stream=sys.stderr)
    _h.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    _logger.addHandler(_h)
_logger.setLevel(os.getenv("KV_LOG_LEVEL", "WARNING").upper())

DEFAULT_WRITE_BUNDLE = 1000
EVENTS = ("load", "error", "drain")

Tracer = Callable[[str, Dict[str, Any]], None]


class KVEngine:
    """Coordinates the in-memory index, the write queue and the append-only log.

    Parameters
    ----------
    path : Optional[str]
        Log file path. None keeps the store purely in memory.
    write_bundle : int
        Maximum records per physical write.
    high_water_mark : int
        Writer backlog (bytes) above which a write asks the flusher to wait.
    fsync : bool
        fsync after every physical write.
    encoding : str
        Log file encoding.
    chunk_size : int
        Read size used while replaying the log.
    tracer : Optional[Callable[[str, dict], None]]
        Instrumentation hook called with an event name and its fields.
    on_load, on_error, on_drain : Optional[Callable]
        Listeners subscribed before recovery starts, so no early signal is missed.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        *,
        write_bundle: int = DEFAULT_WRITE_BUNDLE,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
        fsync: bool = False,
        encoding: str = DEFAULT_ENCODING,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        tracer: Optional[Tracer] = None,
        on_load: Optional[Callable[[int], Any]] = None,
        on_error: Optional[Callable[[KVStoreError], Any]] = None,
        on_drain: Optional[Callable[[], Any]] = None,
    ) -> None:
        if write_bundle < 1:
            raise ValueError("write_bundle must be >= 1")
        self.path = path
        self.write_bundle = write_bundle
        self.high_water_mark = high_water_mark
        self.fsync = fsync
        self.encoding = encoding
        self.chunk_size = chunk_size
        self._tracer = tracer

        self._lock = threading.RLock()
        self._index = KeyIndex()
        self._queue = WriteQueue()
        self._flushing = False
        self._inflight = 0
        self._generation = 0
        self._closed = False
        self._idle = threading.Event()
        self._idle.set()
        self._listeners: Dict[str, List[Callable[..., Any]]] = {e: [] for e in EVENTS}

        self.loaded: "Future[int]" = Future()
        self._loading = False
        # Keys written by the caller while replay runs; replay must not clobber them.
        self._touched: Optional[Set[Any]] = None
        self._writer: Optional[LogWriter] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._load_thread: Optional[threading.Thread] = None
        for event, listener in (("load", on_load), ("error", on_error), ("drain", on_drain)):
            if listener is not None:
                self.on(event, listener)

        if self.path is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="kvstore-memory"
            )
            self.loaded.set_result(0)
            self._trace("load.done", length=0)
            return

        self._writer = self._open_writer(self._generation)
        self._loading = True
        self._touched = set()
        self._load_thread = threading.Thread(
            target=self._load,
            args=(self._generation,),
            name=f"kvstore-loader:{path}",
            daemon=True,
        )
        self._load_thread.start()

    def __repr__(self) -> str:
        return f"KVEngine(path={self.path!r}, write_bundle={self.write_bundle})"

    def __enter__(self) -> "KVEngine":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------- Mutations -------------------------

    def set(self, key: Any, val: Any, callback: Optional[WriteCallback] = None) -> None:
        """Store ``val`` at ``key``; ``val=None`` removes the key.

        The index changes before this returns. ``callback(err)`` fires once the
        record has been handed to the log (immediately-but-asynchronously in
        memory mode).

        Raises
        ------
        TypeError, ValueError
            If the key or value cannot be encoded as a JSON record.
        StoreClosedError
            If the store was closed.
        """
        encode_record(key, val)
        with self._lock:
            if self._closed:
                raise StoreClosedError("store is closed")
            if val is None:
                self._index.delete(key)
            else:
                self._index.put(key, val)
            if self._touched is not None:
                self._touched.add(key)
            self._queue.enqueue(key, callback)
            self._idle.clear()
            self._maybe_flush()

    def remove(self, key: Any, callback: Optional[WriteCallback] = None) -> None:
        """Remove ``key``; logs a tombstone."""
        self.set(key, None, callback)

    def reset(self) -> None:
        """Drop all data: index, queue, and the log file on disk.

        Work still in flight belongs to the previous generation and is
        abandoned; its callbacks are not invoked.
        """
        with self._lock:
            if self._closed:
                raise StoreClosedError("store is closed")
            self._generation += 1
            self._flushing = False
            self._inflight = 0
            self._index.clear()
            self._queue.clear()
            if self._touched is not None:
                self._touched.clear()

            old, self._writer = self._writer, None
            if old is not None:
                old.close(abandon=True, wait=False)
            if self.path is not None:
                try:
                    os.unlink(self.path)
                except FileNotFoundError:
                    pass
                self._writer = self._open_writer(self._generation)
            self._idle.set()
            self._trace("reset", generation=self._generation)

    # --------------------------- Reads ---------------------------

    def get(self, key: Any) -> Optional[Any]:
        """Return the value stored at key, or None if missing."""
        with self._lock:
            return self._index.get(key)

    def size(self) -> int:
        with self._lock:
            return self._index.size()

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: Any) -> bool:
        with self._lock:
            return key in self._index

    def first_key(self) -> Optional[Any]:
        with self._lock:
            return self._index.first_key()

    def last_key(self) -> Optional[Any]:
        with self._lock:
            return self._index.last_key()

    def keys(self) -> Iterator[Any]:
        with self._lock:
            return self._index.keys()

    def items(self) -> Iterator[Tuple[Any, Any]]:
        with self._lock:
            return self._index.items()

    def for_each(self, visit: Callable[[Any, Any], Any]) -> None:
        """Call ``visit(key, val)`` per live key in insertion order.

        Stops as soon as ``visit`` returns False (exactly False, not just
        falsy). Keys removed during the walk are skipped.
        """
        with self._lock:
            keys = list(self._index.keys())
        for key in keys:
            with self._lock:
                if key not in self._index:
                    continue
                val = self._index.get(key)
            if visit(key, val) is False:
                break

    # -------------------------- Signals --------------------------

    def on(self, event: str, listener: Callable[..., Any]) -> Callable[..., Any]:
        """Subscribe to "load" (count), "error" (exc) or "drain" ().

        A "load" listener added after loading finished is called right away.
        """
        if event not in EVENTS:
            raise ValueError(f"unknown event {event!r}; expected one of {EVENTS}")
        if event == "load":
            self.loaded.add_done_callback(lambda fut: self._deliver_load(fut, listener))
            return listener
        with self._lock:
            self._listeners[event].append(listener)
        return listener

    def off(self, event: str, listener: Callable[..., Any]) -> None:
        with self._lock:
            try:
                self._listeners[event].remove(listener)
            except (KeyError, ValueError):
                pass

    def wait_loaded(self, timeout: Optional[float] = None) -> int:
        """Block until replay finishes; return the live-key count.

        Raises StartupIOError if the log could not be read, TimeoutError on timeout.
        """
        return self.loaded.result(timeout)

    def wait_drained(self, timeout: Optional[float] = None) -> bool:
        """Block until every mutation issued so far has been written."""
        return self._idle.wait(timeout)

    # ------------------------- Lifecycle -------------------------

    def close(self, timeout: Optional[float] = None) -> None:
        """Flush what is queued, then release the log handle and threads."""
        if self._closed:
            return
        if self._load_thread is not None:
            self._load_thread.join(timeout)
        if not self.wait_drained(timeout):
            _logger.warning("Closing %r with writes still pending.", self)
        with self._lock:
            self._closed = True
            writer, self._writer = self._writer, None
        if writer is not None:
            writer.close()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        self._trace("close")

    @property
    def closed(self) -> bool:
        return self._closed

    # ----------------------- Recovery -----------------------------

    def _load(self, generation: int) -> None:
        length = 0
        failure: Optional[StartupIOError] = None
        try:
            for record in replay(
                self.path,
                encoding=self.encoding,
                chunk_size=self.chunk_size,
                on_error=self._emit_error,
            ):
                with self._lock:
                    if generation != self._generation:
                        _logger.debug("Replay of %s stopped by reset.", self.path)
                        break
                    length += self._apply_record(record)
        except StartupIOError as e:
            failure = e

        with self._lock:
            self._loading = False
            self._touched = None

        if failure is not None:
            self._emit_error(failure)
            self.loaded.set_exception(failure)
        else:
            self._trace("load.done", length=length)
            self.loaded.set_result(length)

        with self._lock:
            self._maybe_flush()

    def _apply_record(self, record: Record) -> int:
        """Replay one record; return its effect on the live-key count."""
        if self._touched is not None and record.key in self._touched:
            return 0
        if record.is_tombstone:
            return -1 if self._index.delete(record.key) else 0
        return 1 if self._index.put(record.key, record.val) else 0

    # ------------------------ Flushing ---------------------------

    def _open_writer(self, generation: int) -> LogWriter:
        return LogWriter(
            self.path,
            high_water_mark=self.high_water_mark,
            fsync=self.fsync,
            encoding=self.encoding,
            on_drain=lambda: self._write_drain(generation),
        )

    def _maybe_flush(self) -> None:
        # Caller holds self._lock.
        if self._flushing or self._loading or self._closed or not len(self._queue):
            return
        self._flush()

    def _flush(self) -> None:
        # Snapshot the handle: a reset must not redirect these batches.
        writer = self._writer
        generation = self._generation

        rejected: List[Tuple[QueueEntry, Exception]] = []
        batches = self._queue.take_batches(
            self._index.get,
            self.write_bundle,
            on_unencodable=lambda entry, exc: rejected.append((entry, exc)),
        )
        if batches:
            self._flushing = True
        for batch in batches:
            self._inflight += 1
            self._trace("flush.batch", records=len(batch), callbacks=len(batch.callbacks))
            if self.path is None:
                self._executor.submit(self._complete_in_memory, generation, batch)
                continue
            batch.drained = writer.write(
                batch.payload,
                lambda err, batch=batch: self._on_batch_written(generation, batch, err),
            )

        for entry, exc in rejected:
            self._report_unencodable(entry, exc)
        if not batches:
            self._write_drain(generation)

    def _on_batch_written(self, generation: int, batch: Batch, err: Optional[WriteError]) -> None:
        with self._lock:
            if generation != self._generation:
                _logger.debug("Dropping completion of %d records from before reset.", len(batch))
                return
            self._inflight -= 1
            drained = batch.drained
        self._trace("write.done", records=len(batch), error=err)

        if drained:
            self._write_drain(generation)

        if err is not None and not batch.callbacks:
            self._emit_error(err)
            return
        self._run_callbacks(batch, err)

    def _complete_in_memory(self, generation: int, batch: Batch) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._inflight -= 1
        self._run_callbacks(batch, None)
        self._write_drain(generation)

    def _write_drain(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._flushing = False
            if len(self._queue):
                self._maybe_flush()
                return
            if self._inflight:
                return
            self._idle.set()
        self._trace("drain")
        self._emit("drain")

    def _report_unencodable(self, entry: QueueEntry, exc: Exception) -> None:
        err = WriteError(f"Could not encode record for {entry.key!r}: {exc}")
        err.__cause__ = exc
        _logger.warning("%s", err)
        if entry.callback is None:
            self._emit_error(err)
            return
        try:
            entry.callback(err)
        except Exception:
            _logger.exception("Write callback raised")

    def _run_callbacks(self, batch: Batch, err: Optional[WriteError]) -> None:
        for callback in batch.callbacks:
            try:
                callback(err)
            except Exception:
                _logger.exception("Write callback raised")

    # ------------------------ Signals (internal) ------------------

    def _emit(self, event: str, *args: Any) -> int:
        with self._lock:
            listeners = list(self._listeners[event])
        for listener in listeners:
            try:
                listener(*args)
            except Exception:
                _logger.exception("%s listener raised", event)
        return len(listeners)

    def _emit_error(self, err: KVStoreError) -> None:
        if not self._emit("error", err):
            _logger.error("%s: %s", type(err).__name__, err)

    def _deliver_load(self, fut: "Future[int]", listener: Callable[[int], Any]) -> None:
        if fut.exception() is not None:
            return
        listener(fut.result())

    def _trace(self, event: str, **fields: Any) -> None:
        if self._tracer is not None:
            self._tracer(event, fields)
