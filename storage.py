"""Append-only log storage for the KV store.

On-disk format (one record per line, UTF-8):
    {"key":<json scalar>,"val":<json value>}\\n    upsert
    {"key":<json scalar>}\\n                      tombstone ("val" omitted or null)

Error policy (replay never aborts):
  - Empty lines, undecodable bytes, unparseable JSON, records without a
    string or number "key": reported as CorruptedRecordError through
    ``on_error`` (WARNING log) and skipped. Rows are decoded one at a time,
    so bad bytes spoil only their own row.
  - Trailing unterminated fragment (crash mid-write): reported as
    TruncatedTailError and dropped; every complete record before it stays.
  - Missing file: nothing to replay (DEBUG log). Any other OSError while
    opening or reading raises StartupIOError.

Durability:
  - LogWriter owns one append-mode handle and one writer thread. Each chunk is
    written then flushed; with ``fsync=True`` it is also fsync'ed.
  - ``write()`` never blocks on disk. Its return value says whether the
    buffered backlog is still under the high-water mark; after a False return
    the drain listener fires once the backlog is empty.

This module logs to STDERR only (never STDOUT).
"""

from __future__ import annotations

import json
import os
import sys
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Iterator, Optional, Tuple

from errors import CorruptedRecordError, StartupIOError, TruncatedTailError, WriteError

# --------------------------- Logging ---------------------------
_logger = logging.getLogger("kvstore.storage")
if not _logger.handlers:
    _h = logging.StreamHandler(stream=sys.stderr)
    _h.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    _logger.addHandler(_h)
_logger.setLevel(os.getenv("KV_LOG_LEVEL", "WARNING").upper())

# --------------------------- Defaults --------------------------
DEFAULT_ENCODING = "utf-8"
DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_HIGH_WATER_MARK = 16 * 1024

_KEY_TYPES = (str, int, float)

WriteCallback = Callable[[Optional[WriteError]], None]


def _is_key(key: Any) -> bool:
    # bool is an int subclass: True would collapse onto 1 in the index.
    return isinstance(key, _KEY_TYPES) and not isinstance(key, bool)


@dataclass(frozen=True)
class Record:
    """One logged mutation. ``val is None`` marks a tombstone."""

    key: Any
    val: Any = None

    @property
    def is_tombstone(self) -> bool:
        return self.val is None


# ------------------------- Record codec -------------------------

def encode_record(key: Any, val: Any) -> str:
    """Serialize one record as a single JSON line (without the newline).

    Keys compare as Python values, so ``1`` and ``1.0`` name the same key.

    Raises
    ------
    TypeError
        If key is not a string or number, or val is not JSON-serializable.
    ValueError
        If val contains NaN/Infinity or circular references.
    """
    if not _is_key(key):
        raise TypeError(f"Key must be a string or number, got {type(key).__name__}.")
    row = {"key": key} if val is None else {"key": key, "val": val}
    return json.dumps(row, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def decode_record(row: str, lineno: Optional[int] = None) -> Record:
    """Parse one log line into a Record.

    Raises
    ------
    CorruptedRecordError
        If the line is empty, not a JSON object, or has no usable key.
    """
    if not row:
        raise CorruptedRecordError(
            "Empty lines never appear in a healthy database", row=row, lineno=lineno
        )
    try:
        parsed = json.loads(row)
    except ValueError:
        parsed = None
    if not isinstance(parsed, dict) or "key" not in parsed or not _is_key(parsed["key"]):
        raise CorruptedRecordError(
            f"Could not load corrupted row: {row}", row=row, lineno=lineno
        )
    return Record(key=parsed["key"], val=parsed.get("val"))


# ---------------------------- Replay ----------------------------

def replay(
    path: str,
    *,
    encoding: str = DEFAULT_ENCODING,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    on_error: Optional[Callable[[CorruptedRecordError], None]] = None,
) -> Iterator[Record]:
    """Yield records from the log in append order.

    The file is streamed in ``chunk_size`` byte pieces and reassembled into
    newline-delimited rows, so a record split across reads is still whole.
    Each row is decoded on its own: bad bytes spoil only their row. Bad rows
    are handed to ``on_error`` and skipped.

    Raises
    ------
    StartupIOError
        If the file exists but cannot be opened or read.
    """
    report = on_error or _log_corruption
    try:
        fh = open(path, "rb")
    except FileNotFoundError:
        _logger.debug("No log file at %s; nothing to replay.", path)
        return
    except OSError as e:
        raise StartupIOError(f"Could not open {path}: {e}") from e

    buffer = b""
    lineno = 0
    with fh:
        while True:
            try:
                chunk = fh.read(chunk_size)
            except OSError as e:
                raise StartupIOError(f"Could not read {path}: {e}") from e
            if not chunk:
                break
            buffer += chunk
            if b"\n" not in chunk:
                continue
            *rows, buffer = buffer.split(b"\n")
            for raw in rows:
                lineno += 1
                try:
                    yield decode_record(_decode_row(raw, encoding, lineno), lineno)
                except CorruptedRecordError as err:
                    _logger.warning("Skipping line %d: %s", lineno, err)
                    report(err)

    if buffer:
        _logger.warning(
            "Detected unterminated trailing line in %s; ignoring last partial line.", path
        )
        report(TruncatedTailError(buffer.decode(encoding, errors="replace")))


def _decode_row(raw: bytes, encoding: str, lineno: int) -> str:
    try:
        return raw.decode(encoding)
    except UnicodeDecodeError as e:
        text = raw.decode(encoding, errors="replace")
        raise CorruptedRecordError(
            f"Could not decode row ({e.reason}): {text}", row=text, lineno=lineno
        ) from e


def _log_corruption(err: CorruptedRecordError) -> None:
    _logger.debug("Unobserved replay diagnostic: %s", err)


# ---------------------------- Writer ----------------------------

class LogWriter:
    """Append-mode output stream with a writer thread and backpressure.

    Parameters
    ----------
    path : str
        Log file path; its parent directory is created if needed.
    high_water_mark : int
        Buffered byte count at which ``write()`` starts returning False.
    fsync : bool
        If True, fsync after every chunk.
    encoding : str
        Text encoding for the file. Default: "utf-8".
    on_drain : Optional[Callable[[], None]]
        Called on the writer thread when the backlog empties after a
        ``write()`` returned False.
    """

    def __init__(
        self,
        path: str,
        *,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
        fsync: bool = False,
        encoding: str = DEFAULT_ENCODING,
        on_drain: Optional[Callable[[], None]] = None,
    ) -> None:
        self.path = path
        self.high_water_mark = high_water_mark
        self.fsync = fsync
        self.encoding = encoding
        self._on_drain = on_drain

        parent = os.path.dirname(path) or "."
        try:
            os.makedirs(parent, exist_ok=True)
            self._fh = open(path, "a", encoding=encoding, newline="")
        except OSError as e:
            raise StartupIOError(f"Could not open {path} for append: {e}") from e

        self._pending: Deque[Tuple[str, int, Optional[WriteCallback]]] = deque()
        self._buffered = 0
        self._need_drain = False
        self._closing = False
        self._cond = threading.Condition()
        self._thread = threading.Thread(
            target=self._run, name=f"kvstore-writer:{path}", daemon=True
        )
        self._thread.start()

    def __repr__(self) -> str:
        return (
            f"LogWriter(path={self.path!r}, high_water_mark={self.high_water_mark}, "
            f"fsync={self.fsync}, encoding={self.encoding!r})"
        )

    @property
    def buffered(self) -> int:
        """Bytes handed to ``write()`` and not yet written."""
        with self._cond:
            return self._buffered

    # ------------------------- Public API -------------------------

    def write(self, data: str, callback: Optional[WriteCallback] = None) -> bool:
        """Queue ``data`` for appending; ``callback(err)`` runs once it is written.

        Returns True while the backlog is under the high-water mark, False when
        the caller should wait for the drain listener before writing more.

        Raises
        ------
        WriteError
            If the writer has been closed.
        """
        size = len(data.encode(self.encoding))
        with self._cond:
            if self._closing:
                raise WriteError(f"write after close: {self.path}")
            self._pending.append((data, size, callback))
            self._buffered += size
            ok = self._buffered < self.high_water_mark
            if not ok:
                self._need_drain = True
            self._cond.notify()
        return ok

    def close(self, *, abandon: bool = False, wait: bool = True) -> None:
        """Stop accepting writes and close the handle once the thread exits.

        With ``abandon=True`` chunks not yet written are dropped and their
        callbacks never run. With ``wait=False`` the call returns without
        joining the writer thread.
        """
        with self._cond:
            self._closing = True
            if abandon:
                self._pending.clear()
                self._buffered = 0
                self._need_drain = False
            self._cond.notify()
        if wait and threading.current_thread() is not self._thread:
            self._thread.join()

    # ----------------------- Internal helpers ----------------------

    def _write_chunk(self, data: str) -> None:
        self._fh.write(data)
        self._fh.flush()
        if self.fsync:
            os.fsync(self._fh.fileno())

    def _invoke(self, fn: Callable[..., None], *args: Any) -> None:
        # The writer thread must outlive misbehaving callbacks.
        try:
            fn(*args)
        except Exception:
            _logger.exception("Callback for %s raised", self.path)

    def _run(self) -> None:
        try:
            while True:
                with self._cond:
                    while not self._pending and not self._closing:
                        self._cond.wait()
                    if not self._pending:
                        break
                    data, size, callback = self._pending.popleft()

                err: Optional[WriteError] = None
                try:
                    self._write_chunk(data)
                except (OSError, ValueError) as e:
                    err = WriteError(f"Append to {self.path} failed: {e}")
                    err.__cause__ = e

                with self._cond:
                    self._buffered = max(self._buffered - size, 0)
                    emit_drain = self._need_drain and self._buffered == 0
                    if emit_drain:
                        self._need_drain = False

                if callback is not None:
                    self._invoke(callback, err)
                if emit_drain and self._on_drain is not None:
                    self._invoke(self._on_drain)
        finally:
            try:
                self._fh.close()
            except OSError as e:
                _logger.warning("Closing %s failed: %s", self.path, e)
