# writequeue.py
"""Pending durability jobs and the batches they are flushed in.

A job is a key plus an optional completion callback. Jobs leave the queue in
arrival order and are grouped into batches of at most ``bundle`` records. A
batch serializes each key with the value the index holds *when the batch is
built*, so several queued writes to one key all log its latest value.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, List, NamedTuple, Optional

from storage import WriteCallback, encode_record


class QueueEntry(NamedTuple):
    key: Any
    callback: Optional[WriteCallback] = None


@dataclass
class Batch:
    """One physical write: newline-terminated records plus their completions."""

    lines: List[str] = field(default_factory=list)
    callbacks: List[WriteCallback] = field(default_factory=list)
    # Set from LogWriter.write(); False means wait for the stream's drain.
    drained: bool = True

    def __len__(self) -> int:
        return len(self.lines)

    @property
    def payload(self) -> str:
        return "".join(self.lines)


class WriteQueue:
    """Ordered queue of durability jobs."""

    def __init__(self) -> None:
        self._entries: List[QueueEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def enqueue(self, key: Any, callback: Optional[WriteCallback] = None) -> None:
        self._entries.append(QueueEntry(key, callback))

    def clear(self) -> None:
        self._entries = []

    def take_batches(
        self,
        lookup: Callable[[Any], Any],
        bundle: int,
        on_unencodable: Optional[Callable[[QueueEntry, Exception], None]] = None,
    ) -> List[Batch]:
        """Remove the jobs queued so far and return them as batches.

        ``lookup(key)`` returns the key's current value, or None for a
        tombstone. Jobs enqueued after this call starts stay queued.

        A value can stop being encodable after it was set (the caller mutated
        a stored object). Such a job is left out of every batch and handed to
        ``on_unencodable(entry, exc)``; without a handler the error propagates
        and the queue is left untouched.
        """
        if bundle < 1:
            raise ValueError("bundle must be >= 1")
        count = len(self._entries)
        batches: List[Batch] = []
        batch = Batch()
        for i, entry in enumerate(self._entries[:count]):
            try:
                line = encode_record(entry.key, lookup(entry.key))
            except (TypeError, ValueError) as exc:
                if on_unencodable is None:
                    raise
                on_unencodable(entry, exc)
            else:
                if entry.callback is not None:
                    batch.callbacks.append(entry.callback)
                batch.lines.append(line + "\n")

            if (len(batch) < bundle and i < count - 1) or not batch.lines:
                continue
            batches.append(batch)
            batch = Batch()

        del self._entries[:count]
        return batches
