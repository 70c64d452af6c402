# index.py
"""
In-memory index for the append-only KV store. Supports:
  - put(key, value): insert or overwrite (last-write-wins)
  - get(key): value or None
  - delete(key): remove if present, no-op otherwise
  - clear(): drop everything
  - len(index), "k" in index
  - keys(), items(): snapshot iterators in insertion order of first write;
    each call copies the live keys (O(n)) and later mutations do not affect it
  - first_key(), last_key()

Design:
  - One dict holds key -> value. Python dicts keep insertion order, so the
    dict *is* the ordered live-key sequence: overwriting keeps a key's slot,
    deleting drops it, and a later re-insert lands at the tail.
  - Membership of the key sequence and of the mapping can never diverge
    because there is only one structure.
  - This module never touches storage.
"""

from __future__ import annotations
from typing import Any, Dict, Iterator, Optional, Tuple


class KeyIndex:
    """Key -> value mapping plus the ordered sequence of live keys.

    Complexity:
      - get/put/delete/first_key/last_key: O(1)
      - keys()/items(): O(n) copy per call, then O(1) per step
    """

    def __init__(self) -> None:
        self._docs: Dict[Any, Any] = {}

    # -------------------- Public API --------------------
    def put(self, key: Any, value: Any) -> bool:
        """Insert or overwrite key's value. Return True if the key is new."""
        is_new = key not in self._docs
        self._docs[key] = value
        return is_new

    def get(self, key: Any) -> Optional[Any]:
        """Return the current value for key, or None if missing."""
        return self._docs.get(key)

    def delete(self, key: Any) -> bool:
        """Remove key if present. Return True if something was removed."""
        if key not in self._docs:
            return False
        del self._docs[key]
        return True

    def clear(self) -> None:
        self._docs = {}

    def __len__(self) -> int:
        """Number of live keys."""
        return len(self._docs)

    def __contains__(self, key: Any) -> bool:
        return key in self._docs

    def size(self) -> int:
        return len(self._docs)

    def first_key(self) -> Optional[Any]:
        """Head of the live-key sequence, or None when empty."""
        return next(iter(self._docs), None)

    def last_key(self) -> Optional[Any]:
        """Tail of the live-key sequence, or None when empty."""
        return next(reversed(self._docs), None)

    # -------- Iterators (insertion order of first write) --------
    def keys(self) -> Iterator[Any]:
        """Return an iterator over a copy of the live keys taken now.

        The copy costs O(n) up front. Each call is an independent, finite pass;
        mutations after the call are not reflected.
        """
        return iter(list(self._docs))

    def items(self) -> Iterator[Tuple[Any, Any]]:
        return iter(list(self._docs.items()))
