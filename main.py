#!/usr/bin/env python3
"""CLI for the append-only KV store (reads from STDIN, writes to STDOUT)."""

import json
import sys
import shlex
from typing import Any, List, Callable, Dict, Optional

from engine import KVEngine
from errors import KVStoreError

# -------------------- Command & message constants --------------------
CMD_SET   = "SET"
CMD_GET   = "GET"
CMD_DEL   = "DEL"
CMD_SIZE  = "SIZE"
CMD_KEYS  = "KEYS"
CMD_FIRST = "FIRST"
CMD_LAST  = "LAST"
CMD_RESET = "RESET"
CMD_EXIT  = "EXIT"

MSG_OK          = "OK"
ERR_SYNTAX      = "ERR syntax"
ERR_UNKNOWN_CMD = "ERR unknown command"
ERR_USAGE_SET   = "ERR usage: SET <key> <value>"
ERR_USAGE_KEY   = "ERR usage: {cmd} <key>"
ERR_USAGE_NONE  = "ERR usage: {cmd}"
ERR_NULL_VALUE  = "ERR value must not be null (use DEL)"
ERR_INTERNAL    = "ERR internal"

MEMORY_PATH = ":memory:"
DEFAULT_DB_PATH = "data.db"


def _print(line: str) -> None:
    """Write a single line to STDOUT and flush."""
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


def _format(value: Any) -> str:
    return "" if value is None else json.dumps(value, ensure_ascii=False)


def _parse_value(raw: str) -> Any:
    """JSON if it parses, otherwise the raw text."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


# -------------------- Command handlers --------------------
def handle_set(args: List[str], kv: KVEngine) -> None:
    """SET <key> <value...>  ->  OK"""
    if len(args) < 2:
        _print(ERR_USAGE_SET)
        return
    value = _parse_value(" ".join(args[1:]))
    if value is None:
        _print(ERR_NULL_VALUE)
        return
    kv.set(args[0], value)
    _print(MSG_OK)


def handle_get(args: List[str], kv: KVEngine) -> None:
    """GET <key>  ->  JSON value | (empty line if missing)"""
    if len(args) != 1:
        _print(ERR_USAGE_KEY.format(cmd=CMD_GET))
        return
    _print(_format(kv.get(args[0])))


def handle_del(args: List[str], kv: KVEngine) -> None:
    """DEL <key>  ->  OK"""
    if len(args) != 1:
        _print(ERR_USAGE_KEY.format(cmd=CMD_DEL))
        return
    kv.remove(args[0])
    _print(MSG_OK)


def handle_size(args: List[str], kv: KVEngine) -> None:
    if args:
        _print(ERR_USAGE_NONE.format(cmd=CMD_SIZE))
        return
    _print(str(kv.size()))


def handle_keys(args: List[str], kv: KVEngine) -> None:
    """KEYS  ->  one key per line, insertion order"""
    if args:
        _print(ERR_USAGE_NONE.format(cmd=CMD_KEYS))
        return
    for key in kv.keys():
        _print(str(key))


def handle_first(args: List[str], kv: KVEngine) -> None:
    if args:
        _print(ERR_USAGE_NONE.format(cmd=CMD_FIRST))
        return
    key = kv.first_key()
    _print("" if key is None else str(key))


def handle_last(args: List[str], kv: KVEngine) -> None:
    if args:
        _print(ERR_USAGE_NONE.format(cmd=CMD_LAST))
        return
    key = kv.last_key()
    _print("" if key is None else str(key))


def handle_reset(args: List[str], kv: KVEngine) -> None:
    """RESET  ->  OK (drops every key and the log file)"""
    if args:
        _print(ERR_USAGE_NONE.format(cmd=CMD_RESET))
        return
    kv.reset()
    _print(MSG_OK)


def handle_exit(args: List[str], kv: KVEngine) -> str:
    """EXIT -> signal main loop to terminate."""
    return "EXIT"


DISPATCH: Dict[str, Callable[[List[str], KVEngine], Optional[str]]] = {
    CMD_SET: handle_set,
    CMD_GET: handle_get,
    CMD_DEL: handle_del,
    CMD_SIZE: handle_size,
    CMD_KEYS: handle_keys,
    CMD_FIRST: handle_first,
    CMD_LAST: handle_last,
    CMD_RESET: handle_reset,
    CMD_EXIT: handle_exit,
}


def _parse_command(line: str) -> Optional[List[str]]:
    """Split a raw input line into tokens (cmd + args) using shell-like rules.

    Returns:
        tokens list on success, or None if parsing fails (e.g., unbalanced quotes).
    """
    try:
        return shlex.split(line)
    except ValueError:
        return None


def _serve(kv: KVEngine) -> int:
    while True:
        try:
            raw = sys.stdin.readline()
            if not raw:  # EOF → clean exit
                return 0
            line = raw.strip()
            if not line:
                continue

            tokens = _parse_command(line)
            if not tokens:
                _print(ERR_SYNTAX)
                continue

            cmd = tokens[0].upper()
            handler = DISPATCH.get(cmd)
            if handler is None:
                _print(ERR_UNKNOWN_CMD)
                continue

            if handler(tokens[1:], kv) == "EXIT":
                return 0

        except KeyboardInterrupt:
            return 0
        except (KVStoreError, TypeError, ValueError) as exc:
            _print(f"{ERR_INTERNAL}: {exc}")


def main(argv: List[str]) -> int:
    """Run the REPL loop for the KV store.

    Args:
        argv: Command-line arguments; argv[1] may be a db path, or ":memory:".
    """
    db_path = DEFAULT_DB_PATH if len(argv) < 2 else argv[1]
    try:
        kv = KVEngine(None if db_path == MEMORY_PATH else db_path)
    except KVStoreError as exc:
        sys.stderr.write(f"ERR cannot open {db_path}: {exc}\n")
        return 1

    with kv:
        try:
            kv.wait_loaded()
        except KVStoreError as exc:
            sys.stderr.write(f"ERR cannot load {db_path}: {exc}\n")
            return 1
        return _serve(kv)


def cli() -> None:
    raise SystemExit(main(sys.argv))


if __name__ == "__main__":
    cli()
