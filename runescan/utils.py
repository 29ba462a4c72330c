import logging
import re
import shutil
import subprocess
from typing import Any, Dict, Iterable, List, Optional

import orjson

from ._types import Checkpoint

logger = logging.getLogger(__name__)

EXIT_CODE_DESCRIPTIONS: Dict[int, str] = {
    0: "Success",
    1: "General Error",
    2: "Syntax Error",
    126: "Command Not Executable",
    127: "Command Not Found",
    130: "Interrupted (Ctrl+C)",
}

_PRINTABLE_RUN = rb"[\x20-\x7e\t]{%d,}"
_NM_TYPES = set("ABbCDdGgiNpRrSsTtUuVvWw-?")

TOOL_TIMEOUT = 30


class CheckpointSerializer:
    """Timeline export as a JSON array, one object per stored checkpoint."""

    @staticmethod
    def dumps(items: Iterable[Checkpoint], *, indent: bool = False) -> bytes:
        payload = [cp.to_dict() for cp in items]
        options = 0
        if indent:
            options |= orjson.OPT_INDENT_2 | orjson.OPT_APPEND_NEWLINE | orjson.OPT_SORT_KEYS
        return orjson.dumps(payload, option=options)

    @staticmethod
    def dump(items: Iterable[Checkpoint], path: str, *, indent: bool = True) -> int:
        """Write the checkpoints to `path` and return how many were written."""
        items = list(items)
        with open(path, "wb") as f:
            f.write(CheckpointSerializer.dumps(items, indent=indent))
        logger.info("Wrote %d checkpoints to %s", len(items), path)
        return len(items)

    @staticmethod
    def loads(data: bytes) -> List[Checkpoint]:
        return [CheckpointSerializer._from_dict(d) for d in orjson.loads(data)]

    @staticmethod
    def load(path: str) -> List[Checkpoint]:
        with open(path, "rb") as f:
            return CheckpointSerializer.loads(f.read())

    @staticmethod
    def _from_dict(d: Dict[str, Any]) -> Checkpoint:
        if not isinstance(d, dict) or "id" not in d:
            raise ValueError(f"Not a checkpoint record: {d!r}")
        return Checkpoint.from_dict(d)


def describe_exit_code(code: int) -> str:
    if code in EXIT_CODE_DESCRIPTIONS:
        return EXIT_CODE_DESCRIPTIONS[code]
    if code > 128:
        return f"Terminated by signal {code - 128}"
    return "Unknown Error"


def parse_symbol_table(text: str) -> List[str]:
    """
    Symbol names from nm output, in order, without duplicates.

    Accepts both defined ("0000000000401136 T main") and undefined
    ("                 U strcpy@GLIBC_2.2.5") rows. Anything else is skipped.
    """
    seen = set()
    symbols: List[str] = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        kind, name = parts[-2], parts[-1]
        if len(kind) != 1 or kind not in _NM_TYPES:
            continue
        if name not in seen:
            seen.add(name)
            symbols.append(name)
    return symbols


def extract_strings(path: str, min_len: int = 4) -> List[str]:
    """Printable ASCII runs of at least `min_len` characters, like strings(1)."""
    rx = re.compile(_PRINTABLE_RUN % min_len)
    with open(path, "rb") as f:
        data = f.read()
    return [m.group().decode("ascii") for m in rx.finditer(data)]


def _run_tool(cmd: List[str]) -> Optional[str]:
    if shutil.which(cmd[0]) is None:
        return None
    try:
        proc = subprocess.run(cmd, capture_output=True, timeout=TOOL_TIMEOUT)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("%s failed: %r", cmd[0], e)
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.decode("utf-8", "replace")


def read_symbols(path: str) -> List[str]:
    """Dynamic symbols first, falling back to the full table. Empty if nm is unavailable."""
    for cmd in (["nm", "-D", path], ["nm", path]):
        out = _run_tool(cmd)
        if out:
            return parse_symbol_table(out)
    logger.debug("No symbol table available for %s", path)
    return []


def list_archive(path: str) -> Optional[List[str]]:
    """
    Describe a package archive without extracting it.

    Tries `dpkg-deb --info`, then `ar -tv`. A file neither tool understands
    gives an empty listing; None means neither tool is installed.
    """
    tools = (["dpkg-deb", "--info", path], ["ar", "-tv", path])
    if not any(shutil.which(cmd[0]) for cmd in tools):
        logger.info("Cannot inspect archive structure of %s: no dpkg-deb or ar", path)
        return None
    for cmd in tools:
        out = _run_tool(cmd)
        if out is not None:
            return out.splitlines()
    return []
