# cardinality/utils.py
# Common helpers: time, JSON/JSONL I/O with atomic writes, and a timeout-bounded call for backend queries

from __future__ import annotations

import contextlib
import json
import os
import tempfile
import threading
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, TypeVar, Union

T = TypeVar("T")

# ---------- time ----------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()

def parse_iso(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    ss = s.strip()
    if ss.endswith("Z"):
        ss = ss[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(ss)
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    except ValueError:
        return None

# ---------- paths ----------

def ensure_dir(p: Union[str, Path]) -> Path:
    path = Path(p)
    path.mkdir(parents=True, exist_ok=True)
    return path

# ---------- I/O: JSON / JSONL / text (atomic) ----------

def jsonable(obj: Any) -> Any:
    if is_dataclass(obj) and not isinstance(obj, type):
        obj = asdict(obj)
    if isinstance(obj, dict):
        return {str(k): jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [jsonable(v) for v in obj]
    if isinstance(obj, (set, frozenset)):
        return sorted(jsonable(v) for v in obj)
    if isinstance(obj, datetime):
        return iso(obj)
    if isinstance(obj, Enum):
        return obj.value
    return obj

def write_json(path: Union[str, Path], data: Any, *, indent: Optional[int] = 2, atomic: bool = True) -> Path:
    text = json.dumps(jsonable(data), ensure_ascii=False, indent=indent, sort_keys=True)
    return write_text(path, text + "\n", atomic=atomic)

def read_json(path: Union[str, Path], *, default: Any = None) -> Any:
    p = Path(path)
    if not p.exists():
        return default
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return default

def append_jsonl(path: Union[str, Path], records: Iterable[Dict[str, Any]]) -> Path:
    p = Path(path)
    ensure_dir(p.parent)
    with p.open("a", encoding="utf-8") as f:
        for rec in records:
            f.write(json.dumps(jsonable(rec), ensure_ascii=False, separators=(",", ":")) + "\n")
    return p

def iter_jsonl(path: Union[str, Path]) -> Iterator[Dict[str, Any]]:
    p = Path(path)
    if not p.exists():
        return
    with p.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except ValueError:
                continue

def write_text(path: Union[str, Path], text: str, *, atomic: bool = True) -> Path:
    p = Path(path)
    ensure_dir(p.parent)
    if not atomic:
        p.write_text(text, encoding="utf-8")
        return p
    fd, tmpname = tempfile.mkstemp(prefix="._tmp_", dir=str(p.parent))
    os.close(fd)
    tmp = Path(tmpname)
    try:
        tmp.write_text(text, encoding="utf-8")
        tmp.replace(p)
    finally:
        with contextlib.suppress(OSError):
            if tmp.exists():
                tmp.unlink()
    return p

# ---------- bounded calls ----------

def bounded_call(fn: Callable[..., T], *args: Any, timeout: Optional[float] = None, name: str = "bounded-call", **kwargs: Any) -> T:
    """
    Run fn(*args, **kwargs) on a helper thread and wait at most `timeout` seconds.

    Raises TimeoutError when the deadline passes; the helper thread is abandoned
    (daemon) and its eventual result discarded. Only use this for reads.
    Exceptions raised by fn are re-raised in the caller.
    """
    if timeout is None:
        return fn(*args, **kwargs)

    done = threading.Event()
    box: Dict[str, Any] = {}

    def _run() -> None:
        try:
            box["value"] = fn(*args, **kwargs)
        except BaseException as e:  # re-raised in caller
            box["error"] = e
        finally:
            done.set()

    t = threading.Thread(target=_run, name=name, daemon=True)
    t.start()
    if not done.wait(timeout=max(0.0, float(timeout))):
        raise TimeoutError(f"{name} exceeded {timeout:.3f}s")
    if "error" in box:
        raise box["error"]
    return box["value"]


__all__ = [
    "utcnow", "iso", "parse_iso",
    "ensure_dir",
    "jsonable", "write_json", "read_json", "append_jsonl", "iter_jsonl", "write_text",
    "bounded_call",
]
