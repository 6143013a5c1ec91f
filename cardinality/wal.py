# cardinality/wal.py
# Append-only JSONL write-ahead log for the config store (append, replay into a store, rotation)

from __future__ import annotations

import gzip
import json
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional, Union

from .utils import iso, utcnow, write_text

# Record types
DROP_LIST_SET = "drop_list_set"
RESTRICTION_SET = "rw_restriction_set"
RESET = "reset"


# -----------------------------------------------------------------------------
# Basic I/O
# -----------------------------------------------------------------------------

def append(path: Union[str, Path], record: Dict[str, Any]) -> Path:
    """
    Append one compact JSON record (single line) to the WAL.
    A 'ts' field is injected if missing.
    """
    return append_many(path, [record])


def append_many(path: Union[str, Path], records: Iterable[Dict[str, Any]]) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("a", encoding="utf-8") as f:
        for r in records:
            rec = dict(r)
            rec.setdefault("ts", iso(utcnow()))
            f.write(json.dumps(rec, ensure_ascii=False, separators=(",", ":"), sort_keys=True) + "\n")
        f.flush()
    return p


def iter_lines(path: Union[str, Path]) -> Iterator[Dict[str, Any]]:
    """Stream parsed records. Skips malformed lines (a torn final write, typically)."""
    p = Path(path)
    if not p.exists():
        return
    with p.open("r", encoding="utf-8") as f:
        for line in f:
            s = line.strip()
            if not s:
                continue
            try:
                rec = json.loads(s)
            except ValueError:
                continue
            if isinstance(rec, dict):
                yield rec


# -----------------------------------------------------------------------------
# Record builders
# -----------------------------------------------------------------------------

def drop_list_record(job: str, names: Iterable[str]) -> Dict[str, Any]:
    return {"type": DROP_LIST_SET, "job": job, "names": sorted(set(names))}


def restriction_record(destination: str, by_job: Dict[str, Iterable[str]]) -> Dict[str, Any]:
    return {
        "type": RESTRICTION_SET,
        "destination": destination,
        "by_job": {j: sorted(set(ms)) for j, ms in sorted(by_job.items())},
    }


def reset_record(drop_lists: Dict[str, Iterable[str]]) -> Dict[str, Any]:
    return {"type": RESET, "drop_lists": {j: sorted(set(ms)) for j, ms in sorted(drop_lists.items())}}


# -----------------------------------------------------------------------------
# Rotation
# -----------------------------------------------------------------------------

def rotate(
    wal_path: Union[str, Path],
    *,
    rotated_dir: Union[str, Path],
    keep_tail_lines: int = 100,
) -> Optional[Path]:
    """
    Move all but the last `keep_tail_lines` lines into a gzip under rotated_dir.
    Only call this once a state snapshot covers every record being moved.
    Returns the .gz path, or None when the log is already short enough.
    """
    p = Path(wal_path)
    if not p.exists():
        return None
    lines = p.read_text(encoding="utf-8").splitlines()
    keep_tail_lines = max(0, int(keep_tail_lines))
    if len(lines) <= keep_tail_lines:
        return None

    cut = len(lines) - keep_tail_lines
    head, kept = lines[:cut], lines[cut:]

    rd = Path(rotated_dir)
    rd.mkdir(parents=True, exist_ok=True)
    stamp = utcnow().strftime("%Y%m%dT%H%M%S%fZ")
    gz_path = rd / f"{p.stem}.{stamp}.log.gz"
    with gzip.open(gz_path, "wt", encoding="utf-8") as zf:
        for s in head:
            zf.write(s + "\n")

    write_text(p, "".join(s + "\n" for s in kept))
    return gz_path


# -----------------------------------------------------------------------------
# Replay
# -----------------------------------------------------------------------------

def replay(
    wal_path: Union[str, Path],
    *,
    after_seq: int = 0,
    base: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Fold WAL records with seq > after_seq into `base` (a previously saved state).

    Returns
    -------
    dict: {"drop_lists": {job: set}, "restrictions": {dest: {job: set}}, "seq": last_seq,
           "counts": {"applied": X, "skipped": Y}}
    """
    base = base or {}
    drop_lists: Dict[str, set] = {str(j): set(ms) for j, ms in (base.get("drop_lists") or {}).items()}
    restrictions: Dict[str, Dict[str, set]] = {
        str(d): {str(j): set(ms) for j, ms in by_job.items()}
        for d, by_job in (base.get("restrictions") or {}).items()
    }
    seq = int(after_seq)
    counts = {"applied": 0, "skipped": 0}

    for rec in iter_lines(wal_path):
        rseq = int(rec.get("seq") or 0)
        if rseq and rseq <= after_seq:
            continue
        typ = str(rec.get("type") or "").strip().lower()
        try:
            if typ == DROP_LIST_SET:
                drop_lists[str(rec["job"])] = {str(m) for m in rec.get("names") or []}
            elif typ == RESTRICTION_SET:
                restrictions[str(rec["destination"])] = {
                    str(j): {str(m) for m in ms} for j, ms in (rec.get("by_job") or {}).items()
                }
            elif typ == RESET:
                drop_lists = {str(j): {str(m) for m in ms} for j, ms in (rec.get("drop_lists") or {}).items()}
                restrictions = {}
            else:
                counts["skipped"] += 1
                continue
        except (KeyError, TypeError, AttributeError):
            counts["skipped"] += 1
            continue
        seq = max(seq, rseq)
        counts["applied"] += 1

    return {"drop_lists": drop_lists, "restrictions": restrictions, "seq": seq, "counts": counts}


__all__ = [
    "DROP_LIST_SET",
    "RESTRICTION_SET",
    "RESET",
    "append",
    "append_many",
    "iter_lines",
    "drop_list_record",
    "restriction_record",
    "reset_record",
    "replay",
    "rotate",
]
