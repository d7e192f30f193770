#!/usr/bin/env python3
import argparse
import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Analyze dumpsock runs.log (JSON Lines).")
    p.add_argument("-f", "--file", default="runs.log", help="Path to runs log (default: runs.log)")
    p.add_argument("--top", type=int, default=5, help="How many top items to show (default: 5)")
    p.add_argument("--since", type=str, default=None, help="ISO8601 timestamp filter (UTC), e.g. 2025-09-26T12:00:00Z")
    return p.parse_args(argv)

def parse_ts(ts: Optional[str]) -> Optional[datetime]:
    if not ts:
        return None
    ts = ts.replace("Z", "+00:00")
    try:
        dt = datetime.fromisoformat(ts)
    except ValueError:
        return None
    # naive timestamps are UTC
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

def summarize(lines: Iterable[str], since: Optional[datetime] = None) -> Dict[str, Any]:
    summary: Dict[str, Any] = {
        "total": 0,
        "ok": 0,
        "failed": 0,
        "bytes_total": 0,
        "seconds_total": 0.0,
        "by_kind": Counter(),
        "by_error": Counter(),
        "malformed": 0,
    }

    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            obj: Dict[str, Any] = json.loads(line)
        except ValueError:
            summary["malformed"] += 1
            continue
        if not isinstance(obj, dict):
            summary["malformed"] += 1
            continue

        # Time filter
        if since is not None:
            ts = parse_ts(obj.get("ts"))
            if ts is not None and ts < since:
                continue

        summary["total"] += 1
        status = (obj.get("status") or "").upper()

        if status == "OK":
            summary["ok"] += 1
            summary["bytes_total"] += int(obj.get("bytes") or 0)
            summary["seconds_total"] += float(obj.get("seconds") or 0.0)
        else:
            summary["failed"] += 1
            kind = obj.get("error_kind") or "unknown"
            summary["by_kind"][kind] += 1
            error = (obj.get("error") or "").strip()
            if error:
                summary["by_error"][error] += 1

    return summary

def mib_per_s(summary: Dict[str, Any]) -> float:
    seconds = summary["seconds_total"]
    if seconds <= 0:
        return 0.0
    return summary["bytes_total"] / seconds / (1024 * 1024)

def main(argv=None):
    args = parse_args(argv)
    path = Path(args.file)
    if not path.exists():
        print(f"File not found: {path}")
        return

    since_dt = parse_ts(args.since)

    with path.open("r", encoding="utf-8") as f:
        s = summarize(f, since_dt)

    print("=== Runs Summary ===")
    print(f"File: {path}")
    if since_dt:
        print(f"Since: {since_dt.isoformat()}")
    print(f"Total: {s['total']}  |  OK: {s['ok']}  |  FAILED: {s['failed']}")
    print(f"Received: {s['bytes_total']} bytes in {s['seconds_total']:.3f}s ({mib_per_s(s):.2f} MiB/s)")

    top_n = args.top

    if s["by_kind"]:
        print(f"\nTop {top_n} failing stages:")
        for kind, cnt in s["by_kind"].most_common(top_n):
            print(f"  {kind}: {cnt}")

    if s["by_error"]:
        print(f"\nTop {top_n} error messages:")
        for msg, cnt in s["by_error"].most_common(top_n):
            print(f"  {cnt} x {msg}")

    if s["malformed"]:
        print(f"\nNote: {s['malformed']} malformed line(s) skipped.")

if __name__ == "__main__":
    main()
