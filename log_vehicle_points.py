"""Append transit snapshots from the running service to a JSON-lines file."""
import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

API_URL = os.getenv("SNAPSHOT_LOG_URL", "http://localhost:8080/v1/transit/snapshot")
LOG_FILE = Path(os.getenv("SNAPSHOT_LOG_FILE", "vehicle_log.jsonl"))
INTERVAL_SEC = float(os.getenv("SNAPSHOT_LOG_INTERVAL_S", "5"))
ONE_WEEK_MS = 7 * 24 * 3600 * 1000


def prune_old_entries(log_file: Path = LOG_FILE, now_ms: Optional[int] = None) -> None:
    cutoff = (now_ms if now_ms is not None else int(time.time() * 1000)) - ONE_WEEK_MS
    if not log_file.exists():
        return
    lines: list[str] = []
    with log_file.open() as f:
        for line in f:
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if entry.get("ts", 0) >= cutoff:
                lines.append(line)
    with log_file.open("w") as f:
        f.writelines(lines)


def build_entry(ts: int, response: httpx.Response) -> Dict[str, Any]:
    """Log entry for one poll; a 500 still carries the (empty) snapshot body."""
    try:
        data = response.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    return {
        "ts": ts,
        "status": response.status_code,
        "partial": bool(data.get("partial")),
        "buses": data.get("buses") or [],
        "trains": data.get("trains") or [],
    }


def main():
    with httpx.Client(timeout=20) as client:
        while True:
            ts = int(time.time()*1000)
            try:
                r = client.get(API_URL)
            except httpx.HTTPError as exc:
                print(f"[snapshot_logger] request failed: {exc}")
            else:
                entry = build_entry(ts, r)
                with LOG_FILE.open("a") as f:
                    f.write(json.dumps(entry) + "\n")
                prune_old_entries()
            time.sleep(INTERVAL_SEC)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        pass
