import json
import time
from pathlib import Path
from typing import Any, Optional


def log_event(log_path: Optional[Path], event: dict[str, Any]) -> None:
    if "ts" not in event:
        event = {"ts": int(time.time()), **event}
    line = json.dumps(event, separators=(",", ":"))
    if log_path is None:
        print(line, flush=True)
        return
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as f:
        f.write(line + "\n")


def read_events(events_path: Path, limit_lines: int = 2000) -> list[dict[str, Any]]:
    if not events_path.exists():
        return []
    with events_path.open("rb") as f:
        data = f.read()
    lines = data.splitlines()[-limit_lines:]
    out: list[dict[str, Any]] = []
    for ln in lines:
        try:
            out.append(json.loads(ln.decode("utf-8")))
        except ValueError:
            continue
    return out
