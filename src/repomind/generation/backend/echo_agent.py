"""Local demo agent speaking stream-json, for CLI engine integration tests."""

from __future__ import annotations

import argparse
import json
import re
import sys
import time
import uuid
from pathlib import Path

_MARKER = re.compile(r"=== TASK_START: ([A-Za-z0-9_.-]+) ===")
_FILLER = (
    "This section was produced by the local echo agent. It restates the task "
    "so that boundary handling, persistence and aggregation can be exercised "
    "without a real engine. "
)


def main(argv: list[str] | None = None) -> int:
    """Emit one delimited document per task id found in the prompt."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--terminal", default="success")
    parser.add_argument("--stop-after-chars", type=int, default=0)
    parser.add_argument("--chunk-size", type=int, default=64)
    parser.add_argument("--hang-seconds", type=float, default=0.0)
    args, _unknown = parser.parse_known_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    task_ids = list(dict.fromkeys(_MARKER.findall(prompt)))
    document = "".join(_render_task(task_id) for task_id in task_ids) or _FILLER
    if args.stop_after_chars > 0:
        document = document[: args.stop_after_chars]

    session_id = str(uuid.uuid4())
    _emit({"type": "system", "subtype": "init", "session_id": session_id})
    _emit_event(session_id, {"type": "content_block_start", "content_block": {"type": "text"}})
    for start in range(0, len(document), max(1, args.chunk_size)):
        chunk = document[start : start + args.chunk_size]
        _emit_event(
            session_id,
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": chunk}},
        )
    _emit_event(session_id, {"type": "content_block_stop"})
    if args.hang_seconds > 0:
        time.sleep(args.hang_seconds)
    result: dict[str, object] = {
        "type": "result",
        "subtype": args.terminal,
        "session_id": session_id,
    }
    if args.terminal == "success":
        result["result"] = document
    _emit(result)
    return 0


def _render_task(task_id: str) -> str:
    title = task_id.replace("-", " ").replace("_", " ").title()
    body = f"## {title}\n\n{_FILLER * 2}\n\n| Item | Value |\n|---|---|\n| task | {task_id} |\n"
    return f"=== TASK_START: {task_id} ===\n{body}\n=== TASK_END: {task_id} ===\n\n"


def _emit_event(session_id: str, event: dict[str, object]) -> None:
    _emit({"type": "stream_event", "session_id": session_id, "event": event})


def _emit(payload: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
