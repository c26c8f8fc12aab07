"""Subprocess-based streaming engine for CLI agents emitting stream-json."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from repomind.generation.backend.base import EngineMessage, EngineRequest
from repomind.generation.errors import EngineStartError

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TEMPLATE = (
    "claude -p --output-format stream-json --verbose "
    "--model {model} --system-prompt {system_prompt} "
    "--disallowedTools {disallowed_tools}"
)

_STREAM_LINE_LIMIT = 16 * 1024 * 1024
_STDERR_TAIL_CHARS = 2_000


class CliStreamEngine:
    """Run a CLI agent per call and translate its stdout JSON lines to messages.

    The prompt reaches the agent through ``{prompt}``, ``{prompt_file}`` or,
    when the template references neither, stdin.  Turn limits and partial
    message streaming are appended as flags when the request asks for them.
    Each stdout read races the request's cancellation token; once the token
    fires the process is terminated and the stream ends without a result.
    """

    max_turns_flag = "--max-turns"
    partial_messages_flag = "--include-partial-messages"

    def __init__(
        self,
        *,
        command_template: str = DEFAULT_COMMAND_TEMPLATE,
        model: str = "sonnet",
        workdir: Path | None = None,
        graceful_shutdown_seconds: float = 2.0,
    ) -> None:
        self.command_template = command_template
        self.model = model
        self.workdir = workdir
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    async def stream(self, request: EngineRequest) -> AsyncIterator[EngineMessage]:
        with tempfile.TemporaryDirectory(prefix="repomind-") as scratch:
            prompt_file = Path(scratch) / "prompt.md"
            prompt_file.write_text(request.prompt, "utf-8")
            argv, feed_stdin = _build_run_args(
                command_template=self.command_template,
                model=self.model,
                request=request,
                prompt_file=prompt_file,
            )
            if request.max_turns is not None:
                argv.extend([self.max_turns_flag, str(request.max_turns)])
            if request.include_partial_messages and self.partial_messages_flag not in argv:
                argv.append(self.partial_messages_flag)

            process = await _start_process(argv, cwd=self.workdir, feed_stdin=feed_stdin)
            logger.info("Engine process started: pid=%s command=%s", process.pid, argv[0])
            stderr_task = asyncio.create_task(_read_stderr_tail(process))
            cancelled = asyncio.ensure_future(request.cancel_token.wait())
            try:
                if feed_stdin and process.stdin is not None:
                    process.stdin.write(request.prompt.encode("utf-8"))
                    await process.stdin.drain()
                    process.stdin.close()

                assert process.stdout is not None
                while True:
                    raw_line = await _read_line(process.stdout, cancelled)
                    if raw_line is None:
                        logger.info(
                            "Engine call cancelled (%s); stopping pid=%s",
                            request.cancel_token.reason,
                            process.pid,
                        )
                        return
                    if not raw_line:
                        break
                    message = parse_stream_line(raw_line.decode("utf-8", errors="replace"))
                    if message is None:
                        continue
                    yield message
                    if message.type == "result":
                        return

                exit_code = await process.wait()
                stderr_tail = await stderr_task
                yield EngineMessage(
                    type="result",
                    subtype="success" if exit_code == 0 else "error_process_exit",
                    result=None if exit_code == 0 else f"exit code {exit_code}: {stderr_tail}",
                )
            finally:
                cancelled.cancel()
                await _terminate_process(process, self.graceful_shutdown_seconds)
                if not stderr_task.done():
                    stderr_task.cancel()


def parse_stream_line(line: str) -> EngineMessage | None:
    """Translate one stream-json line; malformed or unknown lines yield None."""

    text = line.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    message_type = payload.get("type")
    session_id = str(payload.get("session_id") or "")
    if message_type == "stream_event":
        event = payload.get("event")
        if not isinstance(event, dict):
            return None
        return EngineMessage(
            type="stream_event",
            session_id=session_id,
            event=event,
            parent_tool_use_id=payload.get("parent_tool_use_id"),
        )
    if message_type == "assistant":
        message = payload.get("message")
        return EngineMessage(
            type="assistant",
            session_id=session_id,
            event=message if isinstance(message, dict) else {},
        )
    if message_type == "result":
        result = payload.get("result")
        return EngineMessage(
            type="result",
            session_id=session_id,
            subtype=str(payload.get("subtype") or "unknown"),
            result=result if isinstance(result, str) else None,
        )
    return None


def _build_run_args(
    *,
    command_template: str,
    model: str,
    request: EngineRequest,
    prompt_file: Path,
) -> tuple[list[str], bool]:
    stripped = command_template.strip()
    if not stripped:
        raise EngineStartError("CLI engine command template is empty.", transient=False)

    values: dict[str, Any] = {
        "prompt": shlex.quote(request.prompt),
        "prompt_file": shlex.quote(str(prompt_file)),
        "system_prompt": shlex.quote(request.system_prompt),
        "model": shlex.quote(model),
        "allowed_tools": shlex.quote(",".join(request.allowed_tools)),
        "disallowed_tools": shlex.quote(",".join(request.disallowed_tools)),
    }
    try:
        rendered = stripped.format(**values)
    except KeyError as error:
        raise EngineStartError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise EngineStartError("CLI engine command template rendered empty command.", transient=False)
    feed_stdin = "{prompt}" not in stripped and "{prompt_file}" not in stripped
    return argv, feed_stdin


async def _start_process(
    argv: list[str],
    *,
    cwd: Path | None,
    feed_stdin: bool,
) -> asyncio.subprocess.Process:
    try:
        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if feed_stdin else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
            env=os.environ.copy(),
            limit=_STREAM_LINE_LIMIT,
        )
    except FileNotFoundError as error:
        raise EngineStartError(f"CLI engine command not found: {argv[0]}", transient=False) from error
    except OSError as error:
        raise EngineStartError(f"CLI engine failed to start: {error}", transient=True) from error


async def _read_stderr_tail(process: asyncio.subprocess.Process) -> str:
    if process.stderr is None:
        return ""
    data = await process.stderr.read()
    return data.decode("utf-8", errors="replace").strip()[-_STDERR_TAIL_CHARS:]


async def _read_line(
    stream: asyncio.StreamReader,
    cancelled: asyncio.Future[None],
) -> bytes | None:
    """Next stdout line, or None once the call's token has been cancelled."""

    read = asyncio.ensure_future(stream.readline())
    try:
        done, _pending = await asyncio.wait({read, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        read.cancel()
        raise
    if read in done:
        return read.result()
    read.cancel()
    return None


async def _terminate_process(process: asyncio.subprocess.Process, grace_seconds: float) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
