"""
`docker compose pull` with progress reporting.

Progress lives in [PULL_FLOOR, PULL_CEILING]. In plain mode every matching
stdout line and every stderr line counts as one event:

    progress = min(ceiling, floor + events / N * (ceiling - floor))

JSON mode (HOMEIO_PULL_JSON_PROGRESS=true) uses per-layer byte counts when
compose reports them and falls back to plain mode when the flag is rejected.
Completion is driven by the process exit code, not by the counter.
"""

import asyncio
import json
import logging
import re
import time
from collections import deque
from typing import Callable, Dict, Mapping, Optional, Tuple

from homeio_agent import settings
from homeio_agent.docker_ops import ProcessError, docker_bin_name, project_name

log = logging.getLogger(__name__)

PULL_FLOOR = 0.35
PULL_CEILING = 0.85
EVENTS_FOR_CEILING = 50
KEEP_LINES = 60

ProgressCallback = Callable[[float, str], None]

_PLAIN_PROGRESS = re.compile(r"download|extract|pulling|pull complete", re.IGNORECASE)
_JSON_FALLBACK_PROGRESS = re.compile(r"download|extract|pulling|pull complete|already exists", re.IGNORECASE)
_LAYER_DONE = re.compile(r"pull complete|already exists|download complete", re.IGNORECASE)
_JSON_UNSUPPORTED = (
    "unknown flag: --progress",
    'invalid argument "json" for "--progress"',
)


class PullTracker:
    """Turns pull output lines into bounded, monotonic, rate-limited callbacks."""

    def __init__(self, on_progress: ProgressCallback, interval: Optional[float] = None, clock=time.monotonic):
        self.on_progress = on_progress
        self.interval = settings.PULL_EMIT_INTERVAL_SECONDS if interval is None else interval
        self.clock = clock
        self.events = 0
        self.last_progress = PULL_FLOOR
        self.last_emit: Optional[float] = None
        self.layers: Dict[str, Tuple[float, float]] = {}
        self.json_error: Optional[str] = None

    def emit(self, value: float, message: str) -> bool:
        bounded = min(PULL_CEILING, max(PULL_FLOOR, value))
        if bounded < self.last_progress:
            return False
        now = self.clock()
        if self.last_emit is not None and now - self.last_emit < self.interval:
            return False
        self.last_emit = now
        self.last_progress = bounded
        self.on_progress(bounded, message)
        return True

    def advance(self, message: str) -> None:
        self.events += 1
        self.emit(PULL_FLOOR + (self.events / EVENTS_FOR_CEILING) * (PULL_CEILING - PULL_FLOOR), message)

    def plain_line(self, line: str, from_stderr: bool) -> None:
        if from_stderr or _PLAIN_PROGRESS.search(line):
            self.advance(line)

    def json_line(self, line: str) -> None:
        try:
            payload = json.loads(line)
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            if _JSON_FALLBACK_PROGRESS.search(line):
                self.advance(line)
            return

        if payload.get("error"):
            detail = payload.get("errorDetail")
            if isinstance(detail, dict):
                detail = detail.get("message")
            self.json_error = str(detail or payload["error"])
            self.advance(str(payload["error"]))
            return

        layer = payload.get("id")
        status = str(payload.get("status") or "")
        progress = payload.get("progressDetail") or {}
        if layer and isinstance(progress, dict):
            try:
                current = float(progress.get("current") or 0)
                total = float(progress.get("total") or 0)
            except (TypeError, ValueError):
                current = total = 0.0
            if total > 0:
                self.layers[layer] = (min(max(current, 0.0), total), total)
            elif layer not in self.layers:
                self.layers[layer] = (0.0, 0.0)
        if layer and _LAYER_DONE.search(status):
            current, total = self.layers.get(layer, (0.0, 0.0))
            if total > 0:
                self.layers[layer] = (total, total)

        done = sum(c for c, t in self.layers.values() if t > 0)
        total = sum(t for _, t in self.layers.values() if t > 0)
        if total > 0:
            self.emit(PULL_FLOOR + (done / total) * (PULL_CEILING - PULL_FLOOR), status)
        elif status:
            self.advance(status)


def pull_args(app_id: str, compose_path: str, json_progress: bool):
    argv = [docker_bin_name(), "compose"]
    if json_progress:
        argv += ["--progress", "json"]
    return argv + ["--project-name", project_name(app_id), "-f", compose_path, "pull"]


async def _pump(stream: asyncio.StreamReader, handle: Callable[[str], None], keep: deque) -> None:
    async for raw in stream:
        for part in raw.decode("utf-8", errors="replace").split("\r"):
            line = part.strip()
            if not line:
                continue
            keep.append(line)
            handle(line)


async def _run_pull(app_dir: str, app_id: str, compose_path: str, env: Mapping[str, str],
                    on_progress: ProgressCallback, json_progress: bool) -> None:
    cmd = pull_args(app_id, compose_path, json_progress)
    tracker = PullTracker(on_progress)
    out_lines: deque = deque(maxlen=KEEP_LINES)
    err_lines: deque = deque(maxlen=KEEP_LINES)

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=app_dir,
            env=dict(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=1024 * 1024,
        )
    except OSError as e:
        raise ProcessError("docker compose pull failed to start", cmd=cmd, code=127, err=str(e)) from e

    if json_progress:
        on_out = tracker.json_line
        on_err = tracker.json_line
    else:
        def on_out(line: str) -> None:
            tracker.plain_line(line, from_stderr=False)

        def on_err(line: str) -> None:
            tracker.plain_line(line, from_stderr=True)

    pumps = [
        asyncio.ensure_future(_pump(proc.stdout, on_out, out_lines)),
        asyncio.ensure_future(_pump(proc.stderr, on_err, err_lines)),
    ]
    drained = False
    try:
        await asyncio.gather(*pumps)
        drained = True
    except (ValueError, asyncio.LimitOverrunError) as e:
        # a line longer than the stream limit
        raise ProcessError(
            "docker compose pull output could not be read",
            cmd=cmd,
            out="\n".join(out_lines),
            err=str(e),
        ) from e
    finally:
        if not drained:
            for pump in pumps:
                pump.cancel()
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            await proc.wait()
    code = await proc.wait()
    if code != 0:
        err = "\n".join(err_lines) or (tracker.json_error or "")
        raise ProcessError(
            f"docker compose pull exited with code {code}",
            cmd=cmd,
            code=code,
            out="\n".join(out_lines),
            err=err,
        )
    on_progress(PULL_CEILING, "Images pulled")


def _json_unsupported(e: ProcessError) -> bool:
    combined = f"{e.err}\n{e.out}\n{e}".lower()
    return any(marker in combined for marker in _JSON_UNSUPPORTED)


async def stream_compose_pull(
    app_dir: str,
    app_id: str,
    compose_path: str,
    env: Mapping[str, str],
    on_progress: ProgressCallback,
) -> None:
    """Raises ProcessError on spawn failure or nonzero exit."""
    if settings.PULL_JSON_PROGRESS:
        try:
            await _run_pull(app_dir, app_id, compose_path, env, on_progress, json_progress=True)
            return
        except ProcessError as e:
            if not _json_unsupported(e):
                raise
            log.info("compose rejected --progress json, retrying plain pull: appId=%s", app_id)
    await _run_pull(app_dir, app_id, compose_path, env, on_progress, json_progress=False)
