import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from homeio_agent import settings

log = logging.getLogger(__name__)

# compose writes routine progress to stderr
_COMPOSE_NOISE = (
    "creating",
    "created",
    "starting",
    "started",
    "running",
    "pulling",
    "pulled",
    "downloaded",
    "waiting",
    "healthy",
    "network",
    "container",
)


@dataclass(frozen=True)
class CmdResult:
    code: int
    out: str
    err: str


class ProcessError(RuntimeError):
    """An external command exited nonzero or could not be spawned."""

    def __init__(self, message: str, cmd: Sequence[str] = (), code: Optional[int] = None, out: str = "", err: str = ""):
        super().__init__(message)
        self.cmd = list(cmd)
        self.code = code
        self.out = out
        self.err = err


async def run(
    cmd: List[str],
    timeout_sec: Optional[float] = None,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    stdin: Optional[str] = None,
) -> CmdResult:
    """
    Run an argv command without a shell. timeout_sec=None means no limit.
    Missing binary -> code 127, timeout -> code 124 (process killed).
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        return CmdResult(code=127, out="", err=str(e))
    except OSError as e:
        return CmdResult(code=126, out="", err=str(e))

    data = stdin.encode("utf-8") if stdin is not None else None
    try:
        out, err = await asyncio.wait_for(proc.communicate(data), timeout=timeout_sec)
    except asyncio.TimeoutError:
        proc.kill()
        out, err = await proc.communicate()
        return CmdResult(
            code=124,
            out=out.decode("utf-8", errors="replace"),
            err=(err.decode("utf-8", errors="replace") + f"\ntimed out after {timeout_sec}s").strip(),
        )
    return CmdResult(
        code=proc.returncode if proc.returncode is not None else 1,
        out=out.decode("utf-8", errors="replace"),
        err=err.decode("utf-8", errors="replace"),
    )


async def run_checked(
    cmd: List[str],
    timeout_sec: Optional[float] = None,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    label: Optional[str] = None,
) -> CmdResult:
    r = await run(cmd, timeout_sec=timeout_sec, cwd=cwd, env=env)
    if r.code != 0:
        name = label or " ".join(cmd[:3])
        raise ProcessError(f"{name} exited with code {r.code}", cmd=cmd, code=r.code, out=r.out, err=r.err)
    return r


def docker_bin_name() -> str:
    return (os.getenv("HOMEIO_DOCKER_BIN", "docker") or "docker").strip()


async def docker(*args: str, timeout_sec: Optional[float] = 120, cwd: Optional[str] = None,
                 env: Optional[Dict[str, str]] = None) -> CmdResult:
    return await run([docker_bin_name(), *args], timeout_sec=timeout_sec, cwd=cwd, env=env)


def project_name(app_id: str) -> str:
    # compose only accepts lowercase project names
    return app_id.lower()


def compose_args(app_id: str, compose_file: Optional[str], *args: str) -> List[str]:
    """argv for `docker compose --project-name <appId> [-f file] ...`."""
    argv = [docker_bin_name(), "compose", "--project-name", project_name(app_id)]
    if compose_file:
        argv += ["-f", compose_file]
    argv += list(args)
    return argv


def is_compose_noise(stderr: str) -> bool:
    """True when every non-empty stderr line is routine compose progress."""
    lines = [line.strip().lower() for line in (stderr or "").splitlines() if line.strip()]
    if not lines:
        return True
    return all(any(word in line for word in _COMPOSE_NOISE) for line in lines)


def container_name(app_id: str) -> str:
    return f"{settings.CONTAINER_PREFIX}{app_id.lower()}"
