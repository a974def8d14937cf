"""
Deploy pipeline for compose apps (store installs, custom deploys, edit/redeploy).

    validate -> resolve compose -> check dependencies -> [tear down] -> sanitize
    -> build env -> seed data -> pull -> up -d -> detect containers -> record
    -> refresh observers

Any stage failure ends the attempt: one terminal error event, a failed
DeployResult and an action-log entry. Side effects already applied (written
compose file, seeded data, pulled images) are left in place.
"""

import asyncio
import logging
import re
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError

from homeio_agent import settings
from homeio_agent.compose import (
    SanitizedCompose,
    detect_all_compose_container_names,
    detect_compose_container_name,
    discard_sanitized,
    extract_compose_meta,
    get_container_name_from_compose,
    guess_compose_container_name,
    resolve_compose,
    sanitize_compose,
)
from homeio_agent.data_seeder import prepare_volume_ownership, seed_data_files
from homeio_agent.docker_ops import (
    ProcessError,
    compose_args,
    container_name,
    docker,
    is_compose_noise,
    run,
    run_checked,
)
from homeio_agent.env_builder import build_env, with_container_name
from homeio_agent.errors import (
    DependencyError,
    DeployError,
    DeployInFlightError,
    ResolutionError,
    ValidationError,
)
from homeio_agent.logging_setup import log_action
from homeio_agent.models import DeployRequest, DeployResult, InstallProgressEvent, ProgressStatus
from homeio_agent.pull_progress import stream_compose_pull
from homeio_agent.recorder import record_installation

log = logging.getLogger(__name__)

APP_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


def _clip(value: Optional[str], limit: int = 2000) -> Optional[str]:
    text = (value or "").strip()
    if not text:
        return None
    return text if len(text) <= limit else text[:limit] + "..."


def process_details(e: ProcessError) -> Dict[str, Any]:
    return {
        "cmd": " ".join(e.cmd),
        "code": e.code,
        "stdout": _clip(e.out),
        "stderr": _clip(e.err),
    }


def summarize_failure(stage: str, message: str, details: Dict[str, Any]) -> str:
    """Known registry and mount failures get a user-facing message; otherwise the raw one."""
    combined = "\n".join(str(details.get(k) or "") for k in ("stderr", "stdout")).lower()

    if stage == "compose:pull":
        if "toomanyrequests" in combined:
            return "Docker registry rate limit reached. Try again later or use authenticated pulls."
        if (
            "pull access denied" in combined
            or "requested access to the resource is denied" in combined
            or "unauthorized" in combined
        ):
            return "Docker image access denied. Check registry visibility or authentication."
        if "no matching manifest for" in combined:
            return "Docker image does not support this CPU architecture."
        if "manifest unknown" in combined or "not found" in combined:
            return "Docker image tag/digest not found in registry."
        if "i/o timeout" in combined or "tls handshake timeout" in combined:
            return "Docker registry network timeout. Check internet/DNS and retry."

    if stage == "compose:up" and "is a directory" in combined and "entrypoint.sh" in combined:
        return "Container start failed because /entrypoint.sh was mounted from a directory instead of a file."

    return message


def _valid_port(value: Any) -> bool:
    text = str(value if value is not None else "").split("/")[0].strip()
    if not text.isdigit():
        return False
    return 1 <= int(text) <= 65535


def validate_request(request: DeployRequest) -> None:
    if not APP_ID_RE.match(request.appId or ""):
        raise ValidationError("Invalid app ID", {"appId": request.appId})
    if request.config is None:
        return
    for port in request.config.ports:
        for value in (port.published, port.container):
            if not _valid_port(value):
                raise ValidationError(f"Invalid port: {value}", {"port": value})


class ProgressSink:
    """
    Progress reporting for one attempt. Values never go backwards and at most
    one terminal event (completed or error) is emitted.
    """

    def __init__(self, publish: Callable[[InstallProgressEvent], None], app_id: str, name: str, icon: str):
        self.publish = publish
        self.app_id = app_id
        self.name = name
        self.icon = icon
        self.last = 0.0
        self.closed = False

    def emit(self, progress: float, message: str, status: ProgressStatus = "running") -> None:
        if self.closed:
            return
        value = min(1.0, max(self.last, float(progress)))
        self.last = value
        event = InstallProgressEvent(
            appId=self.app_id,
            containerName=self.app_id,
            name=self.name,
            icon=self.icon,
            progress=value,
            status=status,
            message=message,
        )
        if event.terminal:
            self.closed = True
        try:
            self.publish(event)
        except Exception as e:
            log.warning("progress publish failed: appId=%s err=%s", self.app_id, e)

    def completed(self, message: str = "Deployment complete") -> None:
        self.emit(1.0, message, "completed")

    def failed(self, message: str) -> None:
        self.emit(1.0, message, "error")


class DeployOrchestrator:
    def __init__(self, store=None, hub=None):
        self._store = store
        self._hub = hub

    @property
    def store(self):
        if self._store is None:
            from homeio_agent.catalog import get_store

            self._store = get_store()
        return self._store

    @property
    def hub(self):
        if self._hub is None:
            from homeio_agent.broadcast import get_hub

            self._hub = get_hub()
        return self._hub

    async def deploy(self, request: DeployRequest) -> DeployResult:
        app_id = request.appId
        log_action("deploy:start", {"appId": app_id})
        log.info("deploy start: appId=%s", app_id)

        sink = ProgressSink(self.hub.push_progress, app_id, app_id, settings.DEFAULT_APP_ICON)
        sanitized: Optional[SanitizedCompose] = None
        try:
            sink.name, sink.icon = await asyncio.to_thread(self._display_meta, request)
            sink.emit(0.05, "Preparing deployment", "starting")

            validate_request(request)
            await self._check_dependencies(app_id)

            try:
                resolved = await asyncio.to_thread(resolve_compose, request, self.store)
            except (OSError, PyMongoError) as e:
                raise DeployError("compose:resolve", f"Failed to prepare compose file: {e}") from e
            if resolved is None:
                raise ResolutionError()
            log.info("compose resolved: appId=%s dir=%s path=%s", app_id, resolved.app_dir, resolved.compose_path)

            if request.composeContent:
                await self.tear_down(resolved.app_dir, app_id)

            sanitized = await asyncio.to_thread(sanitize_compose, resolved.compose_path)
            log.info(
                "compose selected: appId=%s sanitized=%s original=%s",
                app_id, sanitized.sanitized_path, sanitized.original_path,
            )
            sink.emit(0.15, "Configuring deployment")

            explicit_name = await asyncio.to_thread(get_container_name_from_compose, sanitized.original_path)
            fallback_name = explicit_name or container_name(app_id)
            env = with_container_name(build_env(app_id, request.config), fallback_name)

            try:
                await asyncio.to_thread(seed_data_files, resolved.app_dir, env["APP_DATA_DIR"])
            except OSError as e:
                raise DeployError("seed", f"Failed to prepare app data directory: {e}") from e
            await asyncio.to_thread(prepare_volume_ownership, sanitized.sanitized_path, env, app_id)
            sink.emit(0.20, "Pre-seeding complete")

            sink.emit(0.35, "Pulling images")
            try:
                await stream_compose_pull(
                    resolved.app_dir,
                    app_id,
                    sanitized.sanitized_path,
                    env,
                    lambda progress, message: sink.emit(progress, message or "Pulling images"),
                )
            except ProcessError as e:
                raise DeployError("compose:pull", str(e), process_details(e)) from e

            sink.emit(0.85, "Starting services")
            await self.start_services(resolved.app_dir, app_id, sanitized.sanitized_path, env)

            sink.emit(0.90, "Finalizing deployment")
            detected, containers = await self.detect_containers(
                resolved.app_dir, app_id, sanitized, env, explicit_name, fallback_name
            )
            compose_meta = await asyncio.to_thread(extract_compose_meta, sanitized.original_path)

            await asyncio.to_thread(
                record_installation,
                self.store,
                request,
                detected,
                containers,
                sanitized.original_path,
                compose_meta,
            )

            await self.refresh_observers()
            log_action("deploy:success", {"appId": app_id, "containerName": detected})
            log.info("deploy success: appId=%s container=%s", app_id, detected)
            sink.completed()
            return DeployResult(success=True)
        except DeployError as e:
            return self._fail(sink, app_id, e.stage, e.message, e.details)
        except Exception as e:
            log.exception("deploy crashed: appId=%s", app_id)
            return self._fail(sink, app_id, "unknown", str(e) or e.__class__.__name__, {})
        finally:
            discard_sanitized(sanitized)

    def _display_meta(self, request: DeployRequest) -> Tuple[str, str]:
        try:
            installed = self.store.find_installed_record(request.appId)
        except PyMongoError as e:
            log.warning("installed lookup failed for meta: appId=%s err=%s", request.appId, e)
            installed = None
        return self.store.get_app_meta(request.appId, request.meta, installed)

    def _fail(self, sink: ProgressSink, app_id: str, stage: str, message: str, details: Dict[str, Any]) -> DeployResult:
        user_message = summarize_failure(stage, message, details) or "Failed to deploy app"
        log.error("deploy failed: appId=%s stage=%s error=%s", app_id, stage, message)
        log_action(
            "deploy:error",
            {"appId": app_id, "stage": stage, "error": user_message, "rawError": message, **details},
            level="error",
        )
        prefix = f"Deployment failed at {stage}" if stage and stage != "unknown" else "Deployment failed"
        sink.failed(f"{prefix}: {user_message}")
        return DeployResult(success=False, error=user_message)

    async def _check_dependencies(self, app_id: str) -> None:
        try:
            missing = await asyncio.to_thread(self.store.check_dependencies, app_id)
        except PyMongoError as e:
            raise DeployError("dependencies", f"Dependency check failed: {e}") from e
        if missing:
            raise DependencyError(missing)

    async def tear_down(self, app_dir: str, app_id: str) -> None:
        """compose down, else rm -f the deterministic name; nothing running is fine."""
        down = await run(
            compose_args(app_id, None, "down"),
            timeout_sec=settings.DOCKER_SHORT_TIMEOUT_SECONDS,
            cwd=app_dir,
        )
        if down.code == 0:
            log.info("teardown ok: appId=%s", app_id)
            return
        log.info("compose down failed (code=%s), removing container directly: appId=%s", down.code, app_id)
        rm = await docker("rm", "-f", container_name(app_id), timeout_sec=settings.DOCKER_SHORT_TIMEOUT_SECONDS)
        if rm.code != 0:
            log.info("no existing container removed: appId=%s err=%s", app_id, (rm.err or "").strip()[:200])

    async def start_services(self, app_dir: str, app_id: str, compose_path: str, env: Dict[str, str]) -> None:
        # no timeout: first start can build or wait on healthchecks
        try:
            up = await run_checked(
                compose_args(app_id, compose_path, "up", "-d"),
                timeout_sec=None,
                cwd=app_dir,
                env=env,
                label="docker compose up",
            )
        except ProcessError as e:
            raise DeployError("compose:up", str(e), process_details(e)) from e
        if up.out.strip():
            log.info("compose up stdout: appId=%s out=%s", app_id, up.out.strip()[:200])
        if up.err.strip():
            if is_compose_noise(up.err):
                log.info("compose up: appId=%s %s", app_id, up.err.strip()[:300])
            else:
                log.warning("compose up stderr: appId=%s err=%s", app_id, _clip(up.err))
                log_action("deploy:compose:stderr", {"appId": app_id, "stderr": _clip(up.err)}, level="warning")

    async def detect_containers(
        self,
        app_dir: str,
        app_id: str,
        compose: SanitizedCompose,
        env: Dict[str, str],
        explicit_name: Optional[str],
        fallback_name: str,
    ) -> Tuple[str, List[str]]:
        """
        Primary container: running daemon > guess from the compose file > the
        precomputed name. Containers may register a moment after `up -d`.
        """
        detected: Optional[str] = None
        containers: List[str] = []
        retries = max(1, settings.CONTAINER_DETECT_RETRIES)
        for attempt in range(retries):
            if attempt:
                await asyncio.sleep(settings.CONTAINER_DETECT_DELAY_SECONDS)
            detected = await detect_compose_container_name(app_dir, compose.sanitized_path, app_id, env=env)
            containers = await detect_all_compose_container_names(app_dir, app_id, compose.sanitized_path, env=env)
            if detected:
                break

        if not detected and not explicit_name:
            detected = await asyncio.to_thread(guess_compose_container_name, compose.original_path, app_id)
        if not detected:
            log.warning("container detection fell back: appId=%s container=%s", app_id, fallback_name)
            detected = fallback_name
        return detected, containers or [detected]

    async def refresh_observers(self) -> None:
        """Immediate poll so observers see the new app; retried once if coalesced."""
        try:
            if not await self.hub.trigger_refresh():
                await asyncio.sleep(settings.REFRESH_RETRY_DELAY_SECONDS)
                await self.hub.trigger_refresh()
        except Exception as e:
            log.warning("apps refresh after deploy failed: %s", e)


# ------------------------------------------------------------
# In-flight deploy guard (per-process, per-appId)
# ------------------------------------------------------------
_deploy_guard_lock = threading.Lock()
_deploy_inflight: Dict[str, float] = {}


def try_acquire_deploy(app_id: str) -> Optional[float]:
    """Returns start timestamp if acquired; otherwise None."""
    if not settings.DEPLOY_INFLIGHT_REJECT:
        return time.time()
    with _deploy_guard_lock:
        if app_id in _deploy_inflight:
            return None
        ts = time.time()
        _deploy_inflight[app_id] = ts
        return ts


def release_deploy(app_id: str, ts: Optional[float]) -> None:
    if not settings.DEPLOY_INFLIGHT_REJECT or ts is None:
        return
    with _deploy_guard_lock:
        # only release if it is the same deployment instance
        if _deploy_inflight.get(app_id) == ts:
            _deploy_inflight.pop(app_id, None)


@contextmanager
def deploy_guard(app_id: str):
    """Holds the in-flight slot for app_id; raises DeployInFlightError when it is taken."""
    ts = try_acquire_deploy(app_id)
    if ts is None:
        log_action("deploy:rejected", {"appId": app_id, "reason": "in-flight"}, level="warning")
        raise DeployInFlightError(app_id)
    try:
        yield ts
    finally:
        release_deploy(app_id, ts)


async def deploy_app(request: DeployRequest, orchestrator: Optional[DeployOrchestrator] = None) -> DeployResult:
    """Single entry point. A second attempt for an appId already deploying is rejected without progress events."""
    try:
        with deploy_guard(request.appId):
            return await (orchestrator or DeployOrchestrator()).deploy(request)
    except DeployInFlightError as e:
        return DeployResult(success=False, error=e.message)
