"""
Compose file resolution, sanitization and container-name detection.

Everything here except the detect_* coroutines is blocking filesystem work;
the orchestrator runs it through asyncio.to_thread.
"""

import logging
import os
import re
import shutil
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import yaml

from homeio_agent import settings
from homeio_agent.docker_ops import compose_args, project_name, run

log = logging.getLogger(__name__)

COMPOSE_NAMES = ("docker-compose.yml", "docker-compose.yaml")
SANITIZED_NAME = ".docker-compose.sanitized.yml"
MAX_SEARCH_DEPTH = 5

# services that should not be picked as an app's primary container
HELPER_NAME_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"[-_]db[-_]|[-_]database[-_]",
        r"[-_]redis[-_]",
        r"[-_]postgres[-_]|[-_]mysql[-_]|[-_]mariadb[-_]|[-_]mongodb[-_]",
        r"[-_]proxy[-_]|[-_]tor[-_]",
        r"[-_]dind[-_]|[-_]docker[-_]",
    )
]


@dataclass(frozen=True)
class ResolvedCompose:
    app_dir: str
    compose_path: str


@dataclass(frozen=True)
class SanitizedCompose:
    original_path: str
    sanitized_path: str

    @property
    def changed(self) -> bool:
        return self.sanitized_path != self.original_path


def load_compose(path: str) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        log.warning("compose load failed: path=%s err=%s", path, e)
        return None
    return doc if isinstance(doc, dict) else None


def _services(doc: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    services = (doc or {}).get("services")
    return services if isinstance(services, dict) else {}


# -----------------------------
# Resolution
# -----------------------------

def installed_app_dir(app_id: str) -> str:
    return os.path.join(settings.INSTALLED_APPS_ROOT, app_id)


def _compose_in(directory: str) -> Optional[str]:
    for name in COMPOSE_NAMES:
        candidate = os.path.join(directory, name)
        if os.path.isfile(candidate):
            return candidate
    return None


def find_compose_for_app(app_id: str) -> Optional[ResolvedCompose]:
    """
    Search installed-apps, then store roots, then internal-apps for a directory
    named like the app (case-insensitive) that holds a compose file.
    """
    target = app_id.lower()

    def search(directory: str, depth: int) -> Optional[ResolvedCompose]:
        if depth > MAX_SEARCH_DEPTH:
            return None
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError:
            return None
        for entry in entries:
            if not entry.is_dir(follow_symlinks=False):
                continue
            if entry.name.lower() == target:
                found = _compose_in(entry.path)
                if found:
                    return ResolvedCompose(app_dir=entry.path, compose_path=found)
            nested = search(entry.path, depth + 1)
            if nested:
                return nested
        return None

    for root in (settings.INSTALLED_APPS_ROOT, settings.STORES_ROOT, settings.INTERNAL_APPS_ROOT):
        if not os.path.isdir(root):
            continue
        found = search(root, 0)
        if found:
            return found
    log.warning("compose file not found by search: appId=%s", app_id)
    return None


def copy_app_to_installed(store_app_dir: str, app_id: str) -> ResolvedCompose:
    """Copy compose, metadata and supporting files into installed-apps/<appId>/."""
    dest_dir = installed_app_dir(app_id)
    if os.path.realpath(store_app_dir) == os.path.realpath(dest_dir):
        compose_path = _compose_in(dest_dir)
        if not compose_path:
            raise FileNotFoundError(f"No docker-compose.yml found in {dest_dir}")
        return ResolvedCompose(app_dir=dest_dir, compose_path=compose_path)

    os.makedirs(dest_dir, exist_ok=True)
    for entry in os.scandir(store_app_dir):
        if not entry.is_file() or entry.name == SANITIZED_NAME:
            continue
        dest = os.path.join(dest_dir, entry.name)
        try:
            shutil.copyfile(entry.path, dest)
            if entry.name.endswith(".sh"):
                os.chmod(dest, 0o755)
        except OSError as e:
            log.warning("copy to installed-apps failed: file=%s err=%s", entry.path, e)

    compose_path = _compose_in(dest_dir)
    if not compose_path:
        raise FileNotFoundError(f"No docker-compose.yml found in {store_app_dir}")
    log.info("copied store app to installed-apps: appId=%s from=%s", app_id, store_app_dir)
    return ResolvedCompose(app_dir=dest_dir, compose_path=compose_path)


def _absolute(path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(os.getcwd(), path)


def _from_existing(path: Optional[str], app_id: str, origin: str) -> Optional[ResolvedCompose]:
    if not path:
        return None
    full = _absolute(path)
    if not os.path.isfile(full):
        log.warning("compose path missing: appId=%s origin=%s path=%s", app_id, origin, full)
        return None
    try:
        return copy_app_to_installed(os.path.dirname(full), app_id)
    except OSError as e:
        log.warning("compose copy failed: appId=%s origin=%s err=%s", app_id, origin, e)
        return None


def resolve_compose(request, store=None) -> Optional[ResolvedCompose]:
    """
    First success wins: inline content, explicit path, catalog record,
    filesystem search. None means "not found", never an exception.
    """
    app_id = request.appId

    if request.composeContent:
        app_dir = installed_app_dir(app_id)
        os.makedirs(app_dir, exist_ok=True)
        path = os.path.join(app_dir, COMPOSE_NAMES[0])
        with open(path, "w", encoding="utf-8") as f:
            f.write(request.composeContent)
        log.info("compose written: appId=%s path=%s", app_id, path)
        return ResolvedCompose(app_dir=app_dir, compose_path=path)

    resolved = _from_existing(request.composePath, app_id, "request")
    if resolved:
        return resolved

    if store is not None:
        record = store.find_app_record(app_id) or {}
        resolved = _from_existing(record.get("composePath"), app_id, "catalog")
        if resolved:
            return resolved

    found = find_compose_for_app(app_id)
    if found is None:
        return None
    if os.path.realpath(found.app_dir) == os.path.realpath(installed_app_dir(app_id)):
        return found
    try:
        return copy_app_to_installed(found.app_dir, app_id)
    except OSError as e:
        log.warning("compose copy failed: appId=%s origin=search err=%s", app_id, e)
        return found


# -----------------------------
# Sanitization
# -----------------------------

def sanitize_compose(compose_path: str) -> SanitizedCompose:
    """
    Drop services with neither image nor build. The sanitized copy is written
    beside the original so compose derives the same project directory.
    """
    same = SanitizedCompose(original_path=compose_path, sanitized_path=compose_path)
    doc = load_compose(compose_path)
    services = _services(doc)
    if not services:
        return same

    removed = [
        name for name, svc in services.items()
        if not isinstance(svc, dict) or not (svc.get("image") or svc.get("build"))
    ]
    if not removed:
        return same
    if len(removed) == len(services):
        log.error("sanitize: no valid services would remain: path=%s", compose_path)
        return same

    doc["services"] = {k: v for k, v in services.items() if k not in removed}
    sanitized = os.path.join(os.path.dirname(compose_path), SANITIZED_NAME)
    try:
        with open(sanitized, "w", encoding="utf-8") as f:
            yaml.safe_dump(doc, f, sort_keys=False, default_flow_style=False)
    except OSError as e:
        log.warning("sanitize write failed, using original: path=%s err=%s", compose_path, e)
        return same
    log.info("sanitize: removed services=%s path=%s", ",".join(removed), compose_path)
    return SanitizedCompose(original_path=compose_path, sanitized_path=sanitized)


def discard_sanitized(compose: Optional[SanitizedCompose]) -> None:
    if compose is None or not compose.changed:
        return
    try:
        os.remove(compose.sanitized_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning("sanitized compose cleanup failed: path=%s err=%s", compose.sanitized_path, e)


# -----------------------------
# Metadata from the compose file
# -----------------------------

def first_service(compose_path: str):
    services = _services(load_compose(compose_path))
    if not services:
        return None, None
    name = next(iter(services))
    svc = services[name]
    return name, (svc if isinstance(svc, dict) else {})


def get_container_name_from_compose(compose_path: str) -> Optional[str]:
    _, svc = first_service(compose_path)
    if svc and svc.get("container_name"):
        return str(svc["container_name"])
    return None


def guess_compose_container_name(compose_path: str, app_id: Optional[str] = None) -> Optional[str]:
    """
    Compose's generated name for the first service: <project>-<service>-1.
    With app_id the project is the one passed as --project-name, which wins
    over a top-level `name:`.
    """
    doc = load_compose(compose_path)
    services = _services(doc)
    if not services:
        return None
    if app_id:
        project = project_name(app_id)
    else:
        project = (doc.get("name") or os.path.basename(os.path.dirname(compose_path))).lower()
    return f"{project}-{str(next(iter(services))).lower()}-1"


def extract_compose_meta(compose_path: str) -> Dict[str, str]:
    """webUIPort / networkMode from the first service; empty dict on any failure."""
    try:
        _, svc = first_service(compose_path)
        if not svc:
            return {}
        meta: Dict[str, str] = {}
        ports = svc.get("ports") or []
        if isinstance(ports, list) and ports:
            first = ports[0]
            if isinstance(first, (str, int)):
                parts = str(first).split(":")
                # "8080:80", "127.0.0.1:8080:80" or a bare container port
                # "127.0.0.1::80" publishes on a random host port: report the target
                host = (parts[-2] if len(parts) >= 2 else "") or parts[-1]
                if host:
                    meta["webUIPort"] = host.split("/")[0]
            elif isinstance(first, dict):
                value = first.get("published", first.get("target"))
                if value is not None:
                    meta["webUIPort"] = str(value)
        if svc.get("network_mode") is not None:
            meta["networkMode"] = str(svc["network_mode"])
        return meta
    except Exception as e:
        log.warning("extract compose meta failed: path=%s err=%s", compose_path, e)
        return {}


# -----------------------------
# Detection against the daemon
# -----------------------------

def is_helper_container(name: str) -> bool:
    return any(p.search(name) for p in HELPER_NAME_PATTERNS)


def pick_primary_container(names: List[str]) -> Optional[str]:
    if not names:
        return None
    if len(names) == 1:
        return names[0]
    for name in names:
        if not is_helper_container(name):
            return name
    return names[0]


async def _compose_ps_names(app_dir: str, app_id: str, compose_path: Optional[str], env=None) -> List[str]:
    r = await run(
        compose_args(app_id, compose_path, "ps", "--format", "{{.Names}}"),
        timeout_sec=settings.DOCKER_SHORT_TIMEOUT_SECONDS,
        cwd=app_dir,
        env=env,
    )
    if r.code != 0:
        log.warning("compose ps failed: appId=%s code=%s err=%s", app_id, r.code, (r.err or "")[:300])
        return []
    return [line.strip() for line in r.out.splitlines() if line.strip()]


async def detect_compose_container_name(app_dir: str, compose_path: str, app_id: str, env=None) -> Optional[str]:
    return pick_primary_container(await _compose_ps_names(app_dir, app_id, compose_path, env=env))


async def detect_all_compose_container_names(app_dir: str, app_id: str, compose_path: Optional[str] = None,
                                             env=None) -> List[str]:
    return await _compose_ps_names(app_dir, app_id, compose_path, env=env)
