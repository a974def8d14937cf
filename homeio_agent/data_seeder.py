"""
Seed APP_DATA_DIR before containers start.

A bind-mount source that does not exist when the container starts is created
as a directory by the daemon, so files like entrypoint.sh must be in place
before pull/up.
"""

import logging
import os
import re
import shutil
from typing import Mapping, Optional, Tuple

from homeio_agent.compose import load_compose

log = logging.getLogger(__name__)

STORE_META_FILES = {
    "docker-compose.yml",
    "docker-compose.yaml",
    ".docker-compose.sanitized.yml",
    "appfile.json",
    "icon.png",
    "icon.svg",
    "thumbnail.png",
    "thumbnail.jpg",
}

_NUMERIC_USER = re.compile(r"^(\d+)(?::(\d+))?$")


def _copy_seed(src: str, dest: str, name: str) -> None:
    shutil.copyfile(src, dest)
    if name.endswith(".sh"):
        os.chmod(dest, 0o755)


def seed_data_files(app_dir: str, data_dir: str) -> int:
    """
    Copy top-level regular files of app_dir into data_dir. Existing files are
    kept (user edits survive a redeploy); a directory standing where a file
    belongs is replaced. Returns the number of files written.

    Raises OSError when data_dir cannot be created.
    """
    os.makedirs(data_dir, exist_ok=True)
    try:
        entries = [e for e in os.scandir(app_dir) if e.is_file() and e.name.lower() not in STORE_META_FILES]
    except OSError as e:
        log.warning("seed: cannot list app dir: dir=%s err=%s", app_dir, e)
        return 0

    written = 0
    for entry in entries:
        dest = os.path.join(data_dir, entry.name)
        try:
            if os.path.isdir(dest) and not os.path.islink(dest):
                shutil.rmtree(dest)
                _copy_seed(entry.path, dest, entry.name)
                log.info("seed: replaced directory with file %s -> %s", entry.name, dest)
                written += 1
            elif not os.path.lexists(dest):
                _copy_seed(entry.path, dest, entry.name)
                log.info("seed: copied %s -> %s", entry.name, dest)
                written += 1
        except OSError as e:
            log.warning("seed: copy failed: file=%s err=%s", entry.name, e)
    return written


def parse_numeric_user(user) -> Optional[Tuple[int, int]]:
    if isinstance(user, bool):
        return None
    if isinstance(user, int):
        return (user, user) if user >= 0 else None
    if not isinstance(user, str):
        return None
    m = _NUMERIC_USER.match(user.strip())
    if not m:
        return None
    uid = int(m.group(1))
    return uid, int(m.group(2) or uid)


def resolve_app_data_source(source: str, env: Mapping[str, str]) -> Optional[str]:
    """Host path for a bind source under APP_DATA_DIR, else None."""
    base = env.get("APP_DATA_DIR")
    source = (source or "").strip()
    if not base or not source:
        return None
    resolved = None
    for token in ("${APP_DATA_DIR}", "$APP_DATA_DIR"):
        if source.startswith(token):
            resolved = os.path.join(base, source[len(token):].lstrip("/"))
            break
    if resolved is None and source.startswith(base):
        resolved = source
    if resolved is None:
        return None
    base_abs = os.path.abspath(base)
    resolved = os.path.abspath(resolved)
    if resolved != base_abs and not resolved.startswith(base_abs + os.sep):
        return None
    return resolved


def prepare_volume_ownership(compose_path: str, env: Mapping[str, str], app_id: str) -> None:
    """
    For services running as a numeric user, create their APP_DATA_DIR bind
    sources and hand them to that uid/gid. Best-effort.
    """
    doc = load_compose(compose_path) or {}
    services = doc.get("services") if isinstance(doc.get("services"), dict) else {}
    for service_name, svc in services.items():
        if not isinstance(svc, dict):
            continue
        ids = parse_numeric_user(svc.get("user"))
        if ids is None:
            continue
        for volume in svc.get("volumes") or []:
            if isinstance(volume, str):
                source = volume.split(":")[0]
            elif isinstance(volume, dict):
                source = volume.get("source") or ""
            else:
                continue
            host_path = resolve_app_data_source(source, env)
            if not host_path:
                continue
            try:
                os.makedirs(host_path, exist_ok=True)
            except OSError as e:
                log.warning("ownership: mkdir failed: appId=%s path=%s err=%s", app_id, host_path, e)
                continue
            try:
                os.chown(host_path, ids[0], ids[1])
            except (OSError, AttributeError) as e:
                log.warning(
                    "ownership: chown failed: appId=%s service=%s path=%s uid=%s gid=%s err=%s",
                    app_id, service_name, host_path, ids[0], ids[1], e,
                )
            try:
                os.chmod(host_path, 0o775)
            except OSError:
                pass
