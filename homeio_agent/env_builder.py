"""
Environment variables for `docker compose pull/up`.

Layering (lowest to highest): host environment < system defaults (only fill
gaps) < user port/volume/env overrides < CONTAINER_NAME.
"""

import os
import socket
import time
from typing import Dict, Mapping, Optional

from homeio_agent import settings
from homeio_agent.models import InstallConfig


def system_defaults(base: Mapping[str, str]) -> Dict[str, str]:
    getuid = getattr(os, "getuid", None)
    getgid = getattr(os, "getgid", None)
    return {
        "PUID": base.get("PUID") or str(getuid() if getuid else 1000),
        "PGID": base.get("PGID") or str(getgid() if getgid else 1000),
        "TZ": base.get("TZ") or _host_timezone(),
    }


def _host_timezone() -> str:
    # /etc/timezone on Debian-likes, /etc/localtime symlink elsewhere
    try:
        with open("/etc/timezone", encoding="utf-8") as f:
            tz = f.read().strip()
            if tz:
                return tz
    except OSError:
        pass
    try:
        target = os.readlink("/etc/localtime")
        if "zoneinfo/" in target:
            return target.split("zoneinfo/", 1)[1]
    except OSError:
        pass
    name = time.tzname[0] if time.tzname else ""
    return name if name and name != "UTC" and "/" in name else "UTC"


def device_hostname(base: Mapping[str, str]) -> str:
    return base.get("DEVICE_HOSTNAME") or socket.gethostname() or "homeio"


def normalize_host(raw: Optional[str]) -> Optional[str]:
    """'https://box.lan:8080/x' -> 'box.lan'; IPv6 literals are kept as-is."""
    if not raw or not raw.strip():
        return None
    value = raw.strip()
    lower = value.lower()
    for scheme in ("http://", "https://"):
        if lower.startswith(scheme):
            value = value[len(scheme):]
            break
    host_port = value.split("/")[0]
    if not host_port:
        return None
    if "[" in host_port and "]" in host_port:
        return host_port
    return host_port.split(":")[0] or None


def app_data_dir(app_id: str) -> str:
    return os.path.join(settings.DATA_ROOT, "AppData", app_id)


def apply_config_overrides(env: Dict[str, str], config: InstallConfig) -> None:
    for port in config.ports:
        env[f"PORT_{port.container}"] = str(port.published)
    for volume in config.volumes:
        env["VOLUME_" + volume.container.replace("/", "_").upper()] = volume.source
    for var in config.environment:
        env[var.key] = var.value


def build_env(
    app_id: str,
    config: Optional[InstallConfig] = None,
    base_env: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    base = dict(os.environ if base_env is None else base_env)
    env: Dict[str, str] = dict(base)

    for key, value in system_defaults(base).items():
        env.setdefault(key, value)
        if not env[key]:
            env[key] = value

    for key, value in (
        ("APP_ID", app_id),
        ("AppID", app_id),
        ("APP_DATA_DIR", app_data_dir(app_id)),
        ("UMBREL_ROOT", settings.DATA_ROOT),
    ):
        if not env.get(key):
            env[key] = value

    hostname = device_hostname(base)
    env["DEVICE_HOSTNAME"] = hostname
    if not env.get("DEVICE_DOMAIN_NAME"):
        env["DEVICE_DOMAIN_NAME"] = f"{hostname}.local"
    if not env.get("APP_DOMAIN"):
        configured = normalize_host(
            base.get("HOMEIO_DOMAIN") or base.get("HOMEIO_HOST") or base.get("HOMEIO_HTTP_HOST") or base.get("HOSTNAME")
        )
        env["APP_DOMAIN"] = configured or env["DEVICE_DOMAIN_NAME"]

    if config is not None:
        apply_config_overrides(env, config)
    return env


def with_container_name(env: Mapping[str, str], name: str) -> Dict[str, str]:
    out = dict(env)
    out["CONTAINER_NAME"] = name
    return out
