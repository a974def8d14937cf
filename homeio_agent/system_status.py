"""
Collectors polled by the broadcast hub.

- system:   cpu/memory/temperature (psutil)
- storage:  primary disk usage with a health band
- network:  Mbps derived from the delta against the previous sample
- apps:     `docker ps -a` grouped by compose project, matched to installed records
"""

import asyncio
import json
import logging
import os
import re
import time
from typing import Any, Dict, List, Optional, Tuple

import psutil

from homeio_agent import settings
from homeio_agent.catalog import get_store
from homeio_agent.docker_ops import docker

log = logging.getLogger(__name__)

PROJECT_LABEL = "com.docker.compose.project"
SERVICE_LABEL = "com.docker.compose.service"

# compose services that are part of a multi-service app, never shown on their own
HELPER_SERVICES = re.compile(r"^(docker|dind|tor|proxy|redis|db|postgres|mysql|mariadb|mongodb)$", re.IGNORECASE)

_PS_FORMAT = "\t".join(
    [
        "{{.Names}}",
        "{{.Status}}",
        "{{.Image}}",
        '{{.Label "%s"}}' % PROJECT_LABEL,
        '{{.Label "%s"}}' % SERVICE_LABEL,
    ]
)
_SIZE = re.compile(r"^([\d.]+)\s*([a-zA-Z]+)?$")


class CollectorError(RuntimeError):
    pass


def storage_health(usage_percent: float) -> str:
    if usage_percent < 80:
        return "Healthy"
    if usage_percent < 90:
        return "Warning"
    return "Critical"


def parse_size(value: str) -> float:
    """'1.5GiB' -> bytes (binary multiples, unit by first letter)."""
    m = _SIZE.match((value or "").replace(",", "").strip())
    if not m:
        return 0.0
    number = float(m.group(1))
    unit = (m.group(2) or "b").lower()
    for prefix, power in (("t", 4), ("g", 3), ("m", 2), ("k", 1)):
        if unit.startswith(prefix):
            return number * 1024 ** power
    return number


def container_status(status: str) -> str:
    s = (status or "").lower()
    if s.startswith("up"):
        return "running"
    if "exited" in s or s.startswith("created"):
        return "stopped"
    return "error"


def aggregate_status(statuses: List[str]) -> str:
    if not statuses:
        return "error"
    if all(s == "stopped" for s in statuses):
        return "stopped"
    if any(s == "running" for s in statuses):
        return "running"
    return "error"


def parse_ps_lines(out: str) -> List[Dict[str, str]]:
    rows = []
    for line in (out or "").splitlines():
        if not line.strip():
            continue
        parts = (line.split("\t") + [""] * 5)[:5]
        name, status, image, project, service = (p.strip() for p in parts)
        if not name:
            continue
        if project and service and HELPER_SERVICES.match(service):
            continue
        rows.append({"name": name, "status": status, "image": image, "project": project, "service": service})
    return rows


def parse_stats_lines(out: str) -> List[Dict[str, Any]]:
    apps = []
    for line in (out or "").splitlines():
        try:
            row = json.loads(line)
        except ValueError:
            continue
        name = row.get("Name") or ""
        if not name:
            continue
        mem = (row.get("MemUsage") or "").split(" / ")
        try:
            cpu = float((row.get("CPUPerc") or "0").rstrip("%") or 0)
            mem_pct = float((row.get("MemPerc") or "0").rstrip("%") or 0)
        except ValueError:
            cpu, mem_pct = 0.0, 0.0
        apps.append(
            {
                "id": name,
                "name": name.replace("-", " ").title(),
                "cpuUsage": cpu,
                "memoryUsage": parse_size(mem[0] if mem else "0"),
                "memoryLimit": parse_size(mem[1] if len(mem) > 1 else "0"),
                "memoryPercent": mem_pct,
            }
        )
    apps.sort(key=lambda a: a["cpuUsage"], reverse=True)
    return apps


def _storage_path() -> str:
    return settings.DATA_ROOT if os.path.isdir(settings.DATA_ROOT) else "/"


class SystemCollector:
    """Produces the hub's snapshot fields. One instance per hub (keeps the network sample)."""

    def __init__(self, store_factory=get_store):
        self.store_factory = store_factory
        self._last_net: Optional[Tuple[int, int, float]] = None

    def _host_metrics(self) -> Dict[str, Any]:
        cpu = psutil.cpu_percent(interval=None)
        mem = psutil.virtual_memory()
        temperature = None
        sensors = getattr(psutil, "sensors_temperatures", None)
        if sensors is not None:
            try:
                readings = [t.current for entries in (sensors() or {}).values() for t in entries if t.current]
                temperature = round(max(readings)) if readings else None
            except (OSError, AttributeError):
                temperature = None

        try:
            disk = psutil.disk_usage(_storage_path())
            pct = round(disk.percent)
            storage = {
                "total": round(disk.total / 1024 ** 3, 2),
                "used": round(disk.used / 1024 ** 3, 1),
                "usagePercent": pct,
                "health": storage_health(pct),
            }
        except OSError:
            storage = {"total": 0, "used": 0, "usagePercent": 0, "health": "Unknown"}

        return {
            "system": {
                "cpu": {"usage": round(cpu), "temperature": temperature},
                "memory": {
                    "usage": round(mem.percent),
                    "total": mem.total,
                    "used": mem.total - mem.available,
                    "free": mem.available,
                },
            },
            "storage": storage,
            "network": self._network(),
        }

    def _network(self) -> Dict[str, float]:
        counters = psutil.net_io_counters(pernic=True) or {}
        rx = sum(c.bytes_recv for nic, c in counters.items() if nic != "lo")
        tx = sum(c.bytes_sent for nic, c in counters.items() if nic != "lo")
        now = time.monotonic()
        network = {"uploadMbps": 0.0, "downloadMbps": 0.0}
        if self._last_net is not None:
            last_rx, last_tx, last_ts = self._last_net
            seconds = now - last_ts
            if seconds > 0:
                network = {
                    "uploadMbps": max(0.0, round((tx - last_tx) * 8 / 1_000_000 / seconds, 2)),
                    "downloadMbps": max(0.0, round((rx - last_rx) * 8 / 1_000_000 / seconds, 2)),
                }
        self._last_net = (rx, tx, now)
        return network

    async def running_apps(self) -> List[Dict[str, Any]]:
        r = await docker("stats", "--no-stream", "--format", "{{ json . }}",
                         timeout_sec=settings.DOCKER_SHORT_TIMEOUT_SECONDS)
        if r.code != 0:
            log.debug("docker stats failed: code=%s err=%s", r.code, (r.err or "")[:200])
            return []
        return parse_stats_lines(r.out)

    async def apps(self) -> Dict[str, List[Dict[str, Any]]]:
        r = await docker("ps", "-a", "--format", _PS_FORMAT, timeout_sec=settings.DOCKER_SHORT_TIMEOUT_SECONDS)
        if r.code != 0:
            raise CollectorError(f"docker ps exited with code {r.code}: {(r.err or '').strip()[:200]}")
        records = await asyncio.to_thread(self.store_factory().list_installed)
        return group_apps(parse_ps_lines(r.out), records)

    async def collect(self) -> Dict[str, Any]:
        host = await asyncio.to_thread(self._host_metrics)
        running = await self.running_apps()
        apps = await self.apps()
        return {**host, "runningApps": running, **apps}


def group_apps(containers: List[Dict[str, str]], records: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    by_app = {r["appId"]: r for r in records if r.get("appId")}
    # compose project labels are the lowercased appId
    by_project = {app_id.lower(): r for app_id, r in by_app.items()}
    by_container = {r.get("containerName"): r for r in records if r.get("containerName")}

    groups: Dict[str, List[Dict[str, str]]] = {}
    for c in containers:
        record = by_project.get(c["project"].lower()) or by_container.get(c["name"])
        key = record["appId"] if record else (c["project"] or c["name"])
        groups.setdefault(key, []).append(c)

    installed, others = [], []
    for key, members in groups.items():
        record = by_app.get(key)
        statuses = [container_status(m["status"]) for m in members]
        if record is not None:
            config = record.get("installConfig") or {}
            installed.append(
                {
                    "appId": key,
                    "name": record.get("name") or key,
                    "icon": record.get("icon") or settings.DEFAULT_APP_ICON,
                    "status": aggregate_status(statuses),
                    "containerName": record.get("containerName") or members[0]["name"],
                    "containers": [m["name"] for m in members],
                    "webUIPort": config.get("webUIPort"),
                    "source": record.get("source"),
                    "version": record.get("version"),
                }
            )
        else:
            for m, status in zip(members, statuses):
                others.append({"id": m["name"], "name": m["name"], "image": m["image"], "status": status})
    installed.sort(key=lambda a: a["appId"])
    others.sort(key=lambda a: a["name"])
    return {"installedApps": installed, "otherContainers": others}
