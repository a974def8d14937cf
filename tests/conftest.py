"""
Shared fixtures.

- fake_docker: a Python script standing in for the docker CLI (HOMEIO_DOCKER_BIN).
  Its behavior per subcommand comes from a JSON file; every call is appended
  to a JSONL log with argv, cwd and env.
- roots:       installed/store/internal/data roots under tmp_path.
- store:       AppStore backed by mongomock.
"""

import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List

import mongomock
import pytest

os.environ.setdefault("HOMEIO_LOG_DIR", tempfile.mkdtemp(prefix="homeio-agent-logs-"))

from homeio_agent import settings  # noqa: E402
from homeio_agent.catalog import AppStore, set_store  # noqa: E402

FAKE_DOCKER = '''#!{python}
import json
import os
import sys
import time

args = sys.argv[1:]
cfg_path = os.environ.get("HOMEIO_FAKE_DOCKER_CONFIG", "")
cfg = {{}}
if cfg_path and os.path.exists(cfg_path):
    with open(cfg_path) as f:
        cfg = json.load(f)

VALUED = {{"--project-name", "-p", "-f", "--file", "--progress", "--format"}}
if args and args[0] == "compose":
    sub = ""
    skip = False
    for a in args[1:]:
        if skip:
            skip = False
            continue
        if a in VALUED:
            skip = True
            continue
        if a.startswith("-"):
            continue
        sub = a
        break
    key = "compose " + sub
    if key == "compose pull" and "--progress" in args and "compose pull json" in cfg:
        key = "compose pull json"
else:
    key = args[0] if args else ""

log_path = os.environ.get("HOMEIO_FAKE_DOCKER_LOG")
if log_path:
    with open(log_path, "a") as f:
        f.write(json.dumps({{"key": key, "argv": args, "cwd": os.getcwd(), "env": dict(os.environ)}}) + "\\n")

behavior = cfg.get(key, {{}})
for line in behavior.get("stdout", []):
    sys.stdout.write(line + "\\n")
    sys.stdout.flush()
for line in behavior.get("stderr", []):
    sys.stderr.write(line + "\\n")
    sys.stderr.flush()
if behavior.get("sleep"):
    time.sleep(behavior["sleep"])
sys.exit(int(behavior.get("code", 0)))
'''


class FakeDocker:
    def __init__(self, directory: Path):
        self.bin = directory / "docker"
        self.config_path = directory / "docker-config.json"
        self.log_path = directory / "docker-calls.jsonl"
        self.bin.write_text(FAKE_DOCKER.format(python=sys.executable))
        self.bin.chmod(0o755)
        self.configure({})

    def configure(self, config: Dict[str, Any]) -> None:
        self.config_path.write_text(json.dumps(config))

    def calls(self) -> List[Dict[str, Any]]:
        if not self.log_path.exists():
            return []
        return [json.loads(line) for line in self.log_path.read_text().splitlines() if line.strip()]

    def calls_for(self, key: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls() if c["key"] == key]

    def keys(self) -> List[str]:
        return [c["key"] for c in self.calls()]


@pytest.fixture
def fake_docker(tmp_path, monkeypatch) -> FakeDocker:
    directory = tmp_path / "fakebin"
    directory.mkdir()
    fake = FakeDocker(directory)
    monkeypatch.setenv("HOMEIO_DOCKER_BIN", str(fake.bin))
    monkeypatch.setenv("HOMEIO_FAKE_DOCKER_CONFIG", str(fake.config_path))
    monkeypatch.setenv("HOMEIO_FAKE_DOCKER_LOG", str(fake.log_path))
    return fake


@pytest.fixture
def roots(tmp_path, monkeypatch) -> Dict[str, Path]:
    paths = {
        "installed": tmp_path / "installed-apps",
        "stores": tmp_path / "external-apps",
        "internal": tmp_path / "internal-apps",
        "data": tmp_path / "DATA",
    }
    for p in paths.values():
        p.mkdir()
    monkeypatch.setattr(settings, "INSTALLED_APPS_ROOT", str(paths["installed"]))
    monkeypatch.setattr(settings, "STORES_ROOT", str(paths["stores"]))
    monkeypatch.setattr(settings, "INTERNAL_APPS_ROOT", str(paths["internal"]))
    monkeypatch.setattr(settings, "DATA_ROOT", str(paths["data"]))
    monkeypatch.setattr(settings, "CONTAINER_DETECT_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "REFRESH_RETRY_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "PULL_JSON_PROGRESS", False)
    monkeypatch.setattr(settings, "CONTAINER_PREFIX", "")
    monkeypatch.delenv("APP_DATA_DIR", raising=False)
    return paths


@pytest.fixture
def store():
    s = AppStore(mongomock.MongoClient()["homeio-test"])
    s.ensure_indexes()
    set_store(s)
    yield s
    set_store(None)


def write_app(directory: Path, compose: str, extra: Dict[str, str] = None) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "docker-compose.yml").write_text(compose)
    for name, content in (extra or {}).items():
        (directory / name).write_text(content)
    return directory / "docker-compose.yml"


WEB_COMPOSE = """\
services:
  web:
    image: nginx:alpine
    ports:
      - "8080:80"
"""
