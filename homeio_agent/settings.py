import os
from typing import Optional


def env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip()


def _default_data_root() -> str:
    if os.path.isdir("/DATA"):
        return "/DATA"
    return os.path.join(os.getcwd(), "DATA")


HOMEIO_AGENT_HOST = env("HOMEIO_AGENT_HOST", "0.0.0.0")
HOMEIO_AGENT_PORT = int(env("HOMEIO_AGENT_PORT", "7010"))
HOMEIO_AGENT_TOKEN = env("HOMEIO_AGENT_TOKEN", "CHANGE_ME")

# -----------------------------
# App directories
# -----------------------------
# installed-apps/<appId>/docker-compose.yml is the persisted compose location.
INSTALLED_APPS_ROOT = env("HOMEIO_INSTALLED_APPS_ROOT", os.path.join(os.getcwd(), "installed-apps"))
STORES_ROOT = env("HOMEIO_STORES_ROOT", os.path.join(os.getcwd(), "external-apps"))
INTERNAL_APPS_ROOT = env("HOMEIO_INTERNAL_APPS_ROOT", os.path.join(os.getcwd(), "internal-apps"))

# APP_DATA_DIR defaults to <DATA_ROOT>/AppData/<appId>
DATA_ROOT = env("HOMEIO_DATA_ROOT") or env("HOMEIO_HOME") or _default_data_root()

CONTAINER_PREFIX = env("HOMEIO_CONTAINER_PREFIX", "") or ""
DEFAULT_APP_ICON = env("HOMEIO_DEFAULT_APP_ICON", "/default-application-icon.png")

# -----------------------------
# Deploy behavior
# -----------------------------
# Reject a second deploy of the same appId while one is running.
DEPLOY_INFLIGHT_REJECT = env("HOMEIO_DEPLOY_INFLIGHT_REJECT", "true").lower() == "true"
# Short-lived docker calls (ps, rm, down); pull/up are never time-limited.
DOCKER_SHORT_TIMEOUT_SECONDS = int(env("HOMEIO_DOCKER_SHORT_TIMEOUT_SECONDS", "120") or "120")
CONTAINER_DETECT_RETRIES = int(env("HOMEIO_CONTAINER_DETECT_RETRIES", "3") or "3")
CONTAINER_DETECT_DELAY_SECONDS = float(env("HOMEIO_CONTAINER_DETECT_DELAY_SECONDS", "1.0") or "1.0")
# If true, try `docker compose --progress json pull` first (byte-accurate progress).
PULL_JSON_PROGRESS = env("HOMEIO_PULL_JSON_PROGRESS", "false").lower() == "true"
PULL_EMIT_INTERVAL_SECONDS = float(env("HOMEIO_PULL_EMIT_INTERVAL_SECONDS", "0.2") or "0.2")

# -----------------------------
# State broadcast
# -----------------------------
BROADCAST_POLL_SECONDS = float(env("HOMEIO_BROADCAST_POLL_SECONDS", "5") or "5")
PROGRESS_EXPIRY_SECONDS = float(env("HOMEIO_PROGRESS_EXPIRY_SECONDS", "5") or "5")
REFRESH_RETRY_DELAY_SECONDS = float(env("HOMEIO_REFRESH_RETRY_DELAY_SECONDS", "0.3") or "0.3")
SUBSCRIBER_QUEUE_SIZE = int(env("HOMEIO_SUBSCRIBER_QUEUE_SIZE", "100") or "100")

# -----------------------------
# Mongo (catalog + installed apps)
# -----------------------------
MONGO_URI = env("HOMEIO_MONGO_URI", "mongodb://127.0.0.1:27017")
MONGO_DB = env("HOMEIO_MONGO_DB", "homeio") or "homeio"
MONGO_TIMEOUT_SECONDS = int(env("HOMEIO_MONGO_TIMEOUT_SECONDS", "3") or "3")
