"""
App catalog and installed-app records (MongoDB).

- apps:           store catalog, one document per import; latest createdAt wins
- installed_apps: one document per installed appId
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from homeio_agent import settings
from homeio_agent.models import AppMetaOverride

log = logging.getLogger(__name__)

APPS = "apps"
INSTALLED_APPS = "installed_apps"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AppStore:
    def __init__(self, db: Database):
        self.db = db
        self.apps = db[APPS]
        self.installed = db[INSTALLED_APPS]

    def ensure_indexes(self) -> None:
        try:
            self.installed.create_index([("appId", ASCENDING)], unique=True)
            self.apps.create_index([("appId", ASCENDING), ("createdAt", DESCENDING)])
        except PyMongoError as e:
            log.warning("mongo index creation failed: %s", e)

    def find_app_record(self, app_id: str) -> Optional[Dict[str, Any]]:
        """Latest catalog record for appId (most recently created)."""
        return self.apps.find_one({"appId": app_id}, sort=[("createdAt", DESCENDING)])

    def find_installed_record(self, app_id: str) -> Optional[Dict[str, Any]]:
        return self.installed.find_one({"appId": app_id})

    def list_installed(self) -> List[Dict[str, Any]]:
        return list(self.installed.find({}, {"_id": 0}).sort("appId", ASCENDING))

    def record_installed_app(
        self,
        app_id: str,
        container_name: str,
        display_name: str,
        icon: str,
        config: Dict[str, Any],
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Upsert by appId. Fields passed as None are left untouched on an
        existing document, so a redeploy never erases what it does not know.
        """
        meta = meta or {}
        fields: Dict[str, Any] = {
            "containerName": container_name,
            "name": display_name,
            "icon": icon,
            "installConfig": config,
            "source": meta.get("source"),
            "container": meta.get("container"),
            "version": meta.get("version"),
        }
        now = _now()
        update = {
            "$set": {**{k: v for k, v in fields.items() if v is not None}, "updatedAt": now},
            "$setOnInsert": {"appId": app_id, "createdAt": now},
        }
        self.installed.update_one({"appId": app_id}, update, upsert=True)

    def get_app_meta(
        self,
        app_id: str,
        override: Optional[AppMetaOverride] = None,
        installed: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, str]:
        """
        (display name, icon): override > existing installed record > catalog
        title/name > appId / default icon. A redeploy without meta keeps what
        the first deploy stored.
        """
        installed = installed or {}
        name = (override.name if override else None) or installed.get("name")
        icon = (override.icon if override else None) or installed.get("icon")
        record = None
        if not (name and icon):
            try:
                record = self.find_app_record(app_id)
            except PyMongoError as e:
                log.warning("catalog lookup failed for meta: appId=%s err=%s", app_id, e)
        record = record or {}
        name = name or record.get("title") or record.get("name") or app_id
        icon = icon or record.get("icon") or settings.DEFAULT_APP_ICON
        return name, icon

    def check_dependencies(self, app_id: str) -> List[str]:
        """Catalog dependencies of appId that are not installed."""
        record = self.find_app_record(app_id) or {}
        deps = record.get("dependencies") or []
        if isinstance(deps, str):
            deps = [deps]
        missing = []
        for dep in deps:
            dep = str(dep).strip()
            if dep and self.find_installed_record(dep) is None:
                missing.append(dep)
        return missing


_store: Optional[AppStore] = None
_store_lock = threading.Lock()


def get_store() -> AppStore:
    global _store
    with _store_lock:
        if _store is None:
            client = MongoClient(
                settings.MONGO_URI,
                serverSelectionTimeoutMS=int(settings.MONGO_TIMEOUT_SECONDS * 1000),
                tz_aware=True,
            )
            _store = AppStore(client[settings.MONGO_DB])
            log.info("mongo store ready: uri=%s db=%s", settings.MONGO_URI, settings.MONGO_DB)
        return _store


def set_store(store: Optional[AppStore]) -> None:
    global _store
    with _store_lock:
        _store = store
