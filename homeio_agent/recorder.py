import logging
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from homeio_agent.catalog import AppStore
from homeio_agent.errors import PersistenceError
from homeio_agent.models import DeployRequest

log = logging.getLogger(__name__)

DEPLOY_METHOD = "compose"
CUSTOM_SOURCE = "custom"


def resolve_source(request: DeployRequest, installed: Optional[dict], catalog: Optional[dict]) -> str:
    return (
        request.source
        or (installed or {}).get("source")
        or (catalog or {}).get("storeSlug")
        or CUSTOM_SOURCE
    )


def resolve_container_meta(request: DeployRequest, installed: Optional[dict],
                           catalog: Optional[dict]) -> Optional[Dict[str, Any]]:
    return request.containerMeta or (installed or {}).get("container") or (catalog or {}).get("container") or None


def build_install_config(
    request: DeployRequest,
    original_compose_path: str,
    containers: List[str],
    compose_meta: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Caller values layered over what was read from the compose file."""
    compose_meta = compose_meta or {}
    config = request.config
    persisted: Dict[str, Any] = {}
    if config is not None:
        persisted["ports"] = [p.model_dump(exclude_unset=True) for p in config.ports]
        persisted["volumes"] = [v.model_dump(exclude_unset=True) for v in config.volumes]
        persisted["environment"] = [e.model_dump(exclude_unset=True) for e in config.environment]
    web_ui_port = (config.webUIPort if config else None) or compose_meta.get("webUIPort")
    network_mode = (config.networkMode if config else None) or compose_meta.get("networkMode")
    if web_ui_port is not None:
        persisted["webUIPort"] = web_ui_port
    if network_mode is not None:
        persisted["networkMode"] = network_mode
    persisted["composePath"] = original_compose_path
    persisted["deployMethod"] = DEPLOY_METHOD
    persisted["containers"] = list(containers)
    return persisted


def record_installation(
    store: AppStore,
    request: DeployRequest,
    container_name: str,
    containers: List[str],
    original_compose_path: str,
    compose_meta: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """
    Upsert the installed-app record. Blocking (pymongo); returns the persisted
    installConfig. Any store failure surfaces as PersistenceError.
    """
    app_id = request.appId
    try:
        installed = store.find_installed_record(app_id)
        catalog = store.find_app_record(app_id)
        name, icon = store.get_app_meta(app_id, request.meta, installed)
        config = build_install_config(request, original_compose_path, containers or [container_name], compose_meta)
        store.record_installed_app(
            app_id,
            container_name,
            name,
            icon,
            config,
            meta={
                "source": resolve_source(request, installed, catalog),
                "container": resolve_container_meta(request, installed, catalog),
                "version": (catalog or {}).get("version"),
            },
        )
    except PyMongoError as e:
        raise PersistenceError(f"Failed to record installed app: {e}", {"appId": app_id}) from e
    log.info("installed app recorded: appId=%s container=%s", app_id, container_name)
    return config
