from datetime import datetime, timezone

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from homeio_agent.errors import PersistenceError
from homeio_agent.models import DeployRequest, InstallConfig, PortMapping
from homeio_agent.recorder import build_install_config, record_installation


def _catalog(store, **fields):
    store.apps.insert_one({"appId": "sonarr", "createdAt": datetime.now(timezone.utc), **fields})


def test_source_preserved_on_redeploy(store):
    store.record_installed_app("sonarr", "sonarr", "Sonarr", "/s.png", {}, meta={"source": "store-x"})
    _catalog(store, storeSlug="other-store")

    record_installation(store, DeployRequest(appId="sonarr", composeContent="x"), "sonarr", ["sonarr"], "/c.yml")
    assert store.find_installed_record("sonarr")["source"] == "store-x"


def test_source_falls_back_to_catalog_then_custom(store):
    _catalog(store, storeSlug="big-store", version="4.0", container={"image": "sonarr"})
    record_installation(store, DeployRequest(appId="sonarr"), "sonarr", [], "/c.yml")
    rec = store.find_installed_record("sonarr")
    assert rec["source"] == "big-store"
    assert rec["container"] == {"image": "sonarr"}
    assert rec["version"] == "4.0"
    assert rec["installConfig"]["containers"] == ["sonarr"]

    record_installation(store, DeployRequest(appId="custom1"), "custom1", [], "/c.yml")
    assert store.find_installed_record("custom1")["source"] == "custom"


def test_explicit_request_values_win(store):
    store.record_installed_app("sonarr", "sonarr", "Sonarr", "/s.png", {},
                               meta={"source": "store-x", "container": {"a": 1}})
    req = DeployRequest(appId="sonarr", source="store-y", containerMeta={"b": 2})
    record_installation(store, req, "sonarr", ["sonarr"], "/c.yml")
    rec = store.find_installed_record("sonarr")
    assert rec["source"] == "store-y"
    assert rec["container"] == {"b": 2}


def test_install_config_layers_caller_over_compose():
    req = DeployRequest(
        appId="myapp",
        config=InstallConfig(ports=[PortMapping(container="80", published="8080")], webUIPort="9999"),
    )
    config = build_install_config(req, "/orig.yml", ["myapp-web-1"], {"webUIPort": "8080", "networkMode": "host"})
    assert config == {
        "ports": [{"container": "80", "published": "8080"}],
        "volumes": [],
        "environment": [],
        "webUIPort": "9999",
        "networkMode": "host",
        "composePath": "/orig.yml",
        "deployMethod": "compose",
        "containers": ["myapp-web-1"],
    }


def test_store_failure_is_persistence_error(store, monkeypatch):
    def boom(*args, **kwargs):
        raise ServerSelectionTimeoutError("no servers")

    monkeypatch.setattr(store, "record_installed_app", boom)
    with pytest.raises(PersistenceError) as exc:
        record_installation(store, DeployRequest(appId="x"), "x", ["x"], "/c.yml")
    assert exc.value.stage == "record"
