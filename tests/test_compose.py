import os
from datetime import datetime, timedelta, timezone

import yaml

from conftest import WEB_COMPOSE, write_app
from homeio_agent.compose import (
    SANITIZED_NAME,
    discard_sanitized,
    extract_compose_meta,
    find_compose_for_app,
    get_container_name_from_compose,
    guess_compose_container_name,
    pick_primary_container,
    resolve_compose,
    sanitize_compose,
)
from homeio_agent.models import DeployRequest


def test_inline_content_is_written_idempotently(roots):
    req = DeployRequest(appId="myapp", composeContent=WEB_COMPOSE)
    first = resolve_compose(req)
    second = resolve_compose(req)
    assert first == second
    assert first.compose_path == os.path.join(str(roots["installed"]), "myapp", "docker-compose.yml")
    with open(second.compose_path) as f:
        assert f.read() == WEB_COMPOSE


def test_explicit_relative_path_is_copied_into_installed(roots, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    write_app(roots["stores"] / "big-store" / "Apps" / "Plex", WEB_COMPOSE, {"entrypoint.sh": "#!/bin/sh\n"})

    req = DeployRequest(appId="plex", composePath="external-apps/big-store/Apps/Plex/docker-compose.yml")
    resolved = resolve_compose(req)

    installed = roots["installed"] / "plex"
    assert resolved.app_dir == str(installed)
    assert resolved.compose_path == str(installed / "docker-compose.yml")
    assert (installed / "entrypoint.sh").exists()
    assert os.access(installed / "entrypoint.sh", os.X_OK)


def test_missing_explicit_path_falls_through_to_latest_catalog_record(roots, store):
    old = write_app(roots["stores"] / "s" / "old-plex", "services:\n  old:\n    image: old\n")
    new = write_app(roots["stores"] / "s" / "new-plex", WEB_COMPOSE)
    now = datetime.now(timezone.utc)
    store.apps.insert_many([
        {"appId": "plex", "composePath": str(old), "createdAt": now - timedelta(days=1)},
        {"appId": "plex", "composePath": str(new), "createdAt": now},
    ])

    resolved = resolve_compose(DeployRequest(appId="plex", composePath="/nope/docker-compose.yml"), store)
    with open(resolved.compose_path) as f:
        assert f.read() == WEB_COMPOSE


def test_filesystem_search_is_case_insensitive_and_nested(roots, store):
    write_app(roots["internal"] / "a" / "b" / "PLEX", WEB_COMPOSE)
    found = find_compose_for_app("plex")
    assert found.app_dir.endswith(os.path.join("b", "PLEX"))

    resolved = resolve_compose(DeployRequest(appId="plex"), store)
    assert resolved.app_dir == str(roots["installed"] / "plex")


def test_installed_copy_wins_the_search(roots):
    write_app(roots["stores"] / "s" / "plex", WEB_COMPOSE)
    write_app(roots["installed"] / "plex", WEB_COMPOSE)
    found = find_compose_for_app("plex")
    assert found.app_dir == str(roots["installed"] / "plex")


def test_not_found_is_none(roots, store):
    assert resolve_compose(DeployRequest(appId="plex"), store) is None


def test_sanitize_noop_returns_same_path(tmp_path):
    path = write_app(tmp_path / "app", WEB_COMPOSE)
    result = sanitize_compose(str(path))
    assert result.sanitized_path == result.original_path == str(path)
    assert not result.changed


def test_sanitize_drops_services_without_image_or_build(tmp_path):
    compose = WEB_COMPOSE + "  broken:\n    environment:\n      - A=1\n  built:\n    build: .\n"
    path = write_app(tmp_path / "app", compose)

    result = sanitize_compose(str(path))
    assert result.changed
    assert result.sanitized_path == str(tmp_path / "app" / SANITIZED_NAME)
    with open(result.sanitized_path) as f:
        assert list(yaml.safe_load(f)["services"]) == ["web", "built"]
    with open(path) as f:
        assert f.read() == compose

    discard_sanitized(result)
    assert not os.path.exists(result.sanitized_path)
    assert os.path.exists(result.original_path)


def test_sanitize_keeps_original_when_nothing_would_remain_or_unparsable(tmp_path):
    path = write_app(tmp_path / "a", "services:\n  x:\n    ports: ['1:1']\n")
    assert not sanitize_compose(str(path)).changed
    path = write_app(tmp_path / "b", "services: [\n")
    assert not sanitize_compose(str(path)).changed


def test_container_name_helpers(tmp_path):
    path = write_app(tmp_path / "myapp", WEB_COMPOSE)
    assert get_container_name_from_compose(str(path)) is None
    assert guess_compose_container_name(str(path)) == "myapp-web-1"

    path = write_app(tmp_path / "named", "name: Stack\nservices:\n  App:\n    image: x\n    container_name: fixed\n")
    assert get_container_name_from_compose(str(path)) == "fixed"
    assert guess_compose_container_name(str(path)) == "stack-app-1"
    # --project-name overrides the top-level name
    assert guess_compose_container_name(str(path), "MyApp") == "myapp-app-1"


def test_extract_compose_meta(tmp_path):
    assert extract_compose_meta(str(write_app(tmp_path / "a", WEB_COMPOSE))) == {"webUIPort": "8080"}
    path = write_app(
        tmp_path / "b",
        "services:\n  web:\n    image: x\n    network_mode: host\n    ports:\n      - target: 80\n        published: 9000\n",
    )
    assert extract_compose_meta(str(path)) == {"webUIPort": "9000", "networkMode": "host"}
    assert extract_compose_meta(str(tmp_path / "missing.yml")) == {}


def test_extract_compose_meta_random_host_port_reports_target(tmp_path):
    path = write_app(tmp_path / "c", "services:\n  web:\n    image: x\n    ports:\n      - \"127.0.0.1::80\"\n")
    assert extract_compose_meta(str(path)) == {"webUIPort": "80"}
    path = write_app(tmp_path / "d", "services:\n  web:\n    image: x\n    ports:\n      - \"3000\"\n")
    assert extract_compose_meta(str(path)) == {"webUIPort": "3000"}


def test_pick_primary_container_skips_helpers():
    assert pick_primary_container([]) is None
    assert pick_primary_container(["only"]) == "only"
    assert pick_primary_container(["app-db-1", "app-redis-1", "app-web-1"]) == "app-web-1"
    assert pick_primary_container(["app-db-1", "app-redis-1"]) == "app-db-1"
