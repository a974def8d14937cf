import os

from homeio_agent.env_builder import build_env, normalize_host, with_container_name
from homeio_agent.models import EnvVar, InstallConfig, PortMapping, VolumeMapping

BASE = {"DEVICE_HOSTNAME": "box", "PATH": "/usr/bin"}


def test_defaults_fill_gaps_only(roots):
    env = build_env("plex", base_env={**BASE, "PUID": "1234", "TZ": "Europe/Paris"})
    assert env["PUID"] == "1234"
    assert env["TZ"] == "Europe/Paris"
    assert env["PGID"]
    assert env["APP_ID"] == "plex"
    assert env["AppID"] == "plex"
    assert env["PATH"] == "/usr/bin"


def test_app_data_dir_derived_unless_set(roots):
    env = build_env("plex", base_env=BASE)
    assert env["APP_DATA_DIR"] == os.path.join(str(roots["data"]), "AppData", "plex")
    assert env["UMBREL_ROOT"] == str(roots["data"])

    env = build_env("plex", base_env={**BASE, "APP_DATA_DIR": "/srv/plex"})
    assert env["APP_DATA_DIR"] == "/srv/plex"


def test_overrides_project_ports_volumes_and_env(roots):
    config = InstallConfig(
        ports=[PortMapping(container="80", published="8080")],
        volumes=[VolumeMapping(container="/data/media", source="/DATA/Media")],
        environment=[EnvVar(key="TZ", value="UTC"), EnvVar(key="FOO", value="bar")],
    )
    env = build_env("myapp", config, base_env={**BASE, "TZ": "Europe/Paris", "PORT_80": "1"})
    assert env["PORT_80"] == "8080"
    assert env["VOLUME__DATA_MEDIA"] == "/DATA/Media"
    assert env["TZ"] == "UTC"
    assert env["FOO"] == "bar"


def test_domain_defaults(roots):
    env = build_env("app", base_env=BASE)
    assert env["DEVICE_DOMAIN_NAME"] == "box.local"
    assert env["APP_DOMAIN"] == "box.local"

    env = build_env("app", base_env={**BASE, "HOMEIO_DOMAIN": "https://home.example:8443/ui"})
    assert env["APP_DOMAIN"] == "home.example"


def test_container_name_is_added_to_a_copy(roots):
    env = build_env("app", base_env=BASE)
    named = with_container_name(env, "app-web-1")
    assert named["CONTAINER_NAME"] == "app-web-1"
    assert "CONTAINER_NAME" not in env


def test_normalize_host():
    assert normalize_host("box.lan") == "box.lan"
    assert normalize_host("http://box.lan:3000") == "box.lan"
    assert normalize_host("[::1]:8080") == "[::1]:8080"
    assert normalize_host("  ") is None
    assert normalize_host(None) is None
