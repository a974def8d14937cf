"""
`docker run ...` -> docker-compose YAML for the custom deploy form.
"""

import argparse
import logging
import re
import shlex
from typing import Any, Dict, List

import yaml

from homeio_agent.models import ConvertRunResult

log = logging.getLogger(__name__)

_BUILTIN_NETWORKS = ("host", "none", "bridge")


class ConvertError(ValueError):
    pass


class _RunParser(argparse.ArgumentParser):
    def error(self, message):
        raise ConvertError(message)


def _parser() -> argparse.ArgumentParser:
    p = _RunParser(prog="docker run", add_help=False, allow_abbrev=False)
    p.add_argument("-d", "--detach", action="store_true")
    p.add_argument("-i", "--interactive", action="store_true")
    p.add_argument("-t", "--tty", action="store_true")
    p.add_argument("--rm", action="store_true")
    p.add_argument("--privileged", action="store_true")
    p.add_argument("--init", action="store_true")
    p.add_argument("--name")
    p.add_argument("-h", "--hostname")
    p.add_argument("-p", "--publish", action="append", default=[])
    p.add_argument("-v", "--volume", action="append", default=[])
    p.add_argument("-e", "--env", action="append", default=[])
    p.add_argument("--env-file", action="append", default=[])
    p.add_argument("-l", "--label", action="append", default=[])
    p.add_argument("--restart")
    p.add_argument("--network", "--net")
    p.add_argument("-w", "--workdir")
    p.add_argument("-u", "--user")
    p.add_argument("--entrypoint")
    p.add_argument("--cap-add", action="append", default=[])
    p.add_argument("--cap-drop", action="append", default=[])
    p.add_argument("--device", action="append", default=[])
    p.add_argument("--dns", action="append", default=[])
    p.add_argument("--add-host", action="append", default=[])
    p.add_argument("--shm-size")
    p.add_argument("--memory", "-m")
    p.add_argument("--cpus")
    p.add_argument("--security-opt", action="append", default=[])
    p.add_argument("--tmpfs", action="append", default=[])
    p.add_argument("--stop-signal")
    p.add_argument("--platform")
    p.add_argument("image")
    p.add_argument("command", nargs=argparse.REMAINDER)
    return p


def _strip_prefix(tokens: List[str]) -> List[str]:
    if tokens[:2] == ["docker", "run"]:
        return tokens[2:]
    if tokens[:3] == ["docker", "container", "run"]:
        return tokens[3:]
    raise ConvertError("Not a docker run command")


def service_name(args: argparse.Namespace) -> str:
    if args.name:
        return args.name
    base = args.image.split("@")[0].rsplit("/", 1)[-1].split(":")[0]
    return re.sub(r"[^a-zA-Z0-9_.-]", "-", base) or "app"


def run_to_compose(command: str) -> Dict[str, Any]:
    # line continuations from copy-pasted READMEs
    text = re.sub(r"\\\s*\n", " ", command).strip()
    try:
        tokens = shlex.split(text)
    except ValueError as e:
        raise ConvertError(f"Cannot parse command: {e}") from e
    args = _parser().parse_args(_strip_prefix(tokens))

    svc: Dict[str, Any] = {"image": args.image}
    if args.name:
        svc["container_name"] = args.name
    if args.hostname:
        svc["hostname"] = args.hostname
    if args.entrypoint:
        svc["entrypoint"] = args.entrypoint
    if args.command:
        svc["command"] = list(args.command)
    if args.workdir:
        svc["working_dir"] = args.workdir
    if args.user:
        svc["user"] = args.user
    if args.restart:
        svc["restart"] = args.restart
    if args.privileged:
        svc["privileged"] = True
    if args.init:
        svc["init"] = True
    if args.tty:
        svc["tty"] = True
    if args.interactive:
        svc["stdin_open"] = True
    if args.platform:
        svc["platform"] = args.platform
    if args.shm_size:
        svc["shm_size"] = args.shm_size
    if args.memory:
        svc["mem_limit"] = args.memory
    if args.cpus:
        svc["cpus"] = args.cpus
    if args.stop_signal:
        svc["stop_signal"] = args.stop_signal

    for key, values in (
        ("ports", args.publish),
        ("volumes", args.volume),
        ("environment", args.env),
        ("env_file", args.env_file),
        ("labels", args.label),
        ("cap_add", args.cap_add),
        ("cap_drop", args.cap_drop),
        ("devices", args.device),
        ("dns", args.dns),
        ("extra_hosts", args.add_host),
        ("security_opt", args.security_opt),
        ("tmpfs", args.tmpfs),
    ):
        if values:
            svc[key] = list(values)

    doc: Dict[str, Any] = {"services": {service_name(args): svc}}
    if args.network:
        if args.network in _BUILTIN_NETWORKS:
            svc["network_mode"] = args.network
        else:
            svc["networks"] = [args.network]
            doc["networks"] = {args.network: {"external": True}}
    return doc


def convert_run_command_to_compose(command: str) -> ConvertRunResult:
    if not (command or "").strip():
        return ConvertRunResult(success=False, error="Command is empty")
    try:
        doc = run_to_compose(command)
    except ConvertError as e:
        log.info("docker run conversion rejected: %s", e)
        return ConvertRunResult(success=False, error=str(e))
    return ConvertRunResult(success=True, yaml=yaml.safe_dump(doc, sort_keys=False, default_flow_style=False))
