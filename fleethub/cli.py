from __future__ import annotations

import argparse
import asyncio
import base64
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from fleethub.hub_client import HubClient


def _client(args: argparse.Namespace) -> HubClient:
    return HubClient(args.api_url, timeout_seconds=15)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _split_key(value: str) -> tuple[str, str]:
    if "/" in value:
        namespace, name = value.split("/", 1)
    else:
        namespace, name = "default", value
    if not namespace or not name:
        raise RuntimeError(f"Invalid object reference '{value}'. Expected [namespace/]name")
    return namespace, name


def _parse_labels(items: list[str]) -> Dict[str, str]:
    labels: Dict[str, str] = {}
    for item in items:
        if "=" not in item:
            raise RuntimeError(f"Invalid --label value '{item}'. Expected key=value")
        key, value = item.split("=", 1)
        key = key.strip()
        if not key:
            raise RuntimeError("Label key cannot be empty")
        labels[key] = value.strip()
    return labels


def cmd_hub(args: argparse.Namespace) -> int:
    import uvicorn

    from fleethub.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "fleethub.main:app",
        host=args.host or settings.server_host,
        port=args.port or settings.server_port,
        log_config=None,
    )
    return 0


def cmd_agent(args: argparse.Namespace) -> int:
    from fleethub.config import Settings
    from fleethub.controllers.agent import build_reporter
    from fleethub.logger import configure_logging

    overrides: Dict[str, Any] = {"app_mode": "agent"}
    if args.bootstrap_dir:
        overrides["agent_bootstrap_dir"] = args.bootstrap_dir
    settings = Settings(**overrides)
    configure_logging(settings.log_level, settings.log_file)
    reporter = build_reporter(settings)
    try:
        asyncio.run(reporter.run())
    except KeyboardInterrupt:
        reporter.stop()
    return 0


def cmd_create(args: argparse.Namespace) -> int:
    namespace, name = _split_key(args.name)
    spec: Dict[str, Any] = {}
    if args.identity_name:
        spec["identity_name"] = args.identity_name
    if args.stale_seconds is not None:
        spec["stale_duration"] = args.stale_seconds
    if args.disconnect_seconds is not None:
        spec["disconnect_duration"] = args.disconnect_seconds
    response = _client(args).request(
        "POST",
        "/join-clusters",
        {"name": name, "namespace": namespace, "labels": _parse_labels(args.label), "spec": spec},
    )
    _print_json(response)
    return 0


def cmd_get(args: argparse.Namespace) -> int:
    namespace, name = _split_key(args.name)
    _print_json(_client(args).request("GET", HubClient.join_cluster_path(namespace, name)))
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    path = "/join-clusters"
    if args.namespace:
        path = f"{path}?namespace={args.namespace}"
    _print_json(_client(args).request("GET", path))
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    namespace, name = _split_key(args.name)
    _print_json(_client(args).request("DELETE", HubClient.join_cluster_path(namespace, name)))
    return 0


def cmd_join_command(args: argparse.Namespace) -> int:
    namespace, name = _split_key(args.name)
    payload = _client(args).request("GET", HubClient.join_cluster_path(namespace, name))
    command = str((payload.get("status") or {}).get("join_command") or "")
    if not command:
        raise RuntimeError(f"JoinCluster {namespace}/{name} has no join command yet")
    print(command, end="" if command.endswith("\n") else "\n")
    return 0


def cmd_export_secret(args: argparse.Namespace) -> int:
    namespace, name = _split_key(args.name)
    payload = _client(args).request("GET", f"/secrets/{namespace}/{name}")
    data = payload.get("data") or {}
    if not data:
        raise RuntimeError(f"Secret {namespace}/{name} has no data")
    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    written: Dict[str, str] = {}
    for key, encoded in sorted(data.items()):
        path = output_dir / key
        path.write_bytes(base64.b64decode(str(encoded).encode("ascii")))
        path.chmod(0o600)
        written[key] = str(path)
    _print_json({"secret": f"{namespace}/{name}", "files": written})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleethub", description="FleetHub hub/spoke control plane CLI")
    parser.add_argument("--api-url", default="http://127.0.0.1:8000")

    sub = parser.add_subparsers(dest="command", required=True)

    hub = sub.add_parser("hub", help="Run the hub API server and reconcile loops")
    hub.add_argument("--host", default="")
    hub.add_argument("--port", type=int, default=0)
    hub.set_defaults(func=cmd_hub)

    agent = sub.add_parser("agent", help="Run the spoke heartbeat agent")
    agent.add_argument("--bootstrap-dir", default="")
    agent.set_defaults(func=cmd_agent)

    create = sub.add_parser("create", help="Create a JoinCluster")
    create.add_argument("name", help="[namespace/]name")
    create.add_argument("--identity-name", default="")
    create.add_argument("--stale-seconds", type=int, default=None)
    create.add_argument("--disconnect-seconds", type=int, default=None)
    create.add_argument("--label", action="append", default=[])
    create.set_defaults(func=cmd_create)

    get = sub.add_parser("get", help="Show a JoinCluster")
    get.add_argument("name", help="[namespace/]name")
    get.set_defaults(func=cmd_get)

    list_cmd = sub.add_parser("list", help="List JoinClusters")
    list_cmd.add_argument("--namespace", default="")
    list_cmd.set_defaults(func=cmd_list)

    delete = sub.add_parser("delete", help="Delete a JoinCluster and its join credentials")
    delete.add_argument("name", help="[namespace/]name")
    delete.set_defaults(func=cmd_delete)

    join_command = sub.add_parser("join-command", help="Print the join command of a JoinCluster")
    join_command.add_argument("name", help="[namespace/]name")
    join_command.set_defaults(func=cmd_join_command)

    export_secret = sub.add_parser("export-secret", help="Write each key of a secret to a file")
    export_secret.add_argument("name", help="namespace/name")
    export_secret.add_argument("--output-dir", default="hub-cluster")
    export_secret.set_defaults(func=cmd_export_secret)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        exit_code = args.func(args)
    except Exception as exc:  # noqa: BLE001
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
