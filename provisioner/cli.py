"""CLI entry points for the VM provisioner."""

from __future__ import annotations

import argparse
import dataclasses
import json
import signal
import threading
import time
from typing import Any, List, Optional

from provisioner.api import handle_create
from provisioner.config import load_config
from provisioner.exceptions import ManagerError
from provisioner.manager import VMManager
from provisioner.models import ProvisionerConfig
from provisioner.network import ip_range_for
from provisioner.utils import log


def show_config(cfg: ProvisionerConfig) -> None:
    """Print the resolved provisioner configuration."""
    for field in dataclasses.fields(cfg):
        print(f"  {field.name}: {getattr(cfg, field.name)}")


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=False))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vm-provisioner", description="libvirt VM provisioner")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Provision and start a VM")
    create.add_argument("--name", required=True, help="VM name (letters, digits, '-' and '_')")
    create.add_argument("--user", required=True, help="Owning user (user1, user2, user3)")
    create.add_argument("--cpu", type=int, default=None, help="vCPU count")
    create.add_argument("--memory", type=int, default=None, help="Memory in MB")
    create.add_argument("--disk", type=int, default=None, help="Disk size in GB")
    create.add_argument("--timeout", type=float, default=None, help="Give up after this many seconds")

    status = sub.add_parser("status", help="Show the state of a VM")
    status.add_argument("name")

    sub.add_parser("list", help="List all VMs")

    network = sub.add_parser("network", help="Show the isolation network of a user")
    network.add_argument("user")
    network.add_argument("--ensure", action="store_true", help="Define and start the network if needed")

    ssh = sub.add_parser("ssh-info", help="Show SSH connection details of a VM")
    ssh.add_argument("name")
    ssh.add_argument("--user", required=True)
    ssh.add_argument("--timeout", type=float, default=60.0)

    sub.add_parser("show-config", help="Show resolved configuration and exit")
    return parser


def _create(args: argparse.Namespace, manager: VMManager) -> int:
    payload = {"name": args.name, "user": args.user}
    for key in ("cpu", "memory", "disk"):
        value = getattr(args, key)
        if value is not None:
            payload[key] = value
    deadline = time.monotonic() + args.timeout if args.timeout else None
    cancel = threading.Event()

    def _cancel_create(signum, frame):
        if not cancel.is_set():
            log("WARN", "Cancelling; the current step finishes first")
        cancel.set()

    prev_sigint = signal.signal(signal.SIGINT, _cancel_create)
    prev_sigterm = signal.signal(signal.SIGTERM, _cancel_create)
    try:
        response = handle_create(payload, manager, cancel=cancel, deadline=deadline)
    finally:
        signal.signal(signal.SIGINT, prev_sigint)
        signal.signal(signal.SIGTERM, prev_sigterm)
    _print_json(response)
    if response["success"]:
        return 0
    return 130 if cancel.is_set() else 1


def _run(args: argparse.Namespace, cfg: ProvisionerConfig) -> int:
    if args.command == "network" and not args.ensure:
        _print_json(ip_range_for(args.user))
        return 0

    manager = VMManager.from_config(cfg)
    try:
        if args.command == "create":
            return _create(args, manager)
        if args.command == "status":
            _print_json(manager.vm_status(args.name))
        elif args.command == "list":
            _print_json(manager.list_vms())
        elif args.command == "network":
            network = manager.networks.resolve_network(args.user)
            log("SUCCESS", f"Network {network.name} is active on {network.bridge}")
            _print_json(ip_range_for(args.user))
        elif args.command == "ssh-info":
            _print_json(manager.get_ssh_info(args.name, args.user, timeout=args.timeout))
        return 0
    finally:
        manager.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    try:
        cfg = load_config()
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.command == "show-config":
        show_config(cfg)
        return 0

    try:
        return _run(args, cfg)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
