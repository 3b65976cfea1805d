"""cloud-init NoCloud seed image generation."""

from __future__ import annotations

import subprocess
import tempfile
from pathlib import Path
from typing import Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from provisioner.constants import SEED_TOOL, SEED_VOLUME_ID
from provisioner.credentials import hash_password
from provisioner.exceptions import SeedBuildFailed
from provisioner.utils import ensure_directory, log, run


def render_meta_data(hostname: str) -> str:
    return yaml.safe_dump(
        {"instance-id": f"iid-{hostname}", "local-hostname": hostname},
        sort_keys=False,
        default_flow_style=False,
    )


def render_user_data(
    hostname: str,
    username: str,
    password_hash: Optional[str] = None,
    ssh_pubkey: Optional[str] = None,
) -> str:
    """Render the ``#cloud-config`` user-data document.

    Output depends only on the arguments, so a given input always produces
    byte-identical YAML. Password login is only enabled when a hash is given.
    """
    user: Dict[str, object] = {
        "name": username,
        "sudo": "ALL=(ALL) NOPASSWD:ALL",
        "groups": "sudo",
        "shell": "/bin/bash",
    }
    if password_hash:
        user["lock_passwd"] = False
        user["passwd"] = password_hash
    if ssh_pubkey:
        user["ssh_authorized_keys"] = [ssh_pubkey]

    config: Dict[str, object] = {
        "hostname": hostname,
        "manage_etc_hosts": True,
        "users": [user],
        "disable_root": True,
    }
    if password_hash:
        config["ssh_pwauth"] = True
        config["chpasswd"] = {"expire": False}
    config["package_update"] = True
    config["package_upgrade"] = False
    config["packages"] = ["qemu-guest-agent", "openssh-server"]
    config["runcmd"] = [
        ["systemctl", "enable", "--now", "qemu-guest-agent"],
        ["systemctl", "enable", "--now", "ssh"],
    ]
    return "#cloud-config\n" + yaml.safe_dump(config, sort_keys=False, default_flow_style=False)


class SeedBuilder:
    """Packages user-data and meta-data into a ``cidata`` ISO image."""

    def __init__(
        self,
        seed_dir: Path,
        tool: str = SEED_TOOL,
        scratch_dir: Optional[Path] = None,
        ssh_pubkey: Optional[str] = None,
    ) -> None:
        self.seed_dir = Path(seed_dir)
        self.tool = tool
        self.scratch_dir = scratch_dir
        self.ssh_pubkey = ssh_pubkey

    def seed_path(self, hostname: str) -> Path:
        return self.seed_dir / f"{hostname}-seed.iso"

    def build_seed(self, hostname: str, username: str, password: Optional[str] = None) -> Path:
        output = self.seed_path(hostname)
        password_hash = hash_password(password) if password else None
        try:
            ensure_directory(self.seed_dir)
            if self.scratch_dir is not None:
                ensure_directory(self.scratch_dir)
            with tempfile.TemporaryDirectory(dir=self.scratch_dir) as tmpdir:
                tmp = Path(tmpdir)
                (tmp / "user-data").write_text(
                    render_user_data(hostname, username, password_hash, self.ssh_pubkey), encoding="utf-8"
                )
                (tmp / "meta-data").write_text(render_meta_data(hostname), encoding="utf-8")
                cmd = [
                    self.tool,
                    "-output",
                    str(output),
                    "-volid",
                    SEED_VOLUME_ID,
                    "-joliet",
                    "-rock",
                    str(tmp / "user-data"),
                    str(tmp / "meta-data"),
                ]
                run(cmd, capture_output=True)
        except FileNotFoundError as exc:
            output.unlink(missing_ok=True)
            raise SeedBuildFailed(hostname, f"{self.tool} not found: {exc}") from exc
        except subprocess.CalledProcessError as exc:
            output.unlink(missing_ok=True)
            detail = (exc.stderr or exc.stdout or "").strip() or f"{self.tool} exited with status {exc.returncode}"
            raise SeedBuildFailed(hostname, detail) from exc
        except OSError as exc:
            output.unlink(missing_ok=True)
            raise SeedBuildFailed(hostname, str(exc)) from exc
        log("INFO", f"Built cloud-init seed {output}")
        return output
