"""Firecracker process launch for firefleet."""

from __future__ import annotations

import json
import shutil
import subprocess
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

from firefleet.constants import GUEST_IFACE_ID, ROOTFS_DRIVE_ID
from firefleet.exceptions import LaunchError
from firefleet.models import FleetConfig, InstancePlan, InstanceRecord
from firefleet.utils import ensure_directory, log, socket_is_live, tail_file


def render_config(plan: InstancePlan, kernel_path: Path, with_network: bool = True) -> Dict[str, object]:
    """Build the Firecracker ``--config-file`` document for one instance.

    Key names and nesting are Firecracker's, not ours.
    """
    interfaces: List[Dict[str, str]] = []
    if with_network:
        interfaces.append(
            {
                "iface_id": GUEST_IFACE_ID,
                "guest_mac": plan.guest_mac,
                "host_dev_name": plan.device_name,
            }
        )
    return {
        "boot-source": {
            "kernel_image_path": str(Path(kernel_path).resolve()),
            "boot_args": plan.boot_args,
        },
        "drives": [
            {
                "drive_id": ROOTFS_DRIVE_ID,
                "path_on_host": str(plan.rootfs_path.resolve()),
                "is_root_device": True,
                "is_read_only": False,
            }
        ],
        "machine-config": {
            "vcpu_count": plan.vcpu_count,
            "mem_size_mib": plan.memory_mib,
        },
        "network-interfaces": interfaces,
    }


class InstanceLauncher:
    def __init__(self, cfg: FleetConfig) -> None:
        self.firecracker_bin = cfg.firecracker_bin
        self.launch_timeout = cfg.launch_timeout

    def prepare_rootfs(self, plan: InstancePlan, base_rootfs: Path) -> None:
        """Give the instance a fresh writable copy of the shared base image."""
        target = plan.rootfs_path
        log("INFO", f"Creating rootfs for VM {plan.index}...")
        try:
            shutil.copyfile(base_rootfs, target)
        except OSError as exc:
            raise LaunchError(f"Cannot copy {base_rootfs} to {target}: {exc}", stage="rootfs") from exc

    def write_config(self, plan: InstancePlan, kernel_path: Path, with_network: bool = True) -> None:
        document = render_config(plan, kernel_path, with_network=with_network)
        path = plan.config_path
        try:
            with tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, suffix=".tmp") as tmp:
                json.dump(document, tmp, indent=2)
                tmp.write("\n")
            Path(tmp.name).replace(path)
        except OSError as exc:
            raise LaunchError(f"Cannot write config {path}: {exc}", stage="config") from exc
        if not path.is_file() or path.stat().st_size == 0:
            raise LaunchError(f"Config file is empty: {path}", stage="config")
        log("DEBUG", f"Config created: {path}")

    def clear_socket(self, plan: InstancePlan) -> None:
        """Remove a leftover API socket; refuse if something still listens on it."""
        path = plan.socket_path
        if not path.exists() and not path.is_symlink():
            return
        if socket_is_live(path):
            raise LaunchError(
                f"Control socket {path} is in use by another process; stop it before relaunching VM {plan.index}",
                stage="socket",
            )
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise LaunchError(f"Cannot remove stale socket {path}: {exc}", stage="socket") from exc
        log("INFO", f"Removed stale socket {path}")

    def spawn(self, plan: InstancePlan) -> subprocess.Popen:
        cmd = [
            self.firecracker_bin,
            "--api-sock",
            str(plan.socket_path),
            "--config-file",
            str(plan.config_path),
            "--id",
            f"vm-{plan.index}",
        ]
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            with open(plan.log_path, "w") as log_handle:
                # New session: the VM must outlive this short-lived controller.
                return subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            raise LaunchError(f"Failed to spawn {self.firecracker_bin}: {exc}", stage="spawn") from exc

    def wait_live(self, plan: InstancePlan, proc: subprocess.Popen, interval: float = 0.1) -> None:
        deadline = time.time() + self.launch_timeout
        while time.time() < deadline:
            if proc.poll() is not None:
                break
            if socket_is_live(plan.socket_path):
                return
            time.sleep(interval)
        if proc.poll() is not None:
            raise LaunchError(
                f"VM {plan.index} exited during startup (code {proc.returncode})",
                stage="liveness",
                log_tail=tail_file(plan.log_path),
                pid=proc.pid,
            )
        if not socket_is_live(plan.socket_path):
            raise LaunchError(
                f"VM {plan.index} started but its control socket never came up within {self.launch_timeout}s",
                stage="liveness",
                log_tail=tail_file(plan.log_path),
                pid=proc.pid,
            )

    def launch(
        self,
        plan: InstancePlan,
        kernel_path: Path,
        base_rootfs: Path,
        with_network: bool = True,
    ) -> InstanceRecord:
        try:
            for directory in (plan.instance_dir, plan.socket_path.parent, plan.log_path.parent):
                ensure_directory(directory)
        except OSError as exc:
            raise LaunchError(f"Cannot prepare directories for VM {plan.index}: {exc}", stage="config") from exc
        self.prepare_rootfs(plan, base_rootfs)
        self.write_config(plan, kernel_path, with_network=with_network)
        self.clear_socket(plan)
        proc = self.spawn(plan)
        started_at = datetime.now(timezone.utc).isoformat(timespec="seconds")
        self.wait_live(plan, proc)
        return InstanceRecord(
            index=plan.index,
            pid=proc.pid,
            socket_path=plan.socket_path,
            started_at=started_at,
            network_degraded=not with_network,
        )
