"""Shared test fixtures: a fake host for network commands and a fake process table."""

from __future__ import annotations

import itertools
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

from firefleet.exceptions import LaunchError
from firefleet.models import FleetConfig, InstancePlan, InstanceRecord, Profile


@pytest.fixture
def profile() -> Profile:
    return Profile(
        name="default",
        description="test profile",
        kernel_urls=["https://example.com/vmlinux"],
        rootfs_urls=["https://example.com/rootfs.ext4"],
        rootfs_name="rootfs.ext4",
        boot_args="console=ttyS0 reboot=k panic=1 pci=off",
        memory_mib=128,
        vcpu_count=1,
    )


@pytest.fixture
def fleet_config(tmp_path, profile) -> FleetConfig:
    """Return a FleetConfig rooted in a temporary state directory."""
    state_dir = tmp_path / "fleet"
    return FleetConfig(
        state_dir=state_dir,
        profile=profile,
        firecracker_bin="/usr/local/bin/firecracker",
        kernel_path=state_dir / "assets" / "vmlinux",
        rootfs_path=state_dir / "assets" / "rootfs.ext4",
        kernel_override=False,
        rootfs_override=False,
        memory_mib=128,
        vcpu_count=1,
        boot_args="console=ttyS0 reboot=k panic=1 pci=off",
        device_prefix="tap",
        subnet_prefix="172.16",
        launch_timeout=1,
        stop_timeout=0,
        use_sudo=False,
        workload_port=8000,
    )


# All environment variables that parse_env() reads, used to ensure a clean slate.
_PARSE_ENV_VARS = [
    "FLEET_STATE_DIR",
    "FLEET_PROFILE",
    "FLEET_PROFILES",
    "FIRECRACKER_BIN",
    "FLEET_KERNEL",
    "FLEET_ROOTFS",
    "FLEET_MEMORY",
    "FLEET_VCPUS",
    "FLEET_BOOT_ARGS",
    "FLEET_DEVICE_PREFIX",
    "FLEET_SUBNET_PREFIX",
    "FLEET_LAUNCH_TIMEOUT",
    "FLEET_STOP_TIMEOUT",
    "FLEET_SUDO",
    "FLEET_WORKLOAD_PORT",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear all environment variables that parse_env() reads and point state at tmp_path."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("FLEET_STATE_DIR", str(tmp_path / "fleet"))
    monkeypatch.setenv("FIRECRACKER_BIN", "/usr/local/bin/firecracker")
    monkeypatch.setenv("FLEET_SUDO", "0")


class FakeHost:
    """Stateful stand-in for ip, iptables and sysctl."""

    def __init__(self, forward_path: Path, egress: Optional[str] = "eth0") -> None:
        self.devices: Dict[str, List[str]] = {}
        self.up: Set[str] = set()
        self.rules: List[Tuple[str, str, Tuple[str, ...]]] = []
        self.forward_path = forward_path
        self.forward_path.write_text("0\n")
        self.egress = egress
        self.commands: List[List[str]] = []
        self.failing: List[Tuple[str, ...]] = []

    def fail(self, *prefix: str) -> None:
        """Make every command starting with ``prefix`` fail."""
        self.failing.append(tuple(prefix))

    def rules_for(self, table: str, chain: str) -> List[Tuple[str, ...]]:
        return [spec for t, c, spec in self.rules if t == table and c == chain]

    def run(self, cmd, check=True, **kwargs):
        argv = list(cmd)
        self.commands.append(argv)
        if argv and argv[0] == "sudo":
            argv = argv[1:]
        if any(tuple(argv[: len(prefix)]) == prefix for prefix in self.failing):
            rc, out, err = 2, "", "RTNETLINK answers: Operation not permitted"
        else:
            rc, out, err = self._dispatch(argv)
        if check and rc != 0:
            raise subprocess.CalledProcessError(rc, cmd, output=out, stderr=err)
        return subprocess.CompletedProcess(cmd, rc, out, err)

    def _dispatch(self, argv: List[str]) -> Tuple[int, str, str]:
        if argv[:3] == ["ip", "link", "show"]:
            return (0, f"{argv[-1]}: <UP>", "") if argv[-1] in self.devices else (1, "", "Device does not exist")
        if argv[:5] == ["ip", "-o", "-4", "addr", "show"]:
            name = argv[-1]
            if name not in self.devices:
                return 1, "", "Device does not exist"
            lines = [f"7: {name}    inet {addr} scope global {name}" for addr in self.devices[name]]
            return 0, "\n".join(lines) + ("\n" if lines else ""), ""
        if argv[:3] == ["ip", "tuntap", "add"]:
            name = argv[4]
            if name in self.devices:
                return 1, "", "ioctl(TUNSETIFF): Device or resource busy"
            self.devices[name] = []
            return 0, "", ""
        if argv[:3] == ["ip", "addr", "add"]:
            addr, name = argv[3], argv[5]
            if name not in self.devices:
                return 1, "", "Cannot find device"
            self.devices[name].append(addr)
            return 0, "", ""
        if argv[:3] == ["ip", "link", "set"]:
            name = argv[4]
            if name not in self.devices:
                return 1, "", "Cannot find device"
            self.up.add(name)
            return 0, "", ""
        if argv[:3] == ["ip", "link", "del"]:
            name = argv[3]
            if name not in self.devices:
                return 1, "", "Cannot find device"
            del self.devices[name]
            self.up.discard(name)
            return 0, "", ""
        if argv[:4] == ["ip", "route", "show", "default"]:
            if self.egress is None:
                return 0, "", ""
            return 0, f"default via 10.0.0.1 dev {self.egress} proto dhcp metric 100\n", ""
        if argv[:2] == ["sysctl", "-w"]:
            self.forward_path.write_text("1\n")
            return 0, "net.ipv4.ip_forward = 1\n", ""
        if argv[0] == "iptables":
            table, action, chain, spec = argv[2], argv[3], argv[4], tuple(argv[5:])
            key = (table, chain, spec)
            if action == "-C":
                return (0, "", "") if key in self.rules else (1, "", "Bad rule")
            if action == "-A":
                self.rules.append(key)
                return 0, "", ""
            if action == "-D":
                if key not in self.rules:
                    return 1, "", "Bad rule"
                self.rules.remove(key)
                return 0, "", ""
        return 127, "", f"unexpected command: {' '.join(argv)}"


@pytest.fixture
def fake_host(tmp_path, monkeypatch) -> FakeHost:
    host = FakeHost(tmp_path / "ip_forward")
    monkeypatch.setattr("firefleet.network.run", host.run)
    monkeypatch.setattr("firefleet.network.IP_FORWARD_PATH", host.forward_path)
    monkeypatch.setattr("firefleet.network._owner", lambda: "tester")
    return host


class FakeProcessTable:
    """In-memory process table backing pid/socket probes in supervisor tests."""

    def __init__(self) -> None:
        self._pids = itertools.count(4000)
        self.alive: Set[int] = set()
        self.cmdlines: Dict[int, List[str]] = {}
        self.live_sockets: Set[Path] = set()
        self.terminated: List[int] = []

    def spawn(self, cmdline: List[str], socket_path: Optional[Path] = None) -> int:
        pid = next(self._pids)
        self.alive.add(pid)
        self.cmdlines[pid] = cmdline
        if socket_path is not None:
            socket_path.parent.mkdir(parents=True, exist_ok=True)
            socket_path.touch()
            self.live_sockets.add(socket_path)
        return pid

    def crash(self, pid: int) -> None:
        """Simulate the process dying on its own, leaving its socket file behind."""
        self.alive.discard(pid)
        for path in [p for p in self.live_sockets if str(p) in self.cmdlines.get(pid, [])]:
            self.live_sockets.discard(path)

    def pid_alive(self, pid: int) -> bool:
        return pid in self.alive

    def process_cmdline(self, pid: int) -> Optional[List[str]]:
        return self.cmdlines.get(pid) if pid in self.alive else None

    def socket_is_live(self, path, timeout: float = 0.2) -> bool:
        return Path(path) in self.live_sockets

    def terminate_pid(self, pid: int, timeout: float) -> bool:
        if pid not in self.alive:
            return False
        self.terminated.append(pid)
        self.crash(pid)
        return True


@pytest.fixture
def process_table(monkeypatch) -> FakeProcessTable:
    table = FakeProcessTable()
    for name in ("pid_alive", "process_cmdline", "socket_is_live", "terminate_pid"):
        monkeypatch.setattr(f"firefleet.supervisor.{name}", getattr(table, name))
    return table


class FakeLauncher:
    """Launcher that registers processes in a FakeProcessTable instead of spawning."""

    def __init__(self, table: FakeProcessTable) -> None:
        self.table = table
        self.failing: Set[int] = set()
        self.calls: List[Tuple[int, bool]] = []

    def launch(self, plan: InstancePlan, kernel_path, base_rootfs, with_network: bool = True) -> InstanceRecord:
        self.calls.append((plan.index, with_network))
        cmdline = ["firecracker", "--api-sock", str(plan.socket_path), "--id", f"vm-{plan.index}"]
        plan.instance_dir.mkdir(parents=True, exist_ok=True)
        if plan.index in self.failing:
            pid = self.table.spawn(cmdline)
            raise LaunchError(
                f"VM {plan.index} started but its control socket never came up within 1s",
                stage="liveness",
                log_tail=["Error: KVM_CREATE_VM failed"],
                pid=pid,
            )
        pid = self.table.spawn(cmdline, socket_path=plan.socket_path)
        return InstanceRecord(
            index=plan.index,
            pid=pid,
            socket_path=plan.socket_path,
            started_at="2026-01-01T00:00:00+00:00",
            network_degraded=not with_network,
        )


@pytest.fixture
def fake_launcher(process_table) -> FakeLauncher:
    return FakeLauncher(process_table)
