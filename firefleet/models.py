"""Data models for firefleet."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from firefleet.constants import MAX_PID


@dataclass
class Profile:
    name: str
    description: str
    kernel_urls: List[str]
    rootfs_urls: List[str]
    rootfs_name: str
    boot_args: str
    memory_mib: int
    vcpu_count: int


@dataclass
class FleetConfig:
    state_dir: Path
    profile: Profile
    firecracker_bin: str
    kernel_path: Path
    rootfs_path: Path
    kernel_override: bool
    rootfs_override: bool
    memory_mib: int
    vcpu_count: int
    boot_args: str
    device_prefix: str
    subnet_prefix: str
    launch_timeout: int
    stop_timeout: int
    use_sudo: bool
    workload_port: int


@dataclass(frozen=True)
class InstancePlan:
    index: int
    device_name: str
    subnet: str
    gateway_address: str  # host side, CIDR form
    guest_address: str
    guest_mac: str
    instance_dir: Path
    config_path: Path
    rootfs_path: Path
    socket_path: Path
    log_path: Path
    memory_mib: int
    vcpu_count: int
    boot_args: str


@dataclass(frozen=True)
class InstanceRecord:
    index: int
    pid: int
    socket_path: Path
    started_at: str
    network_degraded: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "index": self.index,
            "pid": self.pid,
            "socket_path": str(self.socket_path),
            "started_at": self.started_at,
            "network_degraded": self.network_degraded,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "InstanceRecord":
        index = data["index"]
        pid = data["pid"]
        if isinstance(index, bool) or not isinstance(index, int):
            raise ValueError(f"index must be an integer (got {index!r})")
        if isinstance(pid, bool) or not isinstance(pid, int) or not 0 < pid <= MAX_PID:
            raise ValueError(f"pid must be an integer in 1..{MAX_PID} (got {pid!r})")
        return cls(
            index=index,
            pid=pid,
            socket_path=Path(str(data["socket_path"])),
            started_at=str(data.get("started_at", "")),
            network_degraded=bool(data.get("network_degraded", False)),
        )


@dataclass
class InstanceStatus:
    index: int
    running: bool
    has_live_socket: bool
    pid: Optional[int]
    network_degraded: bool = False
    has_device: bool = False
    stale: bool = False

    @property
    def live(self) -> bool:
        return self.running and self.has_live_socket


@dataclass
class InstanceResult:
    index: int
    ok: bool
    stage: Optional[str] = None
    message: str = ""
    log_tail: List[str] = field(default_factory=list)
    record: Optional[InstanceRecord] = None
    degraded: bool = False


@dataclass
class FleetResult:
    requested: int
    results: List[InstanceResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.ok)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.ok)

    @property
    def failures(self) -> List[InstanceResult]:
        return [result for result in self.results if not result.ok]

    @property
    def all_ok(self) -> bool:
        return self.succeeded == self.requested

    @property
    def none_ok(self) -> bool:
        return self.succeeded == 0


@dataclass
class ProbeResult:
    index: int
    url: str
    reachable: bool
    status_code: Optional[int] = None
    latency_ms: Optional[float] = None
    error: str = ""
