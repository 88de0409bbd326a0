"""Deterministic per-instance resource planning for firefleet.

Every identifier an instance owns (TAP device, subnet, MAC address, socket,
config, log, rootfs copy) is derived from its index alone, so that a later
invocation of the controller recomputes exactly the same names and can find
resources created by an earlier one.
"""

from __future__ import annotations

from pathlib import Path

from firefleet.constants import (
    CONFIG_NAME,
    GUEST_MAC_PREFIX,
    LOGS_DIR_NAME,
    MAX_DEVICE_NAME_LEN,
    MAX_INSTANCES,
    ROOTFS_NAME,
    SOCKETS_DIR_NAME,
    VMS_DIR_NAME,
)
from firefleet.exceptions import PlanningError
from firefleet.models import FleetConfig, InstancePlan


def validate_index(index: object) -> int:
    if isinstance(index, bool) or not isinstance(index, int):
        raise PlanningError(f"Instance index must be an integer (got {index!r})")
    if index < 1:
        raise PlanningError(f"Instance index must be >= 1 (got {index})")
    if index > MAX_INSTANCES:
        raise PlanningError(f"Instance index {index} exceeds the supported maximum of {MAX_INSTANCES}")
    return index


def validate_count(count: object) -> int:
    """Check a requested fleet size before any instance is attempted."""
    if isinstance(count, bool) or not isinstance(count, int):
        raise PlanningError(f"Instance count must be an integer (got {count!r})")
    if count < 1:
        raise PlanningError(f"Instance count must be >= 1 (got {count})")
    if count > MAX_INSTANCES:
        raise PlanningError(f"Instance count {count} exceeds the supported maximum of {MAX_INSTANCES}")
    return count


def guest_mac(index: int) -> str:
    # Hex keeps the last octet valid and unique for every supported index.
    return f"{GUEST_MAC_PREFIX}:{index:02X}"


class ResourcePlanner:
    """Pure mapping from instance index to :class:`InstancePlan`."""

    def __init__(self, cfg: FleetConfig) -> None:
        self.state_dir = Path(cfg.state_dir)
        self.device_prefix = cfg.device_prefix
        self.subnet_prefix = cfg.subnet_prefix
        self.memory_mib = cfg.memory_mib
        self.vcpu_count = cfg.vcpu_count
        self.boot_args = cfg.boot_args

    def device_name(self, index: int) -> str:
        name = f"{self.device_prefix}{index}"
        if len(name) > MAX_DEVICE_NAME_LEN:
            raise PlanningError(f"Device name '{name}' exceeds {MAX_DEVICE_NAME_LEN} characters")
        return name

    def plan(self, index: int) -> InstancePlan:
        index = validate_index(index)
        instance_dir = self.state_dir / VMS_DIR_NAME / f"vm-{index}"
        network = f"{self.subnet_prefix}.{index}"
        return InstancePlan(
            index=index,
            device_name=self.device_name(index),
            subnet=f"{network}.0/24",
            gateway_address=f"{network}.1/24",
            guest_address=f"{network}.2",
            guest_mac=guest_mac(index),
            instance_dir=instance_dir,
            config_path=instance_dir / CONFIG_NAME,
            rootfs_path=instance_dir / ROOTFS_NAME,
            socket_path=self.state_dir / SOCKETS_DIR_NAME / f"firecracker-{index}.socket",
            log_path=self.state_dir / LOGS_DIR_NAME / f"firecracker-{index}.log",
            memory_mib=self.memory_mib,
            vcpu_count=self.vcpu_count,
            boot_args=self.boot_args,
        )
