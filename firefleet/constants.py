"""Global constants and path configuration for firefleet."""

from __future__ import annotations

import os
import re
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_PROFILES_PATH = PACKAGE_DIR / "profiles.yaml"
DEFAULT_PROFILE = "default"

# DATA_DIR provides a single mount point for all persistent fleet state.
_DATA_DIR = os.environ.get("DATA_DIR")
DEFAULT_STATE_DIR = Path(_DATA_DIR) if _DATA_DIR else Path("fleet")

VMS_DIR_NAME = "vms"
PIDS_DIR_NAME = "pids"
SOCKETS_DIR_NAME = "sockets"
LOGS_DIR_NAME = "logs"
ASSETS_DIR_NAME = "assets"
STATE_SUBDIRS = (VMS_DIR_NAME, PIDS_DIR_NAME, SOCKETS_DIR_NAME, LOGS_DIR_NAME)

INSTANCE_DIR_RE = re.compile(r"^vm-(\d+)$")
RECORD_FILE_RE = re.compile(r"^vm-(\d+)\.json$")

KERNEL_NAME = "vmlinux"
ROOTFS_NAME = "rootfs.ext4"
CONFIG_NAME = "config.json"

FIRECRACKER_BINARY = "firecracker"
LOCAL_FIRECRACKER_BINARY = Path("bin") / "firecracker"

DEFAULT_VM_COUNT = 3
# Addressing is derived from a single octet of the subnet.
MAX_INSTANCES = 254
# Linux IFNAMSIZ minus the trailing NUL.
MAX_DEVICE_NAME_LEN = 15
# Kernel ceiling for /proc/sys/kernel/pid_max.
MAX_PID = 2**22

DEFAULT_DEVICE_PREFIX = "tap"
DEFAULT_SUBNET_PREFIX = "172.16"
GUEST_MAC_PREFIX = "AA:FC:00:00:00"
GUEST_IFACE_ID = "eth0"
ROOTFS_DRIVE_ID = "rootfs"

DEFAULT_LAUNCH_TIMEOUT = 3
DEFAULT_STOP_TIMEOUT = 1
DEFAULT_WORKLOAD_PORT = 8000
LOG_TAIL_LINES = 10

# Asset sanity thresholds
KERNEL_MIN_BYTES = 1_000_000
ROOTFS_MIN_BYTES = 10_000_000
ELF_MAGIC = b"\x7fELF"
EXT_SUPERBLOCK_MAGIC_OFFSET = 1080
EXT_SUPERBLOCK_MAGIC = b"\x53\xef"

IP_FORWARD_PATH = Path("/proc/sys/net/ipv4/ip_forward")

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# Start failure stages, in the order an instance traverses them.
STAGE_PLAN = "plan"
STAGE_BIND = "bind"
STAGE_LAUNCH = "launch"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PARTIAL = 3
