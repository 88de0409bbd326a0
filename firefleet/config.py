"""Configuration loading and environment variable parsing for firefleet."""

from __future__ import annotations

import ipaddress
import re
import shutil
from pathlib import Path
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from firefleet.constants import (
    ASSETS_DIR_NAME,
    DEFAULT_DEVICE_PREFIX,
    DEFAULT_LAUNCH_TIMEOUT,
    DEFAULT_PROFILE,
    DEFAULT_PROFILES_PATH,
    DEFAULT_STATE_DIR,
    DEFAULT_STOP_TIMEOUT,
    DEFAULT_SUBNET_PREFIX,
    DEFAULT_WORKLOAD_PORT,
    FIRECRACKER_BINARY,
    KERNEL_NAME,
    LOCAL_FIRECRACKER_BINARY,
    MAX_DEVICE_NAME_LEN,
    MAX_INSTANCES,
)
from firefleet.exceptions import ConfigError
from firefleet.models import FleetConfig, Profile
from firefleet.utils import get_env, get_env_bool, is_root, log, parse_int_env

_DEVICE_PREFIX_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")
_REQUIRED_PROFILE_FIELDS = ("boot_args", "memory_mib", "vcpu_count")


def load_profile_catalog(config_path: Optional[Path] = None) -> Dict[str, dict]:
    if config_path is None:
        config_path = DEFAULT_PROFILES_PATH
    if not config_path.exists():
        raise ConfigError(f"Profile catalogue missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Profile catalogue {config_path} contains invalid YAML: {exc}")
    if not isinstance(data, dict):
        raise ConfigError(f"Profile catalogue {config_path} must be a YAML mapping")
    profiles = data.get("profiles", {})
    if not isinstance(profiles, dict):
        raise ConfigError(f"'profiles' in {config_path} must be a mapping")
    return profiles


def _as_url_list(name: str, key: str, value: object) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"Profile '{name}': '{key}' must be a list of URLs")
    return list(value)


def load_profile(name: str, config_path: Optional[Path] = None) -> Profile:
    profiles = load_profile_catalog(config_path)
    if name not in profiles:
        available_list = "\n    ".join(sorted(profiles.keys()))
        raise ConfigError(
            f"Unknown profile '{name}'.\n"
            f"  Available profiles:\n"
            f"    {available_list}\n"
            f"  Use 'firefleet profiles' to see details."
        )
    info = profiles[name]
    if not isinstance(info, dict):
        raise ConfigError(f"Profile '{name}' must be a mapping")
    missing = [key for key in _REQUIRED_PROFILE_FIELDS if key not in info]
    if missing:
        raise ConfigError(f"Profile '{name}' is missing required field(s): {', '.join(missing)}")
    try:
        memory_mib = int(info["memory_mib"])
        vcpu_count = int(info["vcpu_count"])
    except (TypeError, ValueError):
        raise ConfigError(f"Profile '{name}': memory_mib and vcpu_count must be integers")
    return Profile(
        name=name,
        description=str(info.get("description", "")),
        kernel_urls=_as_url_list(name, "kernel_urls", info.get("kernel_urls")),
        rootfs_urls=_as_url_list(name, "rootfs_urls", info.get("rootfs_urls")),
        rootfs_name=str(info.get("rootfs_name", "rootfs.ext4")),
        boot_args=str(info["boot_args"]),
        memory_mib=memory_mib,
        vcpu_count=vcpu_count,
    )


def validate_subnet_prefix(raw: str) -> str:
    prefix = raw.strip().rstrip(".")
    octets = prefix.split(".")
    if len(octets) != 2:
        raise ConfigError(f"FLEET_SUBNET_PREFIX must be two octets such as '172.16' (got '{raw}')")
    try:
        ipaddress.ip_network(f"{prefix}.0.0/16")
    except ValueError:
        raise ConfigError(f"FLEET_SUBNET_PREFIX '{raw}' is not a valid address prefix")
    return prefix


def validate_device_prefix(raw: str) -> str:
    prefix = raw.strip()
    if not _DEVICE_PREFIX_RE.match(prefix):
        raise ConfigError(f"FLEET_DEVICE_PREFIX '{raw}' must start with a letter and contain only [A-Za-z0-9_-]")
    longest = len(prefix) + len(str(MAX_INSTANCES))
    if longest > MAX_DEVICE_NAME_LEN:
        raise ConfigError(
            f"FLEET_DEVICE_PREFIX '{prefix}' is too long: device names would reach {longest} "
            f"characters (limit {MAX_DEVICE_NAME_LEN})"
        )
    return prefix


def resolve_firecracker_binary() -> str:
    explicit = get_env("FIRECRACKER_BIN")
    if explicit and explicit.strip():
        return explicit.strip()
    found = shutil.which(FIRECRACKER_BINARY)
    if found:
        return found
    return str(LOCAL_FIRECRACKER_BINARY.resolve())


def parse_env(profile_name: Optional[str] = None, state_dir: Optional[Path] = None) -> FleetConfig:
    if profile_name is None:
        profile_name = (get_env("FLEET_PROFILE") or DEFAULT_PROFILE).strip() or DEFAULT_PROFILE
    profiles_env = get_env("FLEET_PROFILES")
    profiles_path = Path(profiles_env) if profiles_env else None
    profile = load_profile(profile_name, profiles_path)

    if state_dir is None:
        state_env = get_env("FLEET_STATE_DIR")
        state_dir = Path(state_env) if state_env else DEFAULT_STATE_DIR
    state_dir = state_dir.expanduser().resolve()
    assets_dir = state_dir / ASSETS_DIR_NAME

    kernel_env = (get_env("FLEET_KERNEL") or "").strip()
    rootfs_env = (get_env("FLEET_ROOTFS") or "").strip()
    kernel_path = Path(kernel_env).expanduser().resolve() if kernel_env else assets_dir / KERNEL_NAME
    rootfs_path = Path(rootfs_env).expanduser().resolve() if rootfs_env else assets_dir / profile.rootfs_name

    memory_mib = parse_int_env("FLEET_MEMORY", str(profile.memory_mib), min_val=16)
    vcpu_count = parse_int_env("FLEET_VCPUS", str(profile.vcpu_count), min_val=1, max_val=32)
    boot_args = (get_env("FLEET_BOOT_ARGS") or "").strip() or profile.boot_args

    device_prefix = validate_device_prefix(get_env("FLEET_DEVICE_PREFIX", DEFAULT_DEVICE_PREFIX) or "")
    subnet_prefix = validate_subnet_prefix(get_env("FLEET_SUBNET_PREFIX", DEFAULT_SUBNET_PREFIX) or "")

    launch_timeout = parse_int_env("FLEET_LAUNCH_TIMEOUT", str(DEFAULT_LAUNCH_TIMEOUT), min_val=1, max_val=300)
    stop_timeout = parse_int_env("FLEET_STOP_TIMEOUT", str(DEFAULT_STOP_TIMEOUT), min_val=0, max_val=300)
    workload_port = parse_int_env("FLEET_WORKLOAD_PORT", str(DEFAULT_WORKLOAD_PORT), min_val=1, max_val=65535)

    use_sudo = get_env_bool("FLEET_SUDO", not is_root())
    if use_sudo and is_root():
        log("DEBUG", "FLEET_SUDO requested while running as root")

    return FleetConfig(
        state_dir=state_dir,
        profile=profile,
        firecracker_bin=resolve_firecracker_binary(),
        kernel_path=kernel_path,
        rootfs_path=rootfs_path,
        kernel_override=bool(kernel_env),
        rootfs_override=bool(rootfs_env),
        memory_mib=memory_mib,
        vcpu_count=vcpu_count,
        boot_args=boot_args,
        device_prefix=device_prefix,
        subnet_prefix=subnet_prefix,
        launch_timeout=launch_timeout,
        stop_timeout=stop_timeout,
        use_sudo=use_sudo,
        workload_port=workload_port,
    )
