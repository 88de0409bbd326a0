"""CLI entry points for firefleet."""

from __future__ import annotations

import argparse
import dataclasses
import subprocess
from pathlib import Path
from typing import List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from firefleet.assets import kernel_problem, rootfs_problem
from firefleet.config import load_profile_catalog, parse_env
from firefleet.constants import DEFAULT_VM_COUNT, EXIT_FAILED, EXIT_OK, EXIT_PARTIAL
from firefleet.exceptions import FleetError
from firefleet.models import FleetConfig, FleetResult, InstanceStatus
from firefleet.network import NetworkBinder
from firefleet.planner import ResourcePlanner, validate_count
from firefleet.supervisor import InstanceSupervisor
from firefleet.utils import get_env, is_root, kvm_available, log, set_verbose


def list_profiles(config_path: Optional[Path] = None) -> None:
    """Print the profile catalogue."""
    profiles = load_profile_catalog(config_path)
    if not profiles:
        log("WARN", "No profiles found")
        return
    max_key = max(len(k) for k in profiles)
    for key in sorted(profiles):
        info = profiles[key] or {}
        description = info.get("description", "")
        memory = info.get("memory_mib", "?")
        vcpus = info.get("vcpu_count", "?")
        print(f"  {key:<{max_key}}  {description}  (memory={memory} MiB, vcpus={vcpus})")


def show_plan(cfg: FleetConfig, count: int) -> None:
    planner = ResourcePlanner(cfg)
    plans = []
    for index in range(1, validate_count(count) + 1):
        entry = dataclasses.asdict(planner.plan(index))
        plans.append({key: str(value) if isinstance(value, Path) else value for key, value in entry.items()})
    print(yaml.safe_dump({"profile": cfg.profile.name, "instances": plans}, sort_keys=False), end="")


def report_start(result: FleetResult) -> int:
    """Print per-instance failures and map the outcome to an exit code."""
    for outcome in result.results:
        if outcome.ok and outcome.degraded:
            log("WARN", f"VM {outcome.index} is running without networking ({outcome.message or 'bind failed'})")
    for failure in result.failures:
        log("ERROR", f"VM {failure.index} failed at stage '{failure.stage}': {failure.message}")
        if failure.log_tail:
            log("ERROR", "  Last log lines:")
            for line in failure.log_tail:
                print(f"    {line}")
    if result.all_ok:
        return EXIT_OK
    if result.none_ok:
        return EXIT_FAILED
    return EXIT_PARTIAL


def _describe(status: InstanceStatus) -> str:
    if status.stale:
        return f"Not running (stale record for PID {status.pid} removed)"
    if not status.running:
        return "Not running"
    parts = [f"Running (PID: {status.pid})"]
    if not status.has_live_socket:
        parts.append("control socket not responding")
    if status.network_degraded:
        parts.append("no network")
    elif not status.has_device:
        parts.append("TAP device missing")
    return ", ".join(parts)


def report_status(statuses: List[InstanceStatus]) -> int:
    if not statuses:
        log("INFO", "No VMs found")
        return EXIT_FAILED
    log("INFO", "VM Status:")
    for status in statuses:
        print(f"  VM {status.index}: {_describe(status)}")
    live = sum(1 for status in statuses if status.live)
    log("INFO", f"{live} of {len(statuses)} VM(s) live")
    return EXIT_OK if live == len(statuses) else EXIT_FAILED


def run_check(cfg: FleetConfig) -> int:
    """Report whether this host can launch the fleet."""
    ok = True
    log("INFO", "=== Environment Checks ===")
    if kvm_available():
        log("SUCCESS", "KVM:         available (/dev/kvm)")
    else:
        log("ERROR", "KVM:         NOT accessible (/dev/kvm must be readable and writable)")
        ok = False

    try:
        result = subprocess.run(
            [cfg.firecracker_bin, "--version"],
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        log("ERROR", f"Firecracker: {cfg.firecracker_bin} is not runnable ({exc})")
        ok = False
    else:
        version = (result.stdout or "").strip().splitlines()
        if result.returncode == 0:
            log("SUCCESS", f"Firecracker: {cfg.firecracker_bin} ({version[0] if version else 'unknown version'})")
        else:
            log("ERROR", f"Firecracker: {cfg.firecracker_bin} --version exited {result.returncode}")
            ok = False

    for label, path, problem in (
        ("Kernel", cfg.kernel_path, kernel_problem),
        ("Rootfs", cfg.rootfs_path, rootfs_problem),
    ):
        issue = problem(path)
        if not issue:
            log("SUCCESS", f"{label + ':':<12} {path}")
        elif issue == "missing" and not getattr(cfg, f"{label.lower()}_override"):
            log("WARN", f"{label + ':':<12} {path} (missing, will download on start)")
        else:
            log("ERROR", f"{label + ':':<12} {path} ({issue})")
            ok = False

    if NetworkBinder(cfg).forwarding_enabled():
        log("INFO", "Forwarding:  IPv4 forwarding enabled")
    else:
        log("INFO", "Forwarding:  IPv4 forwarding disabled (will be enabled on start)")
    if is_root():
        log("WARN", "Running as root; VMs and their files will be owned by root")
    log("INFO", f"Privileged commands: {'via sudo' if cfg.use_sudo else 'direct'}")
    return EXIT_OK if ok else EXIT_FAILED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="firefleet", description="Firecracker microVM fleet manager")
    parser.add_argument("--profile", help="Launch profile from the catalogue (default: FLEET_PROFILE or 'default')")
    parser.add_argument("--state-dir", type=Path, help="State directory (default: FLEET_STATE_DIR or ./fleet)")
    parser.add_argument("--verbose", action="store_true", help="Show debug output")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    start = sub.add_parser("start", help="Start N VMs")
    start.add_argument("count", nargs="?", type=int, default=DEFAULT_VM_COUNT)
    sub.add_parser("stop", help="Stop all VMs")
    sub.add_parser("status", help="Show VM status")
    restart = sub.add_parser("restart", help="Stop all VMs, then start N")
    restart.add_argument("count", nargs="?", type=int, default=DEFAULT_VM_COUNT)
    sub.add_parser("clean", help="Stop all VMs and remove their files and assets")
    probe = sub.add_parser("probe", help="Check the workload health endpoint in each VM")
    probe.add_argument("--port", type=int, default=None, help="Workload port (default: FLEET_WORKLOAD_PORT)")
    probe.add_argument("--timeout", type=float, default=2.0, help="Per-request timeout in seconds")
    sub.add_parser("check", help="Validate the host environment and exit")
    sub.add_parser("profiles", help="List available launch profiles")
    plan = sub.add_parser("show-plan", help="Print the resources N VMs would use")
    plan.add_argument("count", nargs="?", type=int, default=DEFAULT_VM_COUNT)
    return parser


def dispatch(args: argparse.Namespace, cfg: FleetConfig) -> int:
    if args.command == "show-plan":
        show_plan(cfg, args.count)
        return EXIT_OK
    if args.command == "check":
        return run_check(cfg)

    supervisor = InstanceSupervisor(cfg)
    if args.command == "start":
        return report_start(supervisor.start(args.count))
    if args.command == "restart":
        log("INFO", "Restarting VMs...")
        return report_start(supervisor.restart(args.count))
    if args.command == "stop":
        supervisor.stop()
        return EXIT_OK
    if args.command == "status":
        return report_status(supervisor.status())
    if args.command == "clean":
        supervisor.clean()
        return EXIT_OK
    if args.command == "probe":
        results = supervisor.probe(port=args.port, timeout=args.timeout)
        if not results:
            log("WARN", "No running VMs to probe")
            return EXIT_FAILED
        for result in results:
            if result.reachable:
                log("SUCCESS", f"VM {result.index}: {result.url} -> {result.status_code} ({result.latency_ms} ms)")
            else:
                log("ERROR", f"VM {result.index}: {result.url} unreachable ({result.error})")
        return EXIT_OK if all(result.reachable for result in results) else EXIT_FAILED
    raise FleetError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        set_verbose(True)

    try:
        if args.command == "profiles":
            profiles_env = get_env("FLEET_PROFILES")
            list_profiles(Path(profiles_env) if profiles_env else None)
            return EXIT_OK
        cfg = parse_env(profile_name=args.profile, state_dir=args.state_dir)
    except FleetError as exc:
        log("ERROR", str(exc))
        return EXIT_FAILED

    try:
        return dispatch(args, cfg)
    except FleetError as exc:
        log("ERROR", str(exc))
        return EXIT_FAILED
    except KeyboardInterrupt:
        log("WARN", "Interrupted; run 'firefleet stop' to clean up any VMs that were started")
        return EXIT_FAILED
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        log("ERROR", "This is likely a bug in firefleet.")
        import traceback

        traceback.print_exc()
        return EXIT_FAILED
