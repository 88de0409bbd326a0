"""Fleet lifecycle orchestration for firefleet.

The controller is a short-lived command, not a daemon, so supervision is
reconciliation on demand: every call re-derives the fleet from the records
on disk and from the OS process table, never from in-memory state left by an
earlier call.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import List, Optional

try:
    import requests  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("requests is required but not installed") from exc

from firefleet.assets import AssetStore
from firefleet.constants import STAGE_BIND, STAGE_LAUNCH, STAGE_PLAN
from firefleet.exceptions import (
    BindError,
    FleetError,
    LaunchError,
    PlanningError,
    ReconciliationError,
    StateStoreError,
)
from firefleet.launcher import InstanceLauncher
from firefleet.models import (
    FleetConfig,
    FleetResult,
    InstanceRecord,
    InstanceResult,
    InstanceStatus,
    ProbeResult,
)
from firefleet.network import NetworkBinder
from firefleet.planner import ResourcePlanner, validate_count
from firefleet.state import StateStore
from firefleet.utils import log, pid_alive, process_cmdline, socket_is_live, terminate_pid


class InstanceSupervisor:
    def __init__(
        self,
        cfg: FleetConfig,
        planner: Optional[ResourcePlanner] = None,
        binder: Optional[NetworkBinder] = None,
        launcher: Optional[InstanceLauncher] = None,
        store: Optional[StateStore] = None,
        assets: Optional[AssetStore] = None,
    ) -> None:
        self.cfg = cfg
        self.planner = planner or ResourcePlanner(cfg)
        self.binder = binder or NetworkBinder(cfg)
        self.launcher = launcher or InstanceLauncher(cfg)
        self.store = store or StateStore(cfg.state_dir)
        self.assets = assets or AssetStore(cfg)

    # -- reconciliation ---------------------------------------------------

    def verify(self, record: InstanceRecord) -> None:
        """Raise ReconciliationError unless the record's hypervisor is still running."""
        if not pid_alive(record.pid):
            raise ReconciliationError(f"VM {record.index}: PID {record.pid} is not running", record.index)
        cmdline = process_cmdline(record.pid)
        if cmdline is not None and str(record.socket_path) not in cmdline:
            raise ReconciliationError(
                f"VM {record.index}: PID {record.pid} now belongs to an unrelated process",
                record.index,
            )

    def is_running(self, record: InstanceRecord) -> bool:
        try:
            self.verify(record)
        except ReconciliationError:
            return False
        return True

    @staticmethod
    def _remove_socket(path: Path) -> None:
        if socket_is_live(path):
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            log("WARN", f"Failed to remove socket {path}: {exc}")

    # -- start ------------------------------------------------------------

    def start(self, count: int) -> FleetResult:
        count = validate_count(count)
        self.store.ensure_layout()
        kernel, base_rootfs = self.assets.ensure()

        log("INFO", f"Starting {count} Firecracker VM(s)...")
        result = FleetResult(requested=count)
        for index in range(1, count + 1):
            log("INFO", f"Attempting to start VM {index} of {count}...")
            outcome = self._start_one(index, kernel, base_rootfs)
            result.results.append(outcome)
            if outcome.ok:
                log("SUCCESS", f"VM {index} started successfully (PID: {outcome.record.pid})")
            else:
                log("ERROR", f"Failed to start VM {index} at stage '{outcome.stage}' - continuing with next VM")

        if result.all_ok:
            log("SUCCESS", f"All {count} VMs started successfully")
        elif result.none_ok:
            log("ERROR", "No VMs started successfully")
        else:
            log("WARN", f"Only {result.succeeded} out of {count} VMs started successfully")
        return result

    def _start_one(self, index: int, kernel: Path, base_rootfs: Path) -> InstanceResult:
        try:
            plan = self.planner.plan(index)
        except PlanningError as exc:
            return InstanceResult(index=index, ok=False, stage=STAGE_PLAN, message=str(exc))

        existing = self.store.read(index)
        if existing is not None:
            if self.is_running(existing):
                log("SKIP", f"VM {index} already running (PID: {existing.pid})")
                return InstanceResult(
                    index=index,
                    ok=True,
                    message="already running",
                    record=existing,
                    degraded=existing.network_degraded,
                )
            log("WARN", f"Discarding stale record for VM {index} (PID {existing.pid} is gone)")
            self.store.delete(index)

        with_network = True
        bind_message = ""
        try:
            self.binder.bind(plan)
        except BindError as exc:
            with_network = False
            bind_message = str(exc)
            log("WARN", f"Failed to set up network for VM {index}: {exc}; continuing without networking")

        try:
            record = self.launcher.launch(plan, kernel, base_rootfs, with_network=with_network)
        except LaunchError as exc:
            if exc.pid is not None:
                terminate_pid(exc.pid, self.cfg.stop_timeout)
            for line in exc.log_tail:
                log("ERROR", f"  {line}")
            return InstanceResult(
                index=index,
                ok=False,
                stage=STAGE_LAUNCH,
                message=f"{exc.stage}: {exc}",
                log_tail=exc.log_tail,
            )

        try:
            self.store.write(index, record)
        except StateStoreError:
            log("ERROR", f"Could not record VM {index}; stopping PID {record.pid} so it is not orphaned")
            terminate_pid(record.pid, self.cfg.stop_timeout)
            raise

        message = f"{STAGE_BIND}: {bind_message}" if bind_message else ""
        return InstanceResult(
            index=index,
            ok=True,
            message=message,
            record=record,
            degraded=not with_network,
        )

    # -- stop -------------------------------------------------------------

    def stop(self) -> int:
        indices = self.store.enumerate()
        orphans = [index for index in self.store.instance_dirs() if index not in indices]
        if not indices and not orphans:
            log("INFO", "No VMs found to stop")
            return 0

        log("INFO", "Stopping all VMs...")
        stopped = 0
        for index in indices:
            try:
                stopped += self._stop_one(index)
            except (FleetError, OSError) as exc:
                log("WARN", f"Problem while stopping VM {index}: {exc}")

        devices = []
        for index in sorted(set(indices) | set(orphans)):
            try:
                plan = self.planner.plan(index)
            except PlanningError as exc:
                log("WARN", f"Skipping network cleanup for VM {index}: {exc}")
                continue
            devices.append(plan.device_name)
            try:
                self.binder.unbind(plan)
            except BindError as exc:
                log("WARN", f"Failed to remove {plan.device_name}: {exc}")
        try:
            self.binder.release_shared(devices)
        except BindError as exc:
            log("WARN", f"Failed to remove firewall rules: {exc}")

        if stopped:
            log("SUCCESS", f"Stopped {stopped} VM(s) and cleaned up networking")
        else:
            log("INFO", "No running VMs found to stop")
        return stopped

    def _stop_one(self, index: int) -> int:
        record = self.store.read(index)
        was_running = 0
        if record is None:
            log("WARN", f"VM {index}: record unreadable; removing it")
        else:
            try:
                self.verify(record)
            except ReconciliationError as exc:
                log("INFO", f"{exc}; already stopped")
            else:
                log("INFO", f"Stopping VM {index} (PID: {record.pid})")
                if terminate_pid(record.pid, self.cfg.stop_timeout):
                    was_running = 1
            self._remove_socket(record.socket_path)
        self.store.delete(index)
        return was_running

    # -- status -----------------------------------------------------------

    def _has_device(self, index: int) -> bool:
        try:
            return self.binder.device_exists(self.planner.device_name(index))
        except FleetError:
            return False

    def status(self) -> List[InstanceStatus]:
        statuses: List[InstanceStatus] = []
        for index in self.store.enumerate():
            record = self.store.read(index)
            if record is None:
                continue
            try:
                self.verify(record)
            except ReconciliationError as exc:
                log("WARN", f"{exc} (stale record pruned)")
                self.store.delete(index)
                self._remove_socket(record.socket_path)
                statuses.append(
                    InstanceStatus(
                        index=index,
                        running=False,
                        has_live_socket=False,
                        pid=record.pid,
                        network_degraded=record.network_degraded,
                        has_device=self._has_device(index),
                        stale=True,
                    )
                )
                continue
            statuses.append(
                InstanceStatus(
                    index=index,
                    running=True,
                    has_live_socket=socket_is_live(record.socket_path),
                    pid=record.pid,
                    network_degraded=record.network_degraded,
                    has_device=self._has_device(index),
                )
            )
        return statuses

    # -- compound operations ---------------------------------------------

    def restart(self, count: int) -> FleetResult:
        validate_count(count)
        self.stop()
        return self.start(count)

    def clean(self) -> int:
        stopped = self.stop()
        log("INFO", "Cleaning assets and directories...")
        self.store.remove_layout()
        for path in self.assets.remove():
            log("INFO", f"Removed {path}")
        log("SUCCESS", "Clean completed")
        return stopped

    def probe(self, port: Optional[int] = None, timeout: float = 2.0) -> List[ProbeResult]:
        """GET /health on every running instance's guest address."""
        port = port or self.cfg.workload_port
        results: List[ProbeResult] = []
        for status in self.status():
            if not status.running:
                continue
            plan = self.planner.plan(status.index)
            url = f"http://{plan.guest_address}:{port}/health"
            started = time.monotonic()
            try:
                response = requests.get(url, timeout=timeout)
            except requests.RequestException as exc:
                results.append(ProbeResult(index=status.index, url=url, reachable=False, error=str(exc)))
                continue
            latency = (time.monotonic() - started) * 1000
            results.append(
                ProbeResult(
                    index=status.index,
                    url=url,
                    reachable=response.ok,
                    status_code=response.status_code,
                    latency_ms=round(latency, 1),
                    error="" if response.ok else response.reason or "",
                )
            )
        return results
