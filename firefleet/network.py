"""TAP device and host NAT/forwarding management for firefleet.

This module is the only place that touches host-wide network state (the
``ip_forward`` sysctl and the iptables rule set). Every mutation is
check-then-add, which is safe because instances are bound one at a time;
binding in parallel would need a host-wide lock around each check/add pair.
"""

from __future__ import annotations

import getpass
import os
import subprocess
from typing import Iterable, List, Optional

from firefleet.constants import IP_FORWARD_PATH
from firefleet.exceptions import BindError
from firefleet.models import FleetConfig, InstancePlan
from firefleet.utils import log, run

RULE_COMMENT = "firefleet"
# Upper bound on duplicate deletions during teardown.
_MAX_RULE_DELETES = 16


def _owner() -> str:
    return os.environ.get("SUDO_USER") or getpass.getuser()


class NetworkBinder:
    def __init__(self, cfg: FleetConfig) -> None:
        self.use_sudo = cfg.use_sudo
        self._egress: Optional[str] = None

    def _priv(self, cmd: List[str]) -> List[str]:
        return ["sudo", *cmd] if self.use_sudo else cmd

    def _exec(self, cmd: List[str], device: Optional[str] = None) -> subprocess.CompletedProcess:
        try:
            return run(self._priv(cmd), capture_output=True)
        except FileNotFoundError as exc:
            raise BindError(f"Command not found: {cmd[0]} ({exc})", device=device) from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip() or f"exit status {exc.returncode}"
            raise BindError(f"'{' '.join(cmd)}' failed: {detail}", device=device) from exc

    def _probe(self, cmd: List[str], privileged: bool = False) -> subprocess.CompletedProcess:
        full = self._priv(cmd) if privileged else cmd
        try:
            return run(full, check=False, capture_output=True)
        except FileNotFoundError as exc:
            raise BindError(f"Command not found: {cmd[0]} ({exc})") from exc

    # -- devices ----------------------------------------------------------

    def device_exists(self, name: str) -> bool:
        return self._probe(["ip", "link", "show", "dev", name]).returncode == 0

    def device_addresses(self, name: str) -> List[str]:
        result = self._probe(["ip", "-o", "-4", "addr", "show", "dev", name])
        addresses = []
        for line in (result.stdout or "").splitlines():
            parts = line.split()
            if "inet" in parts:
                idx = parts.index("inet")
                if idx + 1 < len(parts):
                    addresses.append(parts[idx + 1])
        return addresses

    def _create_device(self, plan: InstancePlan) -> None:
        name = plan.device_name
        self._exec(["ip", "tuntap", "add", "dev", name, "mode", "tap", "user", _owner()], device=name)
        try:
            self._exec(["ip", "addr", "add", plan.gateway_address, "dev", name], device=name)
            self._exec(["ip", "link", "set", "dev", name, "up"], device=name)
        except BindError:
            # Never leave a half-configured device behind for the next bind to trust.
            self._probe(["ip", "link", "del", name], privileged=True)
            raise
        log("INFO", f"Created {name} ({plan.gateway_address})")

    def bind(self, plan: InstancePlan) -> None:
        name = plan.device_name
        if self.device_exists(name):
            log("SKIP", f"TAP interface {name} already exists")
            addresses = self.device_addresses(name)
            if plan.gateway_address not in addresses:
                log(
                    "WARN",
                    f"{name} exists without {plan.gateway_address} "
                    f"(has: {', '.join(addresses) or 'none'}); leaving it as is",
                )
        else:
            self._create_device(plan)
        self.ensure_forwarding()
        self.ensure_masquerade()
        self.ensure_forward_rules(name)

    def unbind(self, plan: InstancePlan) -> None:
        self.unbind_device(plan.device_name)

    def unbind_device(self, name: str) -> None:
        if not self.device_exists(name):
            log("DEBUG", f"{name} already absent")
            return
        self._exec(["ip", "link", "del", name], device=name)
        log("INFO", f"Removed {name}")

    # -- host-wide state --------------------------------------------------

    def forwarding_enabled(self) -> bool:
        try:
            return IP_FORWARD_PATH.read_text().strip() == "1"
        except OSError:
            return False

    def ensure_forwarding(self) -> None:
        if self.forwarding_enabled():
            return
        self._exec(["sysctl", "-w", "net.ipv4.ip_forward=1"])
        log("INFO", "Enabled IPv4 forwarding")

    def egress_device(self) -> Optional[str]:
        if self._egress is not None:
            return self._egress
        result = self._probe(["ip", "route", "show", "default"])
        for line in (result.stdout or "").splitlines():
            parts = line.split()
            if "default" in parts and "dev" in parts:
                idx = parts.index("dev")
                if idx + 1 < len(parts):
                    self._egress = parts[idx + 1]
                    return self._egress
        return None

    def _rule_present(self, table: str, chain: str, spec: List[str]) -> bool:
        cmd = ["iptables", "-t", table, "-C", chain, *spec]
        return self._probe(cmd, privileged=True).returncode == 0

    def _ensure_rule(self, table: str, chain: str, spec: List[str], device: Optional[str] = None) -> bool:
        if self._rule_present(table, chain, spec):
            return False
        self._exec(["iptables", "-t", table, "-A", chain, *spec], device=device)
        return True

    def _delete_rule(self, table: str, chain: str, spec: List[str]) -> int:
        removed = 0
        while removed < _MAX_RULE_DELETES and self._rule_present(table, chain, spec):
            result = self._probe(["iptables", "-t", table, "-D", chain, *spec], privileged=True)
            if result.returncode != 0:
                log("WARN", f"Could not delete {table}/{chain} rule {' '.join(spec)}: {(result.stderr or '').strip()}")
                break
            removed += 1
        return removed

    @staticmethod
    def _tagged(spec: List[str]) -> List[str]:
        return [*spec, "-m", "comment", "--comment", RULE_COMMENT]

    def _masquerade_spec(self, egress: str) -> List[str]:
        return self._tagged(["-o", egress, "-j", "MASQUERADE"])

    def _forward_specs(self, device: str) -> List[List[str]]:
        return [
            self._tagged(["-i", device, "-j", "ACCEPT"]),
            self._tagged(["-o", device, "-j", "ACCEPT"]),
        ]

    def ensure_masquerade(self) -> None:
        egress = self.egress_device()
        if egress is None:
            log("WARN", "No default route found; skipping NAT setup")
            return
        if self._ensure_rule("nat", "POSTROUTING", self._masquerade_spec(egress)):
            log("INFO", f"Added MASQUERADE rule for {egress}")

    def ensure_forward_rules(self, device: str) -> None:
        for spec in self._forward_specs(device):
            self._ensure_rule("filter", "FORWARD", spec, device=device)

    def release_shared(self, device_names: Iterable[str]) -> None:
        """Remove the forwarding and NAT rules added for a fleet; forwarding stays enabled."""
        removed = 0
        for device in device_names:
            for spec in self._forward_specs(device):
                removed += self._delete_rule("filter", "FORWARD", spec)
        egress = self.egress_device()
        if egress is not None:
            removed += self._delete_rule("nat", "POSTROUTING", self._masquerade_spec(egress))
        if removed:
            log("INFO", f"Removed {removed} firewall rule(s)")
