"""Custom exceptions for firefleet."""

from __future__ import annotations

from typing import List, Optional


class FleetError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(FleetError):
    """Invalid environment variable or profile value."""


class PlanningError(FleetError):
    """Instance index (or requested fleet size) outside the supported range."""


class BindError(FleetError):
    """Network device or firewall rule could not be created."""

    def __init__(self, message: str, device: Optional[str] = None) -> None:
        super().__init__(message)
        self.device = device


class LaunchError(FleetError):
    """The hypervisor process could not be brought to a live state."""

    def __init__(
        self,
        message: str,
        stage: str = "launch",
        log_tail: Optional[List[str]] = None,
        pid: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.log_tail = log_tail or []
        self.pid = pid


class ReconciliationError(FleetError):
    """A persisted record no longer matches a live process or socket."""

    def __init__(self, message: str, index: int) -> None:
        super().__init__(message)
        self.index = index


class StateStoreError(FleetError):
    """State directory unreadable or unwritable."""


class AssetError(FleetError):
    """Kernel or rootfs image missing and could not be fetched."""
