"""firefleet package."""

__all__ = [
    "assets",
    "cli",
    "config",
    "constants",
    "exceptions",
    "launcher",
    "models",
    "network",
    "planner",
    "state",
    "supervisor",
    "utils",
]
