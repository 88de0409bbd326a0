"""Utility functions for firefleet."""

from __future__ import annotations

import errno
import os
import signal
import socket
import subprocess
import tempfile
import time
from collections import deque
from pathlib import Path
from typing import List, Optional

try:
    import requests  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("requests is required but not installed") from exc

from firefleet.constants import _LOG_VERBOSE, LOG_TAIL_LINES, TRUTHY
from firefleet.exceptions import AssetError, ConfigError

_verbose = _LOG_VERBOSE


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _verbose:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "SKIP": "\033[0;36m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened read/write."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDWR)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def is_root() -> bool:
    return os.geteuid() == 0


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def pid_alive(pid: int) -> bool:
    """Return True if ``pid`` refers to a live (non-zombie) process."""
    if pid <= 0:
        return False
    # Reap our own exited children first; otherwise they linger as zombies
    # and still answer signal 0.
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass
    except OverflowError:
        return False
    else:
        if reaped == pid:
            return False
    try:
        os.kill(pid, 0)
    except (ProcessLookupError, OverflowError):
        return False
    except PermissionError:
        return True
    return True


def process_cmdline(pid: int) -> Optional[List[str]]:
    """Return the argv of ``pid`` from /proc, or None when unavailable."""
    try:
        raw = Path(f"/proc/{pid}/cmdline").read_bytes()
    except OSError:
        return None
    if not raw:
        return None
    return [part.decode("utf-8", errors="replace") for part in raw.split(b"\0") if part]


def send_signal(pid: int, sig: int = signal.SIGTERM) -> bool:
    """Signal ``pid``; return False if it no longer exists."""
    try:
        os.kill(pid, sig)
    except (ProcessLookupError, OverflowError):
        return False
    return True


def wait_for_exit(pid: int, timeout: float, interval: float = 0.1) -> bool:
    """Poll until ``pid`` is gone; return True if it exited within ``timeout``."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(interval)
    return not pid_alive(pid)


def terminate_pid(pid: int, timeout: float) -> bool:
    """SIGTERM, wait ``timeout``, then SIGKILL. Return True if the process was alive."""
    if not pid_alive(pid):
        return False
    send_signal(pid, signal.SIGTERM)
    if not wait_for_exit(pid, timeout):
        log("WARN", f"PID {pid} ignored SIGTERM; sending SIGKILL")
        send_signal(pid, signal.SIGKILL)
        wait_for_exit(pid, timeout)
    return True


def socket_is_live(path: Path, timeout: float = 0.2) -> bool:
    """Return True if a unix socket at ``path`` accepts connections."""
    if not path.exists() or not path.is_socket():
        return False
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
            client.settimeout(timeout)
            client.connect(str(path))
    except socket.timeout:
        return False
    except OSError as exc:
        if exc.errno not in {errno.ECONNREFUSED, errno.ENOENT}:
            log("DEBUG", f"Socket probe of {path} failed: {exc}")
        return False
    return True


def tail_file(path: Path, lines: int = LOG_TAIL_LINES) -> List[str]:
    """Return the last ``lines`` lines of a text file (empty if unreadable)."""
    try:
        with open(path, "r", errors="replace") as handle:
            return [line.rstrip("\n") for line in deque(handle, maxlen=lines)]
    except OSError:
        return []


def download_file(url: str, destination: Path, label: str = "Downloading", timeout: int = 60) -> None:
    """Stream ``url`` into ``destination`` through a temp file in the same directory."""
    log("INFO", f"{label}: {url}")
    try:
        response = requests.get(
            url,
            stream=True,
            timeout=timeout,
            headers={"User-Agent": "firefleet/1.0"},
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        raise AssetError(f"Failed to download {url}: {exc}") from exc

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            for chunk in response.iter_content(chunk_size=1024 * 256):
                if not chunk:
                    continue
                tmp.write(chunk)
                downloaded += len(chunk)
                downloaded_mb = downloaded / (1024 * 1024)
                if total_bytes:
                    pct = downloaded * 100 / total_bytes
                    print(f"\r  {pct:5.1f}% {downloaded_mb:.1f} MiB", end="", flush=True)
                else:
                    print(f"\r  {downloaded_mb:.1f} MiB downloaded", end="", flush=True)
            print(flush=True)
        except requests.RequestException as exc:
            tmp_path.unlink(missing_ok=True)
            raise AssetError(f"Download of {url} interrupted: {exc}") from exc
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
        finally:
            response.close()
    tmp_path.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
