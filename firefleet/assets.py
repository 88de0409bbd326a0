"""Kernel and rootfs acquisition for firefleet."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Tuple

from firefleet.constants import (
    ASSETS_DIR_NAME,
    ELF_MAGIC,
    EXT_SUPERBLOCK_MAGIC,
    EXT_SUPERBLOCK_MAGIC_OFFSET,
    KERNEL_MIN_BYTES,
    ROOTFS_MIN_BYTES,
)
from firefleet.exceptions import AssetError
from firefleet.models import FleetConfig
from firefleet.utils import download_file, ensure_directory, log


def _read_at(path: Path, offset: int, length: int) -> bytes:
    try:
        with open(path, "rb") as handle:
            handle.seek(offset)
            return handle.read(length)
    except OSError:
        return b""


def _size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


def kernel_problem(path: Path) -> str:
    """Describe why ``path`` is not a usable kernel, or return '' if it is."""
    if not path.is_file():
        return "missing"
    head = _read_at(path, 0, len(ELF_MAGIC))
    if head != ELF_MAGIC:
        # HTML error pages are the usual culprit behind redirected downloads.
        if head.startswith(b"<"):
            return "looks like HTML, not an ELF binary"
        return "not an ELF binary"
    size = _size(path)
    if size <= KERNEL_MIN_BYTES:
        return f"too small ({size} bytes)"
    return ""


def rootfs_problem(path: Path) -> str:
    """Describe why ``path`` is not a usable ext filesystem, or return '' if it is."""
    if not path.is_file():
        return "missing"
    magic = _read_at(path, EXT_SUPERBLOCK_MAGIC_OFFSET, len(EXT_SUPERBLOCK_MAGIC))
    if magic != EXT_SUPERBLOCK_MAGIC:
        return "not an ext2/3/4 filesystem"
    size = _size(path)
    if size <= ROOTFS_MIN_BYTES:
        return f"too small ({size} bytes)"
    return ""


class AssetStore:
    def __init__(self, cfg: FleetConfig) -> None:
        self.cfg = cfg
        self.kernel_path = cfg.kernel_path
        self.rootfs_path = cfg.rootfs_path

    def _ensure_one(
        self,
        label: str,
        path: Path,
        urls: List[str],
        problem: Callable[[Path], str],
        override: bool,
    ) -> Path:
        issue = problem(path)
        if not issue:
            log("SKIP", f"Valid {label} already exists ({_size(path)} bytes)")
            return path
        if override:
            raise AssetError(f"{label.capitalize()} {path} is unusable: {issue}")
        if issue != "missing":
            log("WARN", f"{label.capitalize()} {path} is unusable ({issue}); re-downloading")
        if not urls:
            raise AssetError(
                f"{label.capitalize()} {path} is {issue} and profile '{self.cfg.profile.name}' "
                "lists no download URL; build or copy the image there first"
            )
        ensure_directory(path.parent)
        candidate = path.with_name(path.name + ".tmp")
        for url in urls:
            try:
                download_file(url, candidate, label=f"Downloading {label}")
            except AssetError as exc:
                log("WARN", str(exc))
                continue
            candidate_issue = problem(candidate)
            if candidate_issue:
                log("WARN", f"Invalid {label} from {url}: {candidate_issue}")
                candidate.unlink(missing_ok=True)
                continue
            candidate.replace(path)
            log("SUCCESS", f"{label.capitalize()} ready: {path}")
            return path
        raise AssetError(f"Failed to obtain a valid {label} from {len(urls)} source(s)")

    def ensure_kernel(self) -> Path:
        return self._ensure_one(
            "kernel",
            self.kernel_path,
            self.cfg.profile.kernel_urls,
            kernel_problem,
            self.cfg.kernel_override,
        )

    def ensure_rootfs(self) -> Path:
        return self._ensure_one(
            "rootfs",
            self.rootfs_path,
            self.cfg.profile.rootfs_urls,
            rootfs_problem,
            self.cfg.rootfs_override,
        )

    def ensure(self) -> Tuple[Path, Path]:
        return self.ensure_kernel(), self.ensure_rootfs()

    def remove(self) -> List[Path]:
        """Delete downloaded images; explicit overrides are never removed."""
        removed = []
        for path, override in (
            (self.kernel_path, self.cfg.kernel_override),
            (self.rootfs_path, self.cfg.rootfs_override),
        ):
            if override or not path.exists():
                continue
            try:
                path.unlink()
            except OSError as exc:
                raise AssetError(f"Failed to remove {path}: {exc}") from exc
            removed.append(path)
        assets_dir = self.cfg.state_dir / ASSETS_DIR_NAME
        try:
            if assets_dir.is_dir() and not any(assets_dir.iterdir()):
                assets_dir.rmdir()
        except OSError as exc:
            raise AssetError(f"Failed to remove {assets_dir}: {exc}") from exc
        return removed
