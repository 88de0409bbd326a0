"""On-disk fleet state for firefleet.

Records live in ``<state>/pids/vm-<i>.json``; listing that directory is the
only way the fleet is discovered, so no manifest or fleet size is stored.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

from firefleet.constants import (
    INSTANCE_DIR_RE,
    PIDS_DIR_NAME,
    RECORD_FILE_RE,
    STATE_SUBDIRS,
    VMS_DIR_NAME,
)
from firefleet.exceptions import StateStoreError
from firefleet.models import InstanceRecord
from firefleet.utils import ensure_directory, log


class StateStore:
    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)
        self.pids_dir = self.state_dir / PIDS_DIR_NAME
        self.vms_dir = self.state_dir / VMS_DIR_NAME

    def record_path(self, index: int) -> Path:
        return self.pids_dir / f"vm-{index}.json"

    def ensure_layout(self) -> None:
        try:
            for name in STATE_SUBDIRS:
                ensure_directory(self.state_dir / name)
        except OSError as exc:
            raise StateStoreError(f"Cannot create state directories under {self.state_dir}: {exc}") from exc

    def remove_layout(self) -> None:
        for name in STATE_SUBDIRS:
            path = self.state_dir / name
            if not path.exists():
                continue
            try:
                shutil.rmtree(path)
            except OSError as exc:
                raise StateStoreError(f"Failed to remove {path}: {exc}") from exc

    @staticmethod
    def _list_indices(directory: Path, pattern) -> List[int]:
        try:
            names = os.listdir(directory)
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StateStoreError(f"Cannot list {directory}: {exc}") from exc
        indices = []
        for name in names:
            match = pattern.match(name)
            if match:
                indices.append(int(match.group(1)))
        return sorted(indices)

    def enumerate(self) -> List[int]:
        """Indices with a record file on disk (well-formed or not)."""
        return self._list_indices(self.pids_dir, RECORD_FILE_RE)

    def instance_dirs(self) -> List[int]:
        """Indices that own an instance directory, recorded or not."""
        return [
            index
            for index in self._list_indices(self.vms_dir, INSTANCE_DIR_RE)
            if (self.vms_dir / f"vm-{index}").is_dir()
        ]

    def read(self, index: int) -> Optional[InstanceRecord]:
        path = self.record_path(index)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StateStoreError(f"Cannot read {path}: {exc}") from exc
        try:
            record = InstanceRecord.from_dict(json.loads(raw.decode("utf-8")))
        except (ValueError, KeyError, TypeError) as exc:
            log("WARN", f"Ignoring malformed record {path}: {exc}")
            return None
        if record.index != index:
            log("WARN", f"Ignoring record {path}: it describes instance {record.index}")
            return None
        return record

    def write(self, index: int, record: InstanceRecord) -> None:
        path = self.record_path(index)
        try:
            ensure_directory(self.pids_dir)
            with tempfile.NamedTemporaryFile("w", delete=False, dir=self.pids_dir, suffix=".tmp") as tmp:
                json.dump(record.to_dict(), tmp, indent=2)
                tmp.write("\n")
            Path(tmp.name).replace(path)
        except OSError as exc:
            raise StateStoreError(f"Cannot write {path}: {exc}") from exc

    def delete(self, index: int) -> None:
        path = self.record_path(index)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StateStoreError(f"Cannot remove {path}: {exc}") from exc
