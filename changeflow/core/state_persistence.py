"""File-backed store for change states."""

import json
import stat
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from .change_state import ChangeState
from .exceptions import ChangeflowError
from .phase_state import ChangeStatus

PENDING_SUFFIX = ".escalation-pending.json"
PRE_DISPATCH_SUFFIX = ".pre-dispatch.json"


class StatePersistenceError(ChangeflowError):
    """Raised when state persistence operations fail."""

    pass


class ChangeStateStore:
    """
    Handles persistence of change states to disk.

    Active changes are stored as ``<root>/changes/<change_id>.json`` with a
    companion ``<change_id>.escalations.jsonl`` log. Archived changes move to
    ``<root>/archive/`` and are made read-only.

    Every write goes to a temp file first and is renamed into place, so a
    crash never leaves a half-written state file behind.
    """

    def __init__(self, root_dir: Optional[Path] = None):
        """
        Initialize the store.

        Args:
            root_dir: Storage root (default: .changeflow in the working dir)
        """
        if root_dir is None:
            root_dir = Path.cwd() / ".changeflow"

        self.root_dir = Path(root_dir)
        self.changes_dir = self.root_dir / "changes"
        self.archive_dir = self.root_dir / "archive"
        self._lock = threading.RLock()
        self._ensure_dirs()

    def _ensure_dirs(self) -> None:
        """Ensure the storage directories exist."""
        try:
            self.changes_dir.mkdir(parents=True, exist_ok=True)
            self.archive_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StatePersistenceError(
                f"Failed to create state directory {self.root_dir}: {e}"
            ) from e

    @staticmethod
    def _safe_id(change_id: str) -> str:
        # Sanitize change_id for filename
        return change_id.replace("/", "_").replace("\\", "_")

    def state_file(self, change_id: str) -> Path:
        """Path of the state file for an active change."""
        return self.changes_dir / f"{self._safe_id(change_id)}.json"

    def escalation_file(self, change_id: str) -> Path:
        """Path of the escalation log for an active change."""
        return self.changes_dir / f"{self._safe_id(change_id)}.escalations.jsonl"

    def archived_file(self, change_id: str) -> Path:
        """Path of the state file for an archived change."""
        return self.archive_dir / f"{self._safe_id(change_id)}.json"

    def _write_atomic(self, target: Path, data: bytes) -> None:
        temp_file = target.with_suffix(target.suffix + ".tmp")
        with open(temp_file, "wb") as f:
            f.write(data)
        temp_file.replace(target)

    # -------------------------------------------------------------------------
    # Read / write
    # -------------------------------------------------------------------------

    def exists(self, change_id: str) -> bool:
        return self.state_file(change_id).exists()

    def save(self, state: ChangeState) -> None:
        """
        Save a change state to disk.

        Derived fields are recomputed and invariants checked before the
        write, so an inconsistent state never reaches the file.

        Args:
            state: Change state to save

        Raises:
            ChangeStateError: If the state violates an invariant
            StatePersistenceError: If the write fails
        """
        state.refresh()
        state.validate_invariants()

        with self._lock:
            target = self.state_file(state.change_id)
            try:
                payload = state.model_dump_json(indent=2).encode("utf-8")
                self._write_atomic(target, payload)
            except OSError as e:
                raise StatePersistenceError(
                    f"Failed to save state for change {state.change_id}: {e}"
                ) from e

    def load(self, change_id: str) -> Optional[ChangeState]:
        """
        Load a change state from disk.

        Args:
            change_id: Change identifier

        Returns:
            ChangeState if found, None otherwise

        Raises:
            StatePersistenceError: If the file cannot be read or parsed
        """
        with self._lock:
            state_file = self.state_file(change_id)
            if not state_file.exists():
                return None
            return self._read(state_file, change_id)

    def load_archived(self, change_id: str) -> Optional[ChangeState]:
        """Load a change from the archive."""
        with self._lock:
            state_file = self.archived_file(change_id)
            if not state_file.exists():
                return None
            return self._read(state_file, change_id)

    def _read(self, state_file: Path, change_id: str) -> ChangeState:
        try:
            return ChangeState.model_validate_json(state_file.read_bytes())
        except (OSError, ValidationError) as e:
            raise StatePersistenceError(
                f"Failed to load state for change {change_id}: {e}"
            ) from e

    def require(self, change_id: str) -> ChangeState:
        """Load a change state, raising if it does not exist."""
        state = self.load(change_id)
        if state is None:
            raise StatePersistenceError(
                f"Change '{change_id}' not found in {self.changes_dir}. "
                f"Run 'changeflow setup {change_id}' first."
            )
        return state

    def list_change_ids(self, include_archived: bool = False) -> List[str]:
        """
        List all change IDs with persisted states.

        Args:
            include_archived: Also list archived changes

        Returns:
            Sorted list of change IDs
        """
        with self._lock:
            dirs = [self.changes_dir]
            if include_archived:
                dirs.append(self.archive_dir)

            change_ids = set()
            for directory in dirs:
                if not directory.exists():
                    continue
                for state_file in directory.glob("*.json"):
                    if state_file.name.endswith((PENDING_SUFFIX, PRE_DISPATCH_SUFFIX)):
                        continue
                    change_ids.add(state_file.stem)
            return sorted(change_ids)

    def load_all(self) -> Dict[str, ChangeState]:
        """Load every active change, skipping unreadable files."""
        states: Dict[str, ChangeState] = {}
        for change_id in self.list_change_ids():
            try:
                state = self.load(change_id)
            except StatePersistenceError:
                continue
            if state is not None:
                states[state.change_id] = state
        return states

    # -------------------------------------------------------------------------
    # Snapshot / restore
    # -------------------------------------------------------------------------

    def snapshot(self, change_id: str) -> bytes:
        """
        Capture the exact bytes of a change's state file.

        Raises:
            StatePersistenceError: If the change does not exist
        """
        with self._lock:
            try:
                return self.state_file(change_id).read_bytes()
            except OSError as e:
                raise StatePersistenceError(
                    f"Failed to snapshot change {change_id}: {e}"
                ) from e

    def restore(self, change_id: str, snapshot: bytes) -> None:
        """Write snapshot bytes back so the file is byte-for-byte identical."""
        with self._lock:
            try:
                self._write_atomic(self.state_file(change_id), snapshot)
            except OSError as e:
                raise StatePersistenceError(
                    f"Failed to restore change {change_id}: {e}"
                ) from e

    # -------------------------------------------------------------------------
    # Escalation log
    # -------------------------------------------------------------------------

    def append_escalation(self, change_id: str, event: BaseModel) -> None:
        """Append a resolved escalation event to the change's log."""
        with self._lock:
            try:
                with open(self.escalation_file(change_id), "a", encoding="utf-8") as f:
                    f.write(event.model_dump_json() + "\n")
            except OSError as e:
                raise StatePersistenceError(
                    f"Failed to record escalation for change {change_id}: {e}"
                ) from e

    def pending_escalation_file(self, change_id: str) -> Path:
        return self.changes_dir / f"{self._safe_id(change_id)}{PENDING_SUFFIX}"

    def save_pending_escalation(self, change_id: str, event: BaseModel) -> None:
        """Keep an unresolved escalation until someone decides on it."""
        with self._lock:
            try:
                self._write_atomic(
                    self.pending_escalation_file(change_id),
                    event.model_dump_json(indent=2).encode("utf-8"),
                )
            except OSError as e:
                raise StatePersistenceError(
                    f"Failed to save pending escalation for change {change_id}: {e}"
                ) from e

    def load_pending_escalation(self, change_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            path = self.pending_escalation_file(change_id)
            if not path.exists():
                return None
            try:
                return json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise StatePersistenceError(
                    f"Failed to read pending escalation for change {change_id}: {e}"
                ) from e

    def clear_pending_escalation(self, change_id: str) -> None:
        with self._lock:
            self.pending_escalation_file(change_id).unlink(missing_ok=True)

    def pre_dispatch_file(self, change_id: str) -> Path:
        return self.changes_dir / f"{self._safe_id(change_id)}{PRE_DISPATCH_SUFFIX}"

    def save_pre_dispatch(self, change_id: str, snapshot: bytes) -> None:
        """Keep the bytes a blocked phase started from, for a later abort."""
        with self._lock:
            try:
                self._write_atomic(self.pre_dispatch_file(change_id), snapshot)
            except OSError as e:
                raise StatePersistenceError(
                    f"Failed to save pre-dispatch state for change {change_id}: {e}"
                ) from e

    def load_pre_dispatch(self, change_id: str) -> Optional[bytes]:
        with self._lock:
            path = self.pre_dispatch_file(change_id)
            if not path.exists():
                return None
            try:
                return path.read_bytes()
            except OSError as e:
                raise StatePersistenceError(
                    f"Failed to read pre-dispatch state for change {change_id}: {e}"
                ) from e

    def clear_pre_dispatch(self, change_id: str) -> None:
        with self._lock:
            self.pre_dispatch_file(change_id).unlink(missing_ok=True)

    def read_escalations(self, change_id: str) -> List[Dict[str, Any]]:
        """Read escalation records for an active or archived change."""
        candidates = [
            self.escalation_file(change_id),
            self.archive_dir / self.escalation_file(change_id).name,
        ]
        records: List[Dict[str, Any]] = []
        with self._lock:
            for path in candidates:
                if not path.exists():
                    continue
                with open(path, "r", encoding="utf-8") as f:
                    for line in f:
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            records.append(json.loads(line))
                        except json.JSONDecodeError:
                            continue
        return records

    # -------------------------------------------------------------------------
    # Archive
    # -------------------------------------------------------------------------

    def archive(self, change_id: str) -> Path:
        """
        Move a finished change to the read-only archive.

        Args:
            change_id: Change identifier

        Returns:
            Path of the archived state file

        Raises:
            StatePersistenceError: If the change is missing, unfinished or
                already archived
        """
        with self._lock:
            if self.archived_file(change_id).exists():
                raise StatePersistenceError(f"Change '{change_id}' is already archived")

            state = self.require(change_id)
            if state.status != ChangeStatus.READY_TO_ARCHIVE:
                raise StatePersistenceError(
                    f"Change '{change_id}' is {state.status.value}, "
                    f"only ready_to_archive changes can be archived"
                )

            state.status = ChangeStatus.ARCHIVED
            target = self.archived_file(change_id)
            try:
                self._write_atomic(target, state.model_dump_json(indent=2).encode("utf-8"))
                self._make_read_only(target)

                escalations = self.escalation_file(change_id)
                if escalations.exists():
                    archived_log = self.archive_dir / escalations.name
                    escalations.replace(archived_log)
                    self._make_read_only(archived_log)

                self.state_file(change_id).unlink()
            except OSError as e:
                raise StatePersistenceError(
                    f"Failed to archive change {change_id}: {e}"
                ) from e

            return target

    @staticmethod
    def _make_read_only(path: Path) -> None:
        path.chmod(stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)
