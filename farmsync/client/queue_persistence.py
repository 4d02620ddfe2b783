"""
Queue persistence for FarmSync client.

Unsettled mutations are written to a JSON file so they survive a restart.
Writes go through a temporary file and an atomic rename, guarded by a lock
file so two processes never interleave.
"""

import copy
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from farmsync.shared.exceptions import ErrorCode, StorageError, ValidationError
from farmsync.shared.models import MutationStatus, QueuedMutation


logger = logging.getLogger(__name__)

QUEUE_FILE_VERSION = 1


class LockedJsonFile:
    """A JSON document on disk guarded by a sibling ``.lock`` file."""

    def __init__(self, path: Union[str, Path], lock_timeout: float = 5.0):
        self.path = Path(path).expanduser()
        self._lock_file = self.path.with_suffix(self.path.suffix + '.lock')
        self._lock_timeout = lock_timeout
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _acquire_lock(self) -> bool:
        """
        Acquire the lock file, clearing it if its owner is gone.

        Returns:
            True if the lock was acquired within the timeout
        """
        start_time = time.time()

        while time.time() - start_time < self._lock_timeout:
            try:
                with open(self._lock_file, 'x') as f:
                    f.write(str(os.getpid()))
                return True
            except FileExistsError:
                try:
                    with open(self._lock_file, 'r') as f:
                        pid = int(f.read().strip())
                    try:
                        os.kill(pid, 0)
                        time.sleep(0.05)
                        continue
                    except (OSError, ProcessLookupError):
                        # Stale lock
                        self._lock_file.unlink(missing_ok=True)
                        continue
                except (ValueError, FileNotFoundError):
                    self._lock_file.unlink(missing_ok=True)
                    continue

        logger.warning(f"Failed to acquire lock within {self._lock_timeout} seconds")
        return False

    def _release_lock(self) -> None:
        try:
            self._lock_file.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")

    def write(self, data: Dict[str, Any]) -> None:
        """
        Replace the document.

        Raises:
            StorageError: If the lock cannot be taken or the write fails
        """
        if not self._acquire_lock():
            raise StorageError(
                f"Could not lock {self.path}",
                error_code=ErrorCode.STORAGE_PERSISTENCE_FAILED
            )
        try:
            temp_file = self.path.with_suffix(self.path.suffix + '.tmp')
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            temp_file.replace(self.path)
        except OSError as e:
            raise StorageError(
                f"Failed to write {self.path}: {e}",
                error_code=ErrorCode.STORAGE_PERSISTENCE_FAILED,
                cause=e
            )
        finally:
            self._release_lock()

    def read(self) -> Optional[Dict[str, Any]]:
        """Current document, or None when the file does not exist."""
        if not self.path.exists():
            return None

        if not self._acquire_lock():
            raise StorageError(
                f"Could not lock {self.path}",
                error_code=ErrorCode.STORAGE_PERSISTENCE_FAILED
            )
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(
                f"Failed to read {self.path}: {e}",
                error_code=ErrorCode.STORAGE_PERSISTENCE_FAILED,
                cause=e
            )
        finally:
            self._release_lock()

    def delete(self) -> None:
        if not self._acquire_lock():
            raise StorageError(
                f"Could not lock {self.path}",
                error_code=ErrorCode.STORAGE_PERSISTENCE_FAILED
            )
        try:
            self.path.unlink(missing_ok=True)
        finally:
            self._release_lock()


class QueuePersistenceManager:
    """
    Saves and restores the unsettled part of the mutation queue.

    Succeeded mutations are never written. Everything restored comes back
    paused so nothing is dispatched until the coordinator resumes.
    """

    def __init__(self, path: Union[str, Path]):
        self._file = LockedJsonFile(path)
        logger.info(f"Queue persistence initialized: {self._file.path}")

    @property
    def path(self) -> Path:
        return self._file.path

    def snapshot(self, mutations: Iterable[QueuedMutation]) -> Dict[str, Any]:
        """Serializable document of every mutation that has not succeeded, in queue order."""
        return {
            'version': QUEUE_FILE_VERSION,
            'mutations': copy.deepcopy(
                [m.to_dict() for m in mutations if m.status != MutationStatus.SUCCESS]
            )
        }

    def write(self, snapshot: Dict[str, Any]) -> int:
        """
        Write a document built by ``snapshot``. Safe to call from a worker thread.

        Returns:
            Number of mutations written
        """
        self._file.write(snapshot)
        count = len(snapshot['mutations'])
        logger.debug(f"Saved {count} queued mutation(s)")
        return count

    def save(self, mutations: Iterable[QueuedMutation]) -> int:
        """
        Persist every mutation that has not succeeded, in queue order.

        Returns:
            Number of mutations written
        """
        return self.write(self.snapshot(mutations))

    def load(self) -> List[QueuedMutation]:
        """
        Restore persisted mutations, oldest first.

        Pending entries are restored paused. Failed entries keep their error
        status so they stay visible for a manual retry.
        """
        data = self._file.read()
        if not data:
            return []

        mutations = []
        for item in data.get('mutations', []):
            try:
                mutation = QueuedMutation.from_dict(item)
            except (KeyError, TypeError, ValueError, ValidationError) as e:
                logger.warning(f"Skipping unreadable queued mutation: {e}")
                continue

            if mutation.status != MutationStatus.ERROR:
                mutation.pause(blocked_on=mutation.blocked_on)
            mutations.append(mutation)

        mutations.sort(key=lambda m: m.submitted_at)
        logger.info(f"Restored {len(mutations)} queued mutation(s)")
        return mutations

    def clear(self) -> None:
        self._file.delete()
