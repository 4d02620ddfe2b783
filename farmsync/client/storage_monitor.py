"""
Local storage monitoring for the offline mutation queue.

Queued mutations are persisted to disk, so the coordinator checks available
space before accepting more work and refuses new writes once the disk holding
the queue is nearly full.
"""

import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union


logger = logging.getLogger(__name__)


class StorageStatus(Enum):
    """Storage pressure levels, in increasing severity."""
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class StorageThresholds:
    """Percentages at which each status begins (inclusive)."""
    warning: float = 70
    critical: float = 85
    blocked: float = 95

    def __post_init__(self):
        if not (0 <= self.warning <= self.critical <= self.blocked <= 100):
            raise ValueError(
                "Storage thresholds must satisfy 0 <= warning <= critical <= blocked <= 100"
            )


DEFAULT_THRESHOLDS = StorageThresholds()


def get_storage_status(percentage: float,
                       thresholds: StorageThresholds = DEFAULT_THRESHOLDS) -> StorageStatus:
    if percentage >= thresholds.blocked:
        return StorageStatus.BLOCKED
    if percentage >= thresholds.critical:
        return StorageStatus.CRITICAL
    if percentage >= thresholds.warning:
        return StorageStatus.WARNING
    return StorageStatus.OK


def can_queue_mutation(percentage: float,
                       thresholds: StorageThresholds = DEFAULT_THRESHOLDS) -> bool:
    return get_storage_status(percentage, thresholds) != StorageStatus.BLOCKED


_UNITS = ['B', 'KB', 'MB', 'GB', 'TB']


def format_bytes(num_bytes: int) -> str:
    """
    Human-readable size using 1024-based units.

    >>> format_bytes(0)
    '0 B'
    >>> format_bytes(1536)
    '1.5 KB'
    """
    if num_bytes <= 0:
        return "0 B"

    exponent = 0
    value = float(num_bytes)
    while value >= 1024 and exponent < len(_UNITS) - 1:
        value /= 1024
        exponent += 1
    value = round(value, 1)
    if value == int(value):
        return f"{int(value)} {_UNITS[exponent]}"
    return f"{value} {_UNITS[exponent]}"


@dataclass
class StorageEstimate:
    """Disk usage of the volume that holds the queue."""
    usage: int
    quota: int
    percentage: float
    status: StorageStatus

    def describe(self) -> str:
        return (f"{format_bytes(self.usage)} of {format_bytes(self.quota)} used "
                f"({self.percentage:.1f}%, {self.status.value})")


class StorageMonitor:
    """Reports disk pressure for the queue's directory."""

    def __init__(self, path: Union[str, Path],
                 thresholds: Optional[StorageThresholds] = None):
        self._path = Path(path).expanduser()
        self.thresholds = thresholds or DEFAULT_THRESHOLDS

    def _existing_path(self) -> Path:
        path = self._path
        while not path.exists() and path != path.parent:
            path = path.parent
        return path

    def estimate(self) -> StorageEstimate:
        usage = shutil.disk_usage(self._existing_path())
        percentage = (usage.used / usage.total * 100.0) if usage.total else 0.0
        status = get_storage_status(percentage, self.thresholds)

        estimate = StorageEstimate(
            usage=usage.used,
            quota=usage.total,
            percentage=percentage,
            status=status
        )
        if status in (StorageStatus.CRITICAL, StorageStatus.BLOCKED):
            logger.warning(f"Storage pressure: {estimate.describe()}")
        return estimate

    def can_queue(self) -> bool:
        return self.estimate().status != StorageStatus.BLOCKED
