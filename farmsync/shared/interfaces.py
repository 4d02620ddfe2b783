"""
Collaborator interfaces for FarmSync.

The mutation queue coordinator consumes a clock, a connectivity signal and a
transport supplied by the surrounding application. These abstract interfaces
define what each must provide.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from .models import QueuedMutation, VersionedRecord, utc_now


class IClock(ABC):
    """Source of the current instant."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""
        pass


class SystemClock(IClock):
    """Wall clock."""

    def now(self) -> datetime:
        return utc_now()


class IConnectivityMonitor(ABC):
    """Externally maintained online/offline signal."""

    @abstractmethod
    def is_online(self) -> bool:
        """Return True while the client believes it can reach the server."""
        pass


class StaticConnectivity(IConnectivityMonitor):
    """Connectivity flag toggled by the host application."""

    def __init__(self, online: bool = True):
        self._online = online

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        self._online = online


class IMutationTransport(ABC):
    """Sends a queued mutation to the server."""

    @abstractmethod
    async def dispatch(self, mutation: QueuedMutation) -> VersionedRecord:
        """
        Apply a mutation on the server.

        Returns:
            The record as stored by the server after the write

        Raises:
            ConflictError: The server holds a newer version than the base
            TransportError: Timeout, 5xx or connectivity loss
            ValidationError: The server rejected the payload
        """
        pass
