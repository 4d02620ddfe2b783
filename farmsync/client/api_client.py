"""
HTTP transport for FarmSync Client.

This module sends queued mutations to the FarmSync records API and turns
every response into either the stored record or one of the dispatch error
types the coordinator understands. Retrying is left to the coordinator.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from farmsync.shared.exceptions import (
    ConflictError, ErrorCode, TransportError, ValidationError
)
from farmsync.shared.interfaces import IMutationTransport
from farmsync.shared.models import (
    ConflictDescriptor, MutationType, QueuedMutation, VersionedRecord, format_timestamp
)

logger = logging.getLogger(__name__)


def interpret_response(status: int, body: Dict[str, Any]) -> VersionedRecord:
    """
    Map an HTTP response to a record or a dispatch error.

    Raises:
        ConflictError: 409 carrying a conflict payload
        TransportError: 408, 429 and any 5xx
        ValidationError: Any other non-success status or a malformed body
    """
    if 200 <= status < 300:
        record_data = body.get('record')
        if not isinstance(record_data, dict):
            raise ValidationError(
                "Server response did not include a record",
                error_code=ErrorCode.VALIDATION_INVALID_FORMAT,
                context={'status_code': status}
            )
        return VersionedRecord.from_dict(record_data)

    error = body.get('error') if isinstance(body.get('error'), dict) else {}
    message = error.get('message') or body.get('detail') or f"Request failed ({status})"

    if status == 409 and isinstance(error.get('conflict'), dict):
        descriptor = ConflictDescriptor.from_dict(error['conflict'])
        raise ConflictError(message, conflict=descriptor)

    if status in (408, 429):
        raise TransportError(str(message), error_code=ErrorCode.NETWORK_TIMEOUT, status_code=status)

    if status >= 500:
        raise TransportError(str(message), error_code=ErrorCode.NETWORK_SERVER_ERROR, status_code=status)

    error_code = ErrorCode.RECORD_NOT_FOUND if status == 404 else ErrorCode.VALIDATION_REJECTED_BY_SERVER
    raise ValidationError(
        str(message),
        error_code=error_code,
        context={'status_code': status, 'server_code': error.get('code')}
    )


class HttpMutationTransport(IMutationTransport):
    """
    Dispatches mutations to ``/api/records`` over aiohttp.

    Create sends ``{"fields", "client_id"}``; update sends
    ``{"changes", "expected_updated_at"}``; delete passes the base version as
    a query parameter.
    """

    def __init__(self, server_url: str, timeout: float = 30.0):
        self.server_url = server_url.rstrip('/')
        self.timeout = ClientTimeout(total=timeout)
        self._session: Optional[ClientSession] = None

        logger.info(f"HTTP transport initialized for server: {self.server_url}")

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                keepalive_timeout=30,
                enable_cleanup_closed=True
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={
                    'User-Agent': 'FarmSyncClient/1.0',
                    'Content-Type': 'application/json'
                }
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    def _record_path(self, entity_type: str, record_id: Optional[str] = None) -> str:
        path = f"/api/records/{quote(entity_type, safe='')}"
        if record_id is not None:
            path += f"/{quote(record_id, safe='')}"
        return path

    def build_request(self, mutation: QueuedMutation) -> Tuple[str, str, Optional[Dict[str, Any]], Dict[str, str]]:
        """Method, path, JSON body and query parameters for a mutation."""
        base = format_timestamp(mutation.base_updated_at) if mutation.base_updated_at else None

        if mutation.mutation_type == MutationType.CREATE:
            body = {'fields': mutation.variables, 'client_id': mutation.entity_id}
            return 'POST', self._record_path(mutation.entity_type), body, {}

        if mutation.mutation_type == MutationType.UPDATE:
            if base is None:
                raise ValidationError(
                    f"Update of {mutation.entity_key} has no base version",
                    field_name='base_updated_at',
                    error_code=ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD
                )
            body = {'changes': mutation.variables, 'expected_updated_at': base}
            return 'PATCH', self._record_path(mutation.entity_type, mutation.entity_id), body, {}

        params = {'expected_updated_at': base} if base else {}
        return 'DELETE', self._record_path(mutation.entity_type, mutation.entity_id), None, params

    async def _send(self, method: str, path: str, data: Optional[Dict[str, Any]] = None,
                    params: Optional[Dict[str, str]] = None) -> Tuple[int, Dict[str, Any]]:
        """
        Perform one HTTP request.

        Returns:
            Status code and decoded JSON body (empty dict if none)

        Raises:
            TransportError: Connection failure or timeout
        """
        await self._ensure_session()
        url = f"{self.server_url}{path}"

        try:
            logger.debug(f"Making {method} request to {url}")
            async with self._session.request(
                method=method,
                url=url,
                json=data,
                params=params or None
            ) as response:
                try:
                    body = await response.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError, ValueError):
                    body = {'detail': await response.text()}
                return response.status, body if isinstance(body, dict) else {}

        except asyncio.TimeoutError as e:
            raise TransportError(
                f"Request to {url} timed out",
                error_code=ErrorCode.NETWORK_TIMEOUT,
                cause=e
            )
        except (ClientError, OSError) as e:
            raise TransportError(
                f"Could not reach {self.server_url}: {e}",
                error_code=ErrorCode.NETWORK_CONNECTION_FAILED,
                cause=e
            )

    async def dispatch(self, mutation: QueuedMutation) -> VersionedRecord:
        method, path, body, params = self.build_request(mutation)
        status, payload = await self._send(method, path, body, params)
        record = interpret_response(status, payload)
        logger.debug(f"{method} {path} -> {status} ({record.id} @ {format_timestamp(record.updated_at)})")
        return record

    async def fetch_record(self, entity_type: str, record_id: str) -> VersionedRecord:
        status, payload = await self._send('GET', self._record_path(entity_type, record_id))
        return interpret_response(status, payload)

    async def check_connectivity(self) -> bool:
        """True if the server's liveness probe answers."""
        try:
            status, _ = await self._send('GET', '/health/live')
        except TransportError as e:
            logger.debug(f"Connectivity check failed: {e}")
            return False
        return status == 200
