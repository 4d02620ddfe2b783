"""
Versioned records API endpoints for FarmSync.

Writes carry the version the client based them on; stale writes are rejected
with a 409 whose body contains both versions of the record.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from farmsync.server.conflict_guard import VersionedRecordStore

logger = logging.getLogger(__name__)
router = APIRouter()


# Request/Response Models
class RecordCreateRequest(BaseModel):
    """Request model for record creation."""
    fields: Dict[str, Any] = Field(default_factory=dict)
    client_id: Optional[str] = None


class RecordUpdateRequest(BaseModel):
    """Request model for a versioned update."""
    changes: Dict[str, Any]
    expected_updated_at: Union[str, int]


class RecordResponse(BaseModel):
    """Response model wrapping a single record."""
    record: Dict[str, Any]
    client_id: Optional[str] = None


class RecordListResponse(BaseModel):
    records: List[Dict[str, Any]]
    total_count: int


async def get_record_store(request: Request) -> VersionedRecordStore:
    """Get record store from app state."""
    return request.app.state.record_store


@router.get("/records/{entity_type}", response_model=RecordListResponse)
async def list_records(entity_type: str,
                       store: VersionedRecordStore = Depends(get_record_store)):
    records = [r.to_dict() for r in store.list(entity_type)]
    return RecordListResponse(records=records, total_count=len(records))


@router.get("/records/{entity_type}/{record_id}", response_model=RecordResponse)
async def get_record(entity_type: str, record_id: str,
                     store: VersionedRecordStore = Depends(get_record_store)):
    return RecordResponse(record=store.get(entity_type, record_id).to_dict())


@router.post("/records/{entity_type}", response_model=RecordResponse, status_code=201)
async def create_record(entity_type: str, request: RecordCreateRequest,
                        store: VersionedRecordStore = Depends(get_record_store)):
    """Create a record; the server assigns its id and version."""
    record = store.create(entity_type, request.fields)
    logger.info(f"Created {entity_type} {record.id}"
                + (f" for client id {request.client_id}" if request.client_id else ""))
    return RecordResponse(record=record.to_dict(), client_id=request.client_id)


@router.patch("/records/{entity_type}/{record_id}", response_model=RecordResponse)
async def update_record(entity_type: str, record_id: str, request: RecordUpdateRequest,
                        store: VersionedRecordStore = Depends(get_record_store)):
    """Apply changes if ``expected_updated_at`` is still the current version."""
    record = store.update(entity_type, record_id, request.changes, request.expected_updated_at)
    return RecordResponse(record=record.to_dict())


@router.delete("/records/{entity_type}/{record_id}", response_model=RecordResponse)
async def delete_record(entity_type: str, record_id: str,
                        expected_updated_at: Optional[str] = None,
                        store: VersionedRecordStore = Depends(get_record_store)):
    record = store.delete(entity_type, record_id, expected_updated_at)
    logger.info(f"Deleted {entity_type} {record_id}")
    return RecordResponse(record=record.to_dict())
