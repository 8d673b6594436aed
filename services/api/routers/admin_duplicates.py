"""
Admin duplicate tooling: scan for likely duplicates, preview a merge, merge.
Every executed merge is logged to AuditLog.
"""

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from services.api.duplicates.errors import (
    EntityNotFoundError,
    MergeTransactionError,
    SelfMergeError,
    UnknownEntityTypeError,
)
from services.api.duplicates.kinds import ENTITY_TYPES
from services.api.duplicates.merge import execute_merge, get_merge_preview
from services.api.duplicates.scanner import scan_for_duplicates
from services.api.middleware.audit import audit_action
from services.api.routers._admin_deps import get_db, require_admin_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/duplicates", tags=["admin-duplicates"])


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class MergeRequest(BaseModel):
    # Optional so missing values get the 400 messages below instead of a 422
    type: Optional[str] = None
    primaryId: Optional[str] = None
    duplicateId: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _require_entity_type(entity_type: Optional[str]) -> str:
    if not entity_type or entity_type not in ENTITY_TYPES:
        raise HTTPException(status_code=400, detail="Invalid or missing type parameter")
    return entity_type


def _parse_threshold(raw: Optional[str]) -> Optional[float]:
    """Blank means the configured default; anything else must be a number in [0, 1]."""
    if raw is None or not raw.strip():
        return None
    try:
        threshold = float(raw)
    except ValueError:
        threshold = math.nan
    if math.isnan(threshold) or not 0 <= threshold <= 1:
        raise HTTPException(status_code=400, detail="Threshold must be between 0 and 1")
    return threshold


def _validate_merge_request(body: MergeRequest) -> tuple[str, str, str]:
    entity_type = _require_entity_type(body.type)
    if not body.primaryId or not body.duplicateId:
        raise HTTPException(status_code=400, detail="Both primaryId and duplicateId are required")
    if body.primaryId == body.duplicateId:
        raise HTTPException(status_code=400, detail="Cannot merge an entity with itself")
    return entity_type, body.primaryId, body.duplicateId


def _to_http(exc: Exception) -> HTTPException:
    if isinstance(exc, EntityNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (UnknownEntityTypeError, SelfMergeError)):
        return HTTPException(status_code=400, detail=str(exc))
    # MergeTransactionError: details stay in the logs
    return HTTPException(status_code=500, detail="Failed to execute merge")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.get("")
async def find_duplicates(
    request: Request,
    entity_type: Optional[str] = Query(None, alias="type"),
    threshold: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_admin_user),
):
    """Likely duplicate pairs of one kind, highest similarity first."""
    entity_type = _require_entity_type(entity_type)
    scan = await scan_for_duplicates(db, entity_type, threshold=_parse_threshold(threshold))
    return jsonable_encoder(scan.to_dict())


@router.post("/preview")
async def preview_merge(
    body: MergeRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_admin_user),
):
    entity_type, primary_id, duplicate_id = _validate_merge_request(body)
    try:
        preview = await get_merge_preview(db, entity_type, primary_id, duplicate_id)
    except (EntityNotFoundError, UnknownEntityTypeError, SelfMergeError) as exc:
        raise _to_http(exc) from exc
    return jsonable_encoder(preview.to_dict())


@router.post("/merge")
async def merge_duplicates(
    body: MergeRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_admin_user),
):
    """
    Merge duplicateId into primaryId and audit the result.

    The audit `before` holds both records as the operator last saw them;
    `after` holds the merged record and the actual transferred counts.
    """
    entity_type, primary_id, duplicate_id = _validate_merge_request(body)
    try:
        preview = await get_merge_preview(db, entity_type, primary_id, duplicate_id)
        # End the read transaction; the merge opens its own
        await db.rollback()
        result = await execute_merge(db, entity_type, primary_id, duplicate_id)
    except (EntityNotFoundError, UnknownEntityTypeError, SelfMergeError, MergeTransactionError) as exc:
        raise _to_http(exc) from exc

    payload = jsonable_encoder(result.to_dict())
    await audit_action(
        db=db,
        request=request,
        actor_id=actor_id,
        action=f"{entity_type}.merge",
        target_type=entity_type,
        target_id=primary_id,
        before=jsonable_encoder({"primary": preview.primary, "duplicate": preview.duplicate}),
        after={
            "mergedEntity": payload["mergedEntity"],
            "transferredRelationships": payload["transferredRelationships"],
            "deletedId": duplicate_id,
        },
    )
    logger.info("Merge audited: %s %s by %s", entity_type, primary_id[:8], actor_id[:8])
    return payload
