"""
Internal API Endpoints

API-key-protected endpoints for the scheduler, the export worker and operators:
- process-deletions: Run the deletion sweep for requests past their grace period
- exports/{id}/ready, exports/{id}/failed: Export worker callbacks
- exports/{id}/payload: Data collected for an export
- audit: Query the audit trail
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query

import structlog

from api.dependencies import get_gdpr_service, get_sweep_service, verify_api_key
from compliance.gdpr import (
    DeletionSweepService,
    GDPRComplianceService,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from models.gdpr import (
    AuditAction,
    AuditLogResponse,
    ExportPayload,
    ExportReadyRequest,
    ExportRequestSummary,
    SweepResult,
)

logger = structlog.get_logger(__name__)

router = APIRouter(
    dependencies=[Depends(verify_api_key)],
)


def _export_http_error(e: Exception, request_id: str) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail="Export request not found")
    if isinstance(e, InvalidTransitionError):
        return HTTPException(status_code=409, detail="Export request is no longer pending")
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail="Invalid request data")
    logger.error("export_callback_failed", request_id=request_id, error=str(e))
    return HTTPException(status_code=500, detail="Failed to update export request")


@router.post("/gdpr/process-deletions", response_model=SweepResult, tags=["Internal"])
async def process_deletions(
    sweep: DeletionSweepService = Depends(get_sweep_service),
):
    """
    Erase the data of every user whose deletion grace period has elapsed.
    """
    try:
        return await sweep.process_due_deletions()
    except Exception as e:
        logger.error("process_deletions_failed", error=str(e))
        raise HTTPException(status_code=500, detail="Deletion sweep failed")


@router.post(
    "/gdpr/exports/{request_id}/ready",
    response_model=ExportRequestSummary,
    tags=["Internal"],
)
async def mark_export_ready(
    body: ExportReadyRequest,
    request_id: str = Path(..., max_length=64),
    gdpr_service: GDPRComplianceService = Depends(get_gdpr_service),
):
    """Record the download URL of a finished export"""
    try:
        request = await gdpr_service.complete_export(request_id, body.download_url)
    except Exception as e:
        raise _export_http_error(e, request_id)
    return ExportRequestSummary.model_validate(request)


@router.post(
    "/gdpr/exports/{request_id}/failed",
    response_model=ExportRequestSummary,
    tags=["Internal"],
)
async def mark_export_failed(
    request_id: str = Path(..., max_length=64),
    gdpr_service: GDPRComplianceService = Depends(get_gdpr_service),
):
    """Record that an export could not be produced"""
    try:
        request = await gdpr_service.fail_export(request_id)
    except Exception as e:
        raise _export_http_error(e, request_id)
    return ExportRequestSummary.model_validate(request)


@router.get(
    "/gdpr/exports/{request_id}/payload",
    response_model=ExportPayload,
    tags=["Internal"],
)
async def get_export_payload(
    request_id: str = Path(..., max_length=64),
    gdpr_service: GDPRComplianceService = Depends(get_gdpr_service),
):
    """
    Collect the user's data for an export request.

    Includes consent flags, deletion and export history, and the audit trail.
    """
    try:
        return await gdpr_service.build_export_payload(request_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Export request not found")
    except Exception as e:
        logger.error("export_payload_failed", request_id=request_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to build export payload")


@router.get("/audit", response_model=AuditLogResponse, tags=["Internal"])
async def query_audit_log(
    user_id: Optional[str] = Query(None, max_length=64),
    action: Optional[AuditAction] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    gdpr_service: GDPRComplianceService = Depends(get_gdpr_service),
):
    """Audit entries, newest first, optionally filtered by user and action"""
    try:
        entries, total = await gdpr_service.query_audit_log(
            user_id=user_id, action=action, limit=limit, offset=offset
        )
    except Exception as e:
        logger.error("audit_query_failed", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to query audit log")

    return AuditLogResponse(entries=entries, total=total)
