"""
GDPR Compliance API Endpoints

Implements GDPR data subject rights for signed-in users:
- POST/GET /gdpr/consent: Update and read consent flags (Article 6, 7)
- GET /gdpr/consent/history: Every consent decision, newest first
- POST/GET /gdpr/data-deletion: Request erasure and list requests (Article 17)
- POST /gdpr/data-deletion/{request_id}/cancel: Withdraw during the grace period
- POST/GET /gdpr/data-export: Request an export and list requests (Article 15, 20)
"""

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from api.dependencies import get_gdpr_service, get_request_context
from compliance.gdpr import (
    EXPORT_ESTIMATED_COMPLETION,
    GRACE_PERIOD_LABEL,
    ConflictError,
    GDPRComplianceService,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from compliance.requests import MAX_LIST_LIMIT
from models.gdpr import (
    ConsentHistoryResponse,
    ConsentResponse,
    ConsentStatus,
    ConsentStatusResponse,
    ConsentUpdate,
    DeletionCancelResponse,
    DeletionRequestCreate,
    DeletionRequestListResponse,
    DeletionRequestResponse,
    DeletionRequestSummary,
    ExportRequestListResponse,
    ExportRequestResponse,
    ExportRequestSummary,
    RequestContext,
)


router = APIRouter()


# =============================================================================
# CONSENT ENDPOINTS (Article 6, 7)
# =============================================================================


@router.post(
    "/gdpr/consent",
    response_model=ConsentResponse,
    summary="Update consent preferences",
    description="Set any of the marketing, analytics and personalization flags"
)
async def update_consent(
    consent_update: ConsentUpdate,
    context: RequestContext = Depends(get_request_context),
    gdpr_service: GDPRComplianceService = Depends(get_gdpr_service),
):
    """
    Merge the submitted flags into the user's consent record.

    Flags left out of the body keep their current value.
    """
    try:
        await gdpr_service.update_consent(context, consent_update)
    except ValidationError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid consent data"
        )
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update consent preferences"
        )

    return ConsentResponse(
        success=True,
        message="Consent preferences updated successfully",
    )


@router.get(
    "/gdpr/consent",
    response_model=ConsentStatusResponse,
    summary="Get current consent status",
)
async def get_consent_status(
    context: RequestContext = Depends(get_request_context),
    gdpr_service: GDPRComplianceService = Depends(get_gdpr_service),
):
    """
    Current consent flags; every flag is false until the user chooses.
    """
    try:
        record = await gdpr_service.get_consent_status(context)
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get consent status"
        )

    return ConsentStatusResponse(
        consent=ConsentStatus(
            marketing=record.marketing,
            analytics=record.analytics,
            personalization=record.personalization,
            last_updated_at=record.last_updated_at,
        )
    )


@router.get(
    "/gdpr/consent/history",
    response_model=ConsentHistoryResponse,
    summary="Get consent history",
    description="Every consent decision of the current user, newest first"
)
async def get_consent_history(
    context: RequestContext = Depends(get_request_context),
    gdpr_service: GDPRComplianceService = Depends(get_gdpr_service),
):
    """
    Get complete consent history for the authenticated user.
    """
    try:
        entries = await gdpr_service.get_consent_history(context)
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get consent history"
        )

    return ConsentHistoryResponse(consents=entries, total_count=len(entries))


# =============================================================================
# DATA DELETION ENDPOINTS (Article 17)
# =============================================================================


@router.post(
    "/gdpr/data-deletion",
    response_model=DeletionRequestResponse,
    summary="Request deletion of all user data",
    description="Schedule erasure after a 30-day grace period (GDPR Article 17)"
)
async def request_data_deletion(
    deletion_request: DeletionRequestCreate = DeletionRequestCreate(),
    context: RequestContext = Depends(get_request_context),
    gdpr_service: GDPRComplianceService = Depends(get_gdpr_service),
):
    """
    Submit a right-to-erasure request.

    Only one request may be pending at a time; a second one returns 409.
    """
    try:
        request = await gdpr_service.request_deletion(context, deletion_request.reason)
    except ConflictError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A data deletion request is already pending"
        )
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process data deletion request"
        )

    return DeletionRequestResponse(
        success=True,
        message="Data deletion request submitted successfully",
        request_id=request.id,
        scheduled_deletion=request.scheduled_deletion,
        grace_period=GRACE_PERIOD_LABEL,
    )


@router.get(
    "/gdpr/data-deletion",
    response_model=DeletionRequestListResponse,
    summary="List data deletion requests",
)
async def list_data_deletion_requests(
    limit: int = Query(MAX_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    context: RequestContext = Depends(get_request_context),
    gdpr_service: GDPRComplianceService = Depends(get_gdpr_service),
):
    """Most recent deletion requests first"""
    try:
        requests = await gdpr_service.list_deletion_requests(context, limit)
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get deletion status"
        )

    return DeletionRequestListResponse(
        requests=[DeletionRequestSummary.model_validate(r) for r in requests]
    )


@router.post(
    "/gdpr/data-deletion/{request_id}/cancel",
    response_model=DeletionCancelResponse,
    summary="Cancel a pending data deletion request",
)
async def cancel_data_deletion(
    request_id: str = Path(..., max_length=64),
    context: RequestContext = Depends(get_request_context),
    gdpr_service: GDPRComplianceService = Depends(get_gdpr_service),
):
    """
    Withdraw a deletion request during its grace period.
    """
    try:
        request = await gdpr_service.cancel_deletion(context, request_id)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Deletion request not found"
        )
    except InvalidTransitionError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Deletion request is no longer pending"
        )
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to cancel data deletion request"
        )

    return DeletionCancelResponse(
        success=True,
        message="Data deletion request cancelled",
        request_id=request.id,
        status=request.status,
    )


# =============================================================================
# DATA EXPORT ENDPOINTS (Article 15, 20)
# =============================================================================


@router.post(
    "/gdpr/data-export",
    response_model=ExportRequestResponse,
    summary="Request an export of all user data",
)
async def request_data_export(
    context: RequestContext = Depends(get_request_context),
    gdpr_service: GDPRComplianceService = Depends(get_gdpr_service),
):
    """
    Open a data export request.

    The export is produced asynchronously; poll the list endpoint for the
    download link.
    """
    try:
        request = await gdpr_service.request_export(context)
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process data export request"
        )

    return ExportRequestResponse(
        success=True,
        message="Data export request submitted successfully",
        request_id=request.id,
        estimated_completion=EXPORT_ESTIMATED_COMPLETION,
    )


@router.get(
    "/gdpr/data-export",
    response_model=ExportRequestListResponse,
    summary="List data export requests",
)
async def list_data_export_requests(
    limit: int = Query(MAX_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    context: RequestContext = Depends(get_request_context),
    gdpr_service: GDPRComplianceService = Depends(get_gdpr_service),
):
    """Most recent export requests first, with download links once ready"""
    try:
        requests = await gdpr_service.list_export_requests(context, limit)
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get export status"
        )

    return ExportRequestListResponse(
        requests=[ExportRequestSummary.model_validate(r) for r in requests]
    )
