"""
Subscription API Routes

Read-only endpoints exposing the caller's plan, limits and access status.
Plan changes are written by billing handlers through EntitlementService.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from app.api.dependencies import EntitlementServiceDep, UserIdDep
from app.domain.entitlements import access_denied_message
from app.domain.subscription import SubscriptionData
from app.infrastructure.exceptions import KoffersError


logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Response DTOs
# =============================================================================

class AccessResponse(BaseModel):
    """Response DTO for the paid-feature access check."""
    model_config = ConfigDict(populate_by_name=True)

    has_access: bool = Field(alias="hasAccess")
    reason: Optional[str] = None
    message: Optional[str] = None


# =============================================================================
# Subscription Endpoints
# =============================================================================

@router.get(
    "/subscription",
    response_model=SubscriptionData,
    response_model_exclude_none=True,
)
async def get_subscription(user_id: UserIdDep, service: EntitlementServiceDep):
    """
    Get the current user's subscription with the monthly reset applied.

    Users without a stored subscription get the free-tier default.
    """
    try:
        return await service.get_subscription(user_id)
    except KoffersError:
        raise
    except Exception as e:
        logger.error(f"Error fetching subscription for user {user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch subscription"
        )


@router.get("/subscription/access", response_model=AccessResponse)
async def get_subscription_access(user_id: UserIdDep, service: EntitlementServiceDep):
    """Check whether the current user's plan grants paid-feature access."""
    try:
        result = await service.check_access(user_id)
    except KoffersError:
        raise
    except Exception as e:
        logger.error(f"Error checking subscription access for user {user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Unable to verify subscription status"
        )

    return AccessResponse(
        has_access=result.has_access,
        reason=result.reason,
        message=None if result.has_access else access_denied_message(result.reason),
    )
