"""
Usage API Routes

Endpoints for reading usage against plan limits and recording consumption.
Limit checks happen before anything is counted; a refused action returns
429 with the resource, current usage and limit.
"""

import logging
from typing import Optional, Union

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from app.api.dependencies import EntitlementServiceDep, UserIdDep
from app.domain.entitlements import ResourceUsage, resource_usage
from app.domain.subscription import SubscriptionData, UsageResource
from app.infrastructure.exceptions import KoffersError


logger = logging.getLogger(__name__)

router = APIRouter()

Number = Union[int, float]


# =============================================================================
# Request/Response DTOs
# =============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ResourceUsageResponse(_CamelModel):
    """Usage of one resource against its limit."""
    used: Number
    limit: Number
    remaining: Number
    percent_used: int = Field(alias="percentUsed")
    approaching_limit: bool = Field(alias="approachingLimit")
    exceeded: bool

    @classmethod
    def from_usage(cls, usage: ResourceUsage) -> "ResourceUsageResponse":
        return cls(
            used=usage.used,
            limit=usage.limit,
            remaining=usage.remaining,
            percent_used=usage.percent_used,
            approaching_limit=usage.approaching_limit,
            exceeded=usage.exceeded,
        )


class UsageSummaryResponse(_CamelModel):
    """Response DTO for GET /usage."""
    ai_chat_messages: ResourceUsageResponse = Field(alias="aiChatMessages")
    storage_gb: ResourceUsageResponse = Field(alias="storageGB")
    institution_connections: ResourceUsageResponse = Field(alias="institutionConnections")


class AllowanceResponse(_CamelModel):
    """Whether a resource can be consumed right now."""
    resource: UsageResource
    allowed: bool
    used: Number
    limit: Number


class LiveUsageRequest(_CamelModel):
    """Externally measured live counts."""
    institution_connections: Optional[int] = Field(
        default=None, ge=0, alias="institutionConnections",
        description="Number of currently linked institutions"
    )
    storage_gb: Optional[float] = Field(
        default=None, ge=0, allow_inf_nan=False, alias="storageGB",
        description="Current file storage in gigabytes"
    )


def _internal_error(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=detail,
    )


# =============================================================================
# Usage Endpoints
# =============================================================================

@router.get("/usage", response_model=UsageSummaryResponse)
async def get_usage(user_id: UserIdDep, service: EntitlementServiceDep):
    """Current usage of every metered resource."""
    try:
        summary = await service.get_usage_summary(user_id)
    except KoffersError:
        raise
    except Exception as e:
        logger.error(f"Error fetching usage for user {user_id}: {e}")
        raise _internal_error("Failed to fetch usage")

    return UsageSummaryResponse(
        ai_chat_messages=ResourceUsageResponse.from_usage(
            summary[UsageResource.AI_CHAT_MESSAGES]
        ),
        storage_gb=ResourceUsageResponse.from_usage(summary[UsageResource.STORAGE_GB]),
        institution_connections=ResourceUsageResponse.from_usage(
            summary[UsageResource.INSTITUTION_CONNECTIONS]
        ),
    )


@router.get("/usage/{resource}/allowance", response_model=AllowanceResponse)
async def get_allowance(
    resource: UsageResource,
    user_id: UserIdDep,
    service: EntitlementServiceDep,
    amount: float = Query(default=1.0, gt=0, description="Units the caller wants to consume"),
):
    """
    Check whether the plan allows consuming ``amount`` more of a resource.

    Call this before linking an institution or starting an upload.
    """
    if not resource.is_fractional:
        if not amount.is_integer():
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"{resource.value} is counted in whole units",
            )
        amount = int(amount)

    try:
        allowed, current = await service.get_allowance(user_id, resource, amount)
    except KoffersError:
        raise
    except Exception as e:
        logger.error(f"Error checking {resource.value} allowance for user {user_id}: {e}")
        raise _internal_error("Failed to check allowance")

    return AllowanceResponse(
        resource=resource,
        allowed=allowed,
        used=current.used,
        limit=current.limit,
    )


@router.post("/usage/ai-chat-messages", response_model=ResourceUsageResponse)
async def record_ai_chat_message(user_id: UserIdDep, service: EntitlementServiceDep):
    """Count one AI chat message against the monthly allowance."""
    try:
        sub = await service.record_ai_chat_message(user_id)
    except KoffersError:
        raise
    except Exception as e:
        logger.error(f"Error recording AI chat message for user {user_id}: {e}")
        raise _internal_error("Failed to record AI chat message")

    return ResourceUsageResponse.from_usage(
        resource_usage(sub, UsageResource.AI_CHAT_MESSAGES)
    )


@router.put(
    "/usage/live",
    response_model=SubscriptionData,
    response_model_exclude_none=True,
)
async def set_live_usage(
    request: LiveUsageRequest,
    user_id: UserIdDep,
    service: EntitlementServiceDep,
):
    """Overwrite live institution and storage counts."""
    try:
        return await service.set_live_usage(
            user_id,
            institution_connections=request.institution_connections,
            storage_gb=request.storage_gb,
        )
    except KoffersError:
        raise
    except Exception as e:
        logger.error(f"Error updating live usage for user {user_id}: {e}")
        raise _internal_error("Failed to update usage")
