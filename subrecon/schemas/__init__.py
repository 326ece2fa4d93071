"""
Pydantic Schemas
================

Request/response schemas for API validation.
"""

from subrecon.schemas.common import ErrorDetail, ErrorResponse, HealthResponse
from subrecon.schemas.subscription import (
    RestoreRequest,
    SubscriptionStatusResponse,
    ValidatePurchaseRequest,
    ValidatePurchaseResponse,
    WebhookAckResponse,
)

__all__ = [
    "ErrorDetail",
    "ErrorResponse",
    "HealthResponse",
    "RestoreRequest",
    "SubscriptionStatusResponse",
    "ValidatePurchaseRequest",
    "ValidatePurchaseResponse",
    "WebhookAckResponse",
]
