"""Schemas Pydantic pour validation des donnees."""

from app.schemas.application import (
    ApplicationCreate,
    ApplicationDetailResponse,
    ApplicationResponse,
    AttendanceOutcomeEvent,
    DocumentResponse,
    DocumentUploadRequest,
    HealthCardResponse,
    PaymentOutcomeEvent,
)
from app.schemas.referral import (
    AttemptState,
    FinalizeRequest,
    LedgerEntry,
    NotificationPayload,
    ReferralHistoryItem,
    VerdictRequest,
    VerdictResult,
)
from app.schemas.renewal import EligibilityResult, RenewalCreate
from app.schemas.responses import (
    COMMON_RESPONSES,
    ProblemDetailResponse,
    ValidationErrorResponse,
    auth_responses,
    build_responses,
    create_responses,
    read_responses,
)

__all__ = [
    "COMMON_RESPONSES",
    "ApplicationCreate",
    "ApplicationDetailResponse",
    "ApplicationResponse",
    "AttemptState",
    "AttendanceOutcomeEvent",
    "DocumentResponse",
    "DocumentUploadRequest",
    "EligibilityResult",
    "FinalizeRequest",
    "HealthCardResponse",
    "LedgerEntry",
    "NotificationPayload",
    "PaymentOutcomeEvent",
    "ProblemDetailResponse",
    "ReferralHistoryItem",
    "RenewalCreate",
    "ValidationErrorResponse",
    "VerdictRequest",
    "VerdictResult",
    "auth_responses",
    "build_responses",
    "create_responses",
    "read_responses",
]
