"""
Schémas de réponses OpenAPI pour RFC 9457 Problem Details.

Ce module réexporte les schémas du module fastapi-errors-rfc9457 et
ajoute la réponse 412 propre aux transitions du workflow.
"""

from fastapi_errors_rfc9457 import (
    COMMON_RESPONSES,
    ProblemDetailResponse,
    ValidationErrorResponse,
    auth_responses,
    build_responses,
    create_responses,
    read_responses,
)

PRECONDITION_FAILED_RESPONSE = {
    412: {
        "model": ProblemDetailResponse,
        "description": "Invariant du workflow violé (transition invalide, renvoi non résolu, tentative périmée)",
    }
}


def workflow_responses() -> dict:
    """Réponses documentées d'une opération qui déclenche une transition."""
    return {**read_responses(), **PRECONDITION_FAILED_RESPONSE}


__all__ = [
    "COMMON_RESPONSES",
    "PRECONDITION_FAILED_RESPONSE",
    "ProblemDetailResponse",
    "ValidationErrorResponse",
    "auth_responses",
    "build_responses",
    "create_responses",
    "read_responses",
    "workflow_responses",
]
