"""
RFC 9457 Problem Details pour HTTP APIs - Exceptions du workflow carte sanitaire.

Ce module réexporte les exceptions du module fastapi-errors-rfc9457 et ajoute
les erreurs propres au moteur de revue (précondition violée).

Taxonomie du moteur:
- NotFoundError (404): demande, document ou type de document introuvable
- ForbiddenError (403): l'appelant n'a pas le rôle requis ou n'est pas propriétaire
- PreconditionFailedError (412): invariant violé (transition invalide, renvoi non
  résolu en double, tentative périmée, revue incomplète, renouvellement inéligible)
- ValidationError (400): champs d'entrée malformés
"""

from fastapi_errors_rfc9457 import (
    ConflictError,
    ForbiddenError,
    InternalServerError,
    NotFoundError,
    ProblemDetail,
    RFC9457Exception,
    ServiceUnavailableError,
    UnauthorizedError,
    ValidationError,
)


class PreconditionFailedError(RFC9457Exception):
    """
    Exception levée lorsqu'une opération viole un invariant du workflow.

    Le moteur ne force jamais un état: toute transition invalide ou toute
    écriture concurrente perdante échoue avec cette erreur, sans mutation
    partielle.

    Attributes:
        status_code: Code HTTP 412 (Precondition Failed)
        problem_detail: Détails de l'erreur au format RFC 9457

    Example:
        ```python
        if document.review_status in OUTSTANDING_DOCUMENT_STATUSES:
            raise PreconditionFailedError(
                detail="Document already has an unresolved referral",
                instance=f"/api/v1/reviews/applications/{application_id}",
                reason="unresolved_referral",
            )
        ```
    """

    def __init__(
        self,
        detail: str,
        instance: str | None = None,
        reason: str | None = None,
        **extensions,
    ):
        """
        Initialise une exception de précondition avec détails RFC 9457.

        Args:
            detail: Description de l'invariant violé
            instance: URI identifiant l'occurrence spécifique de l'erreur
            reason: Code machine de la précondition (ex: "invalid_transition")
            **extensions: Membres d'extension RFC 9457 supplémentaires
        """
        if reason is not None:
            extensions["reason"] = reason
        super().__init__(
            status_code=412,
            title="Precondition Failed",
            detail=detail,
            type_uri="https://healthcard.app/errors/precondition-failed",
            instance=instance,
            **extensions,
        )
        self.reason = reason


__all__ = [
    "ConflictError",
    "ForbiddenError",
    "InternalServerError",
    "NotFoundError",
    "PreconditionFailedError",
    "ProblemDetail",
    "RFC9457Exception",
    "ServiceUnavailableError",
    "UnauthorizedError",
    "ValidationError",
]
