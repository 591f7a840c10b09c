# Modèles SQLAlchemy pour core-healthcard-review
#
# - Application / HealthCard: demandes et cartes émises
# - DocumentType / DocumentUpload: catalogue et pièces déposées
# - DocumentReferralHistory / DocumentRejectionHistory: ledger des renvois
#   (table courante et table legacy, fusionnées par le repository)

from .application import Application, ApplicationStatus, HealthCard
from .document import DocumentReviewStatus, DocumentType, DocumentUpload
from .referral import DocumentReferralHistory, DocumentRejectionHistory

__all__ = [
    "Application",
    "ApplicationStatus",
    "DocumentReferralHistory",
    "DocumentRejectionHistory",
    "DocumentReviewStatus",
    "DocumentType",
    "DocumentUpload",
    "HealthCard",
]
