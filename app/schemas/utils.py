"""Annotations Pydantic réutilisables pour validation.

Ce module centralise les types annotés pour assurer la cohérence
de la validation à travers tous les schémas Pydantic du service.
"""

from typing import Annotated

from pydantic import Field, StringConstraints

# Types de base avec validation
PositiveInt = Annotated[int, Field(gt=0, description="Entier positif")]
NonNegativeInt = Annotated[int, Field(ge=0, description="Entier non-négatif")]

# Chaînes avec contraintes
NonEmptyStr = Annotated[str, StringConstraints(min_length=1, strip_whitespace=True)]
PersonName = Annotated[
    str, StringConstraints(min_length=1, max_length=100, strip_whitespace=True)
]

# Identifiants
ApplicationId = Annotated[int, Field(gt=0, description="ID unique de la demande")]
DocumentTypeId = Annotated[int, Field(gt=0, description="ID du type de document")]
HealthCardId = Annotated[int, Field(gt=0, description="ID de la carte sanitaire")]

# Ledger: numéro de tentative déjà enregistré (0 = aucun renvoi)
AttemptCount = Annotated[int, Field(ge=0, le=3, description="Nombre de tentatives connues")]

# Référence opaque vers le stockage de fichiers externe
FileReference = Annotated[
    str,
    StringConstraints(min_length=1, max_length=500, strip_whitespace=True),
    Field(description="Référence du fichier dans le stockage externe"),
]

# Données démographiques
AgeYears = Annotated[int, Field(ge=16, le=120, description="Âge en années")]
Remarks = Annotated[str, Field(max_length=2000, description="Remarques de l'agent")]
