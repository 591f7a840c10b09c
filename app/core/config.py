import json
from typing import Literal, TypeAlias

from opentelemetry.sdk.resources import Resource
from pydantic import AnyHttpUrl, PostgresDsn, field_validator
from pydantic_settings import BaseSettings

# Type personnalisé pour les listes configurables depuis l'environnement
ConfigurableList: TypeAlias = str | list[str] | list[AnyHttpUrl]


def parse_list_from_env(value: ConfigurableList, field_name: str = "field") -> list[str]:
    """
    Fonction utilitaire pour parser une liste depuis une variable d'environnement.

    Supporte les formats suivants:
    - Liste Python directe: ['val1', 'val2']
    - Format JSON: '["val1", "val2"]'
    - Format virgules: "val1,val2,val3"
    - Chaîne vide: "" → []

    Args:
        value: La valeur à parser (chaîne ou liste)
        field_name: Nom du champ pour les messages d'erreur

    Returns:
        Liste de chaînes parsée

    Raises:
        ValueError: Si le format n'est pas valide
    """
    if isinstance(value, list):
        return value
    elif isinstance(value, str):
        value = value.strip()
        if value.startswith("[") and value.endswith("]"):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                raise ValueError(f"Format JSON invalide pour {field_name}: {value}")
        elif value:
            return [item.strip() for item in value.split(",") if item.strip()]
        else:
            return []
    raise ValueError(f"Valeur invalide pour {field_name}: {value}")


class Settings(BaseSettings):
    PROJECT_NAME: str = "core-healthcard-review"
    PROJECT_SLUG: str = "healthcard"
    VERSION: str = "0.1.0"
    DESCRIPTION: str = "Workflow de revue des demandes de carte sanitaire et de renvois"

    # API Versioning
    API_VERSIONS: list[str] = ["v1"]
    API_LATEST_VERSION: str = "v1"

    # Environnement
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # Keycloak Authentication (bearer-only)
    KEYCLOAK_SERVER_URL: str
    KEYCLOAK_REALM: str
    KEYCLOAK_CLIENT_ID: str
    # Clients frontend autorisés (claim azp)
    KEYCLOAK_ALLOWED_CLIENTS: ConfigurableList = [
        "apps-healthcard-mobile",
        "apps-healthcard-webadmin",
    ]

    # Rôles autorisés à rendre un verdict sur un document
    REVIEWER_ROLES: ConfigurableList = ["admin", "inspector"]

    @field_validator("KEYCLOAK_ALLOWED_CLIENTS", mode="before")
    @classmethod
    def assemble_allowed_clients(cls, v: ConfigurableList) -> list[str]:
        """Parse KEYCLOAK_ALLOWED_CLIENTS depuis une variable d'environnement."""
        return parse_list_from_env(v, "KEYCLOAK_ALLOWED_CLIENTS")

    @field_validator("REVIEWER_ROLES", mode="before")
    @classmethod
    def assemble_reviewer_roles(cls, v: ConfigurableList) -> list[str]:
        """Parse REVIEWER_ROLES depuis une variable d'environnement."""
        return parse_list_from_env(v, "REVIEWER_ROLES")

    # OpenTelemetry
    OTEL_SERVICE_NAME: str
    OTEL_EXPORTER_OTLP_ENDPOINT: str
    OTEL_EXPORTER_OTLP_PROTOCOL: str
    OTEL_EXPORTER_OTLP_INSECURE: bool
    OTEL_LOG_LEVEL: str = "info"
    OTEL_LOGS_EXPORTER: Literal["otlp", "console"] = "otlp"
    OTEL_TRACES_EXPORTER: Literal["otlp", "console"] = "otlp"
    OTEL_METRICS_EXPORTER: Literal["otlp", "console"] = "otlp"
    OTEL_PYTHON_LOG_LEVEL: str = "info"
    OTEL_PYTHON_LOGGING_AUTO_INSTRUMENTATION_ENABLED: bool = True
    OTEL_PYTHON_LOG_CORRELATION: bool = True
    OTEL_PYTHON_LOG_FORMAT: str = "%(asctime)s %(levelname)s [%(name)s] [%(filename)s:%(lineno)d] [trace_id=%(otelTraceID)s span_id=%(otelSpanID)s resource.service.name=%(otelServiceName)s trace_sampled=%(otelTraceSampled)s] - %(message)s"

    # CORS
    # Définir dans .env, ex: ALLOWED_ORIGINS='["http://localhost:3000","https://admin.example.com"]'
    ALLOWED_ORIGINS: ConfigurableList = []
    TRUSTED_HOSTS: ConfigurableList = ["localhost", "127.0.0.1"]

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: ConfigurableList) -> list[str]:
        """
        Permet de définir ALLOWED_ORIGINS de plusieurs façons:
        - Chaîne séparée par des virgules: "http://localhost:3000,https://admin.example.com"
        - Format JSON: '["http://localhost:3000","https://admin.example.com"]'
        - Liste Python directe (si déjà parsée)
        """
        return parse_list_from_env(v, "ALLOWED_ORIGINS")

    @field_validator("TRUSTED_HOSTS", mode="before")
    @classmethod
    def assemble_trusted_hosts(cls, v: ConfigurableList) -> list[str]:
        """Parse TRUSTED_HOSTS depuis une variable d'environnement."""
        return parse_list_from_env(v, "TRUSTED_HOSTS")

    # Base de données PostgreSQL avec SQLAlchemy 2.0
    SQLALCHEMY_DATABASE_URI: PostgresDsn

    # Redis Messaging
    REDIS_URL: str = "redis://localhost:6379"
    REDIS_DB: int = 0
    EVENTS_ENABLED: bool = True

    # Flux consommés (collaborateurs externes)
    PAYMENT_OUTCOME_SUBJECT: str = "payments.outcome"
    ORIENTATION_ATTENDANCE_SUBJECT: str = "orientations.attendance"

    # Carte sanitaire
    HEALTH_CARD_VALIDITY_DAYS: int = 365
    HEALTH_CARD_NUMBER_PREFIX: str = "HC"

    # Ressource OpenTelemetry
    @property
    def OTEL_RESOURCE_ATTRIBUTES(self) -> Resource:  # noqa: N802
        """Crée l'objet Resource pour OpenTelemetry avec les attributs du service."""
        return Resource(
            attributes={
                "service.name": self.OTEL_SERVICE_NAME,
                "service.version": self.VERSION,
                "service.environment": self.ENVIRONMENT,
                "service.debug": str(self.DEBUG).lower(),
            }
        )

    def get_api_prefix(self, version: str | None = None) -> str:
        """
        Get API prefix for a specific version.

        Args:
            version: API version (e.g., "v1", "v2"). Defaults to latest.

        Returns:
            API prefix string (e.g., "/api/v1")
        """
        version = version or self.API_LATEST_VERSION
        return f"/api/{version}"

    class Config:
        case_sensitive = True
        env_file = ".env"
        extra = "ignore"


# Instance unique des paramètres chargée depuis .env
settings = Settings()
