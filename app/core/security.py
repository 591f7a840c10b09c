import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from keycloak import KeycloakOpenID
from opentelemetry import trace
from pydantic import BaseModel

from app.core.config import settings
from app.core.exceptions import ForbiddenError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Keycloak client configuration (bearer-only mode - no client_secret needed)
keycloak_openid = KeycloakOpenID(
    server_url=settings.KEYCLOAK_SERVER_URL,
    client_id=settings.KEYCLOAK_CLIENT_ID,
    realm_name=settings.KEYCLOAK_REALM,
)

# Security scheme for Bearer token
security_scheme = HTTPBearer(auto_error=False)


class User(BaseModel):
    sub: str  # Keycloak user ID
    email: str | None = None
    preferred_username: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    realm_access: dict | None = None
    resource_access: dict | None = None

    @property
    def user_id(self) -> str:
        return self.sub

    @property
    def roles(self) -> list[str]:
        """Rôles realm et client cumulés."""
        collected: list[str] = []
        if self.realm_access and "roles" in self.realm_access:
            collected.extend(self.realm_access["roles"])
        if self.resource_access and settings.KEYCLOAK_CLIENT_ID in self.resource_access:
            collected.extend(self.resource_access[settings.KEYCLOAK_CLIENT_ID].get("roles", []))
        return collected

    @property
    def is_reviewer(self) -> bool:
        """Check si l'utilisateur peut rendre un verdict (admin ou inspecteur)."""
        return any(role in settings.REVIEWER_ROLES for role in self.roles)

    def is_owner(self, resource_owner_id: str) -> bool:
        """Check si l'utilisateur est le propriétaire de la ressource."""
        return self.sub == resource_owner_id

    def verify_access(self, resource_owner_id: str) -> str:
        """
        Vérifie l'accès à une demande et retourne la raison pour traçabilité.

        Returns:
            "owner" si propriétaire de la demande
            "reviewer_supervision" si agent de revue (pas owner)

        Raises:
            ForbiddenError si ni owner ni agent de revue
        """
        if self.is_owner(resource_owner_id):
            return "owner"

        if self.is_reviewer:
            return "reviewer_supervision"

        raise ForbiddenError(detail="Access denied: you do not own this application")


def ensure_reviewer(user: User) -> None:
    """Lève ForbiddenError si l'utilisateur n'a aucun rôle de revue."""
    if not user.is_reviewer:
        logger.warning(f"Verdict refusé pour {user.sub}: rôles {user.roles}")
        raise ForbiddenError(
            detail=f"Insufficient permissions. Required roles: {', '.join(settings.REVIEWER_ROLES)}"
        )


async def verify_token(token: str) -> dict:
    """
    Verify JWT token with Keycloak.

    Validates:
    - Token signature and expiration (via decode_token)
    - iss (issuer) - must be from our Keycloak realm
    - azp (authorized party) - must be one of the configured frontend clients
    - aud (audience) - must include this service or be 'account'
    """
    with tracer.start_as_current_span("verify_keycloak_token") as span:
        try:
            token_info = keycloak_openid.decode_token(token, validate=True)

            iss = token_info.get("iss")
            if not settings.DEBUG:
                expected_issuer = (
                    f"{settings.KEYCLOAK_SERVER_URL.rstrip('/')}/realms/{settings.KEYCLOAK_REALM}"
                )
                if not iss or iss != expected_issuer:
                    logger.error(f"Invalid issuer in token: {iss}. Expected: {expected_issuer}")
                    raise HTTPException(
                        status_code=status.HTTP_401_UNAUTHORIZED,
                        detail=f"Token from unauthorized issuer: {iss}",
                        headers={"WWW-Authenticate": "Bearer"},
                    )
            else:
                logger.debug(f"DEBUG mode: Skipping issuer validation. Token issuer: {iss}")

            azp = token_info.get("azp")
            if not azp or azp not in settings.KEYCLOAK_ALLOWED_CLIENTS:
                logger.error(
                    f"Invalid azp in token: {azp}. Expected one of: {settings.KEYCLOAK_ALLOWED_CLIENTS}"
                )
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail=f"Token not authorized for this service (invalid azp: {azp})",
                    headers={"WWW-Authenticate": "Bearer"},
                )

            aud = token_info.get("aud", [])
            if isinstance(aud, str):
                aud = [aud]

            valid_audiences = {"account", settings.KEYCLOAK_CLIENT_ID}
            if not any(audience in valid_audiences for audience in aud):
                logger.error(
                    f"Invalid audience in token: {aud}. Expected one of: {valid_audiences}"
                )
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail=f"Token not intended for this service (invalid audience: {aud})",
                    headers={"WWW-Authenticate": "Bearer"},
                )

            span.set_attribute("auth.user_id", token_info.get("sub"))
            span.set_attribute("auth.azp", azp)
            logger.debug(f"Token validated - azp: {azp}, user: {token_info.get('sub')}")
            return token_info
        except Exception as e:
            logger.error(f"Token verification failed: {e}")
            span.set_attribute("auth.error", True)
            span.set_attribute("auth.error_detail", str(e))
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token",
                headers={"WWW-Authenticate": "Bearer"},
            ) from e


async def extract_token(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security_scheme)] = None,
) -> str:
    """
    Extract JWT token from the Authorization header or the auth_token cookie.

    Raises:
        HTTPException: If no token found in any source
    """
    if credentials:
        return credentials.credentials

    token = request.cookies.get("auth_token")
    if token:
        logger.debug("Token extracted from cookie")
        return token

    logger.warning("No authentication token found in request")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required. Provide token via Authorization header or cookie.",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_token_data(token: Annotated[str, Depends(extract_token)]) -> dict:
    """Extract and verify token."""
    return await verify_token(token)


async def get_current_user(token_data: Annotated[dict, Depends(get_token_data)]) -> User:
    """Get current user from verified Keycloak token."""
    with tracer.start_as_current_span("get_current_user") as span:
        try:
            user = User(**token_data)
            span.set_attribute("auth.user_id", user.sub)
            logger.info(f"User authenticated: {user.sub}")
            return user
        except Exception as e:
            logger.error(f"Failed to create user from token data: {e}")
            span.set_attribute("auth.error", True)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Could not validate credentials",
            ) from e


def check_user_role(user: User, required_role: str) -> bool:
    """Check if user has required role in realm_access or resource_access."""
    return required_role in user.roles


def require_roles(*roles: str, require_all: bool = False):
    """
    Dependency factory for role-based access control.

    Args:
        *roles: One or more role names required for access
        require_all: If True, user must have ALL roles. If False (default), user needs ANY role.

    Returns:
        FastAPI dependency function that validates user roles

    Examples:
        @router.post("/verdict", dependencies=[Depends(require_roles("admin", "inspector"))])
    """

    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        with tracer.start_as_current_span("check_user_roles") as span:
            span.set_attribute("auth.required_roles", ",".join(roles))
            span.set_attribute("auth.require_all", require_all)
            span.set_attribute("auth.user_id", current_user.sub)

            user_roles = current_user.roles
            if require_all:
                has_access = all(role in user_roles for role in roles)
            else:
                has_access = any(role in user_roles for role in roles)

            if not has_access:
                logger.warning(
                    f"Access denied for user {current_user.sub}. "
                    f"Required roles: {roles} (require_all={require_all}). "
                    f"User roles: {user_roles}"
                )
                span.set_attribute("auth.access_denied", True)
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Access denied. Required roles: {', '.join(roles)}",
                )

            span.set_attribute("auth.access_granted", True)
            return current_user

    return role_checker


async def get_current_reviewer(
    current_user: User = Depends(require_roles(*settings.REVIEWER_ROLES)),
) -> User:
    """Get current user with reviewer role validation."""
    return current_user
