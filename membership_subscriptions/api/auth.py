"""Bearer token authentication for CRM endpoints."""

from typing import Any, Dict, Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from membership_subscriptions.config import get_config
from membership_subscriptions.exceptions import AuthenticationError, AuthorizationError
from membership_subscriptions.logging_config import bind_context, get_logger

logger = get_logger(__name__)

CRM_USER_TYPE = "CRM"
TENANT_CLAIMS = ("tenantId", "tid", "extension_tenantId", "tenant")

bearer_scheme = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    """Caller identity taken from the verified token."""

    user_id: Optional[str] = None
    tenant_id: Optional[str] = None
    user_type: Optional[str] = None
    claims: Dict[str, Any] = {}


def decode_token(token: str) -> Dict[str, Any]:
    """Verify an access token and return its claims.

    Raises:
        AuthenticationError: Signature, expiry or format is invalid, or no secret is configured
    """
    auth = get_config().auth
    if not auth.token_secret:
        logger.error("access_token_secret_missing", message="Set ACCESS_TOKEN_SECRET to accept tokens")
        raise AuthenticationError("Invalid token")
    try:
        return jwt.decode(token, auth.token_secret, algorithms=[auth.algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning("access_token_invalid", error=str(e))
        raise AuthenticationError("Invalid token")


def user_from_claims(claims: Dict[str, Any]) -> CurrentUser:
    user_id = claims.get("sub") or claims.get("id")
    tenant_id = next((claims[name] for name in TENANT_CLAIMS if claims.get(name)), None)
    return CurrentUser(
        user_id=str(user_id) if user_id is not None else None,
        tenant_id=str(tenant_id) if tenant_id is not None else None,
        user_type=claims.get("userType"),
        claims=claims,
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CurrentUser:
    """Resolve the caller from the Authorization header."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Authorization token required")

    user = user_from_claims(decode_token(credentials.credentials))
    bind_context(user_id=user.user_id, tenant_id=user.tenant_id)
    return user


async def require_crm_user(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Allow only CRM staff."""
    if user.user_type != CRM_USER_TYPE:
        logger.warning("crm_access_denied", user_id=user.user_id, user_type=user.user_type)
        raise AuthorizationError("Access denied. CRM users only.")
    return user
