"""
Token Guard: Validates bearer tokens issued by the auth provider.

Classifies every token as valid, expired, malformed or invalid. Only
``expired`` is worth a silent refresh on the client; the other failures
need a fresh login.
"""
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Optional

import jwt
import structlog
from fastapi import Depends, Header

from ajo.config import get_settings
from ajo.errors import AuthenticationError, PermissionDeniedError

logger = structlog.get_logger(__name__)


class TokenStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    MALFORMED = "malformed"
    INVALID = "invalid"


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: Optional[str] = None
    is_admin: bool = False


@dataclass(frozen=True)
class TokenCheck:
    status: TokenStatus
    principal: Optional[Principal] = None
    detail: str = ""

    @property
    def valid(self) -> bool:
        return self.status == TokenStatus.VALID


_MESSAGES = {
    TokenStatus.EXPIRED: "Your session has expired. Please refresh your session or log in again.",
    TokenStatus.MALFORMED: "Authentication required. Please log in.",
    TokenStatus.INVALID: "Invalid authentication token. Please log in again.",
}


class TokenGuard:
    def __init__(self, secret: str, algorithm: str = "HS256", audience: Optional[str] = None, leeway: int = 0):
        self.secret = secret
        self.algorithm = algorithm
        self.audience = audience or None
        self.leeway = leeway

    def check(self, token: Optional[str]) -> TokenCheck:
        """Classify a raw JWT string."""
        if not token:
            return TokenCheck(TokenStatus.MALFORMED, detail="missing token")
        if token.count(".") != 2:
            return TokenCheck(TokenStatus.MALFORMED, detail="token is not a JWT")

        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                leeway=self.leeway,
                options={"require": ["exp", "sub"], "verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            return TokenCheck(TokenStatus.EXPIRED, detail="token expired")
        except jwt.InvalidSignatureError:
            return TokenCheck(TokenStatus.INVALID, detail="signature mismatch")
        except jwt.DecodeError:
            # Broken base64 / JSON segments
            return TokenCheck(TokenStatus.MALFORMED, detail="token could not be decoded")
        except jwt.InvalidTokenError as exc:
            return TokenCheck(TokenStatus.INVALID, detail=exc.__class__.__name__)

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            return TokenCheck(TokenStatus.INVALID, detail="missing subject")

        app_metadata = claims.get("app_metadata")
        if not isinstance(app_metadata, dict):
            # Only an object can grant roles; anything else grants none.
            app_metadata = {}
        return TokenCheck(
            TokenStatus.VALID,
            principal=Principal(
                user_id=subject,
                email=claims.get("email"),
                is_admin=bool(app_metadata.get("is_admin")),
            ),
        )


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the credential from an ``Authorization: Bearer ...`` header."""
    if not authorization:
        return None
    scheme, _, credential = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credential.strip() or None


@lru_cache()
def get_token_guard() -> TokenGuard:
    settings = get_settings()
    return TokenGuard(
        secret=settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
        audience=settings.JWT_AUDIENCE,
        leeway=settings.JWT_LEEWAY_SECONDS,
    )


def require_user(
    authorization: Optional[str] = Header(None),
    guard: TokenGuard = Depends(get_token_guard),
) -> Principal:
    """FastAPI dependency: the authenticated principal, or 401 before anything else runs."""
    result = guard.check(bearer_token(authorization))
    if not result.valid:
        logger.info("auth.rejected", token_status=result.status.value, detail=result.detail)
        raise AuthenticationError(_MESSAGES[result.status], token_status=result.status.value)
    return result.principal


def require_admin(principal: Principal = Depends(require_user)) -> Principal:
    if not principal.is_admin:
        raise PermissionDeniedError("Administrator access required")
    return principal
