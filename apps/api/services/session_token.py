"""
Signed session tokens identifying the account behind payment API calls.

Each token is bound to the deployment region that issued it, so a CN
session cannot open, cancel or read orders on the INTL deployment and the
other way round.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import resolve_deployment_region, settings


SESSION_TOKEN_TYPE = "morntool_session"
SESSION_REGIONS = ("CN", "INTL")


class SessionRegionMismatchError(ValueError):
    """Token is valid but was issued by the other regional deployment."""

    def __init__(self, token_region: str, region: str) -> None:
        super().__init__(f"Session was issued for the {token_region} deployment, not {region}.")
        self.token_region = token_region
        self.region = region


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    *,
    region: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    issued_region = (region or resolve_deployment_region()).strip().upper()
    if issued_region not in SESSION_REGIONS:
        raise ValueError(f"Unknown deployment region: {region}")

    issued_at = datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "region": issued_region,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email.strip().lower()

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "region": issued_region,
        "expires_at": claims["exp"],
    }


def decode_session_token(token: str, *, region: Optional[str] = None) -> Dict[str, Any]:
    """
    Validate a session token and return its claims.

    Raises:
        SessionRegionMismatchError: token belongs to the other deployment.
        ValueError: token is malformed, expired or not a session token.
    """
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(claims.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    if not str(claims.get("sub", "")).strip():
        raise ValueError("Session token missing subject.")

    token_region = str(claims.get("region", "")).strip().upper()
    if token_region not in SESSION_REGIONS:
        raise ValueError("Session token missing deployment region.")
    if region and token_region != region:
        raise SessionRegionMismatchError(token_region, region)
    return claims
