"""Bearer-token dependencies scoping payment calls to one account and region."""

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from routers.payment_deps import get_region
from services.session_token import SessionRegionMismatchError, decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    region: str
    email: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "AuthContext":
        email = str(claims.get("email") or "").strip().lower()
        return cls(
            user_id=str(claims.get("sub", "")).strip(),
            region=str(claims.get("region", "")).strip().upper(),
            email=email or None,
        )

    def owns(self, user_id: Optional[str], user_email: Optional[str]) -> bool:
        """True when a payment or ledger row belongs to this account."""
        if user_id and user_id == self.user_id:
            return True
        return bool(self.email and user_email and user_email.strip().lower() == self.email)


def ensure_user_scope(auth: AuthContext, supplied_user_id: Optional[str]) -> None:
    """Reject attempts to read another account's payments or credits."""
    if supplied_user_id and supplied_user_id != auth.user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    region: str = Depends(get_region),
) -> AuthContext:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Sign in before managing payments.")

    try:
        claims = decode_session_token(credentials.credentials, region=region)
    except SessionRegionMismatchError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return AuthContext.from_claims(claims)
