"""Shared FastAPI dependencies: session auth and ledger wiring."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.account_store import SqlAccountStore
from services.billing_client import StripeBillingClient
from services.entitlements import EntitlementLedger
from services.generation import PersonaGenerator
from services.identity import FirebaseIdentityVerifier
from services.session_token import read_session


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return authenticated user_id and reject cross-user attempts."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the signed-in user from the Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = read_session(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(user_id=claims.user_id, email=claims.email)


_identity_verifier: Optional[FirebaseIdentityVerifier] = None


def get_identity_verifier() -> FirebaseIdentityVerifier:
    # One per process; holds the signing certificate cache.
    global _identity_verifier
    if _identity_verifier is None:
        _identity_verifier = FirebaseIdentityVerifier()
    return _identity_verifier


def get_billing_client() -> StripeBillingClient:
    return StripeBillingClient()


def get_generator() -> PersonaGenerator:
    return PersonaGenerator()


async def get_ledger(
    db: AsyncSession = Depends(get_db),
    billing: StripeBillingClient = Depends(get_billing_client),
) -> EntitlementLedger:
    return EntitlementLedger(SqlAccountStore(db), billing)
