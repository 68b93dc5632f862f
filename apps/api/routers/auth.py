"""
Authentication router: account registration and profile retrieval.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from routers.dependencies import AuthContext, get_auth_context, get_identity_verifier, get_ledger
from routers.rate_limit import rate_limit
from services.entitlements import AccountNotFound, EntitlementLedger, describe_entitlement
from services.identity import FirebaseIdentityVerifier, IdentityNotConfigured, IdentityVerificationError
from services.session_token import issue_session

router = APIRouter()


class RegisterRequest(BaseModel):
    id_token: str = Field(min_length=1)
    user_id: Optional[str] = Field(default=None, max_length=128)
    email: Optional[str] = None
    display_name: Optional[str] = None


class RegisterResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    session_token: str
    session_expires_at: int
    entitlement: Dict[str, Any]


class CurrentUserResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    entitlement: Dict[str, Any]


@router.post("/register", response_model=RegisterResponse)
async def register(
    request: RegisterRequest,
    _rate_limit: None = Depends(rate_limit("auth_register", limit=30, window_seconds=3600)),
    verifier: FirebaseIdentityVerifier = Depends(get_identity_verifier),
    ledger: EntitlementLedger = Depends(get_ledger),
):
    """
    Verify the client's ID token, create the account on first sign-in and
    issue a backend session. Signing in again never resets plan tier or credits.
    """
    # 1. The ID token is the only proof of who is signing in.
    try:
        identity = await verifier.verify(request.id_token)
    except IdentityNotConfigured as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except IdentityVerificationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    if request.user_id and request.user_id != identity.user_id:
        raise HTTPException(status_code=403, detail="user_id does not match the verified identity.")

    # 2. Create or load the account for the verified subject.
    account = await ledger.register(
        identity.user_id,
        email=identity.email or request.email,
        display_name=request.display_name or identity.display_name,
    )

    # 3. Issue the backend session.
    session = issue_session(account.id, account.email)
    return RegisterResponse(
        user_id=account.id,
        email=account.email,
        session_token=session.token,
        session_expires_at=session.expires_at,
        entitlement=describe_entitlement(account),
    )


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    ledger: EntitlementLedger = Depends(get_ledger),
):
    """Get current user profile and entitlement state."""
    try:
        account = await ledger.get_account(auth.user_id)
    except AccountNotFound as exc:
        raise HTTPException(status_code=404, detail="User not found") from exc

    return CurrentUserResponse(
        user_id=account.id,
        email=account.email,
        display_name=account.display_name,
        entitlement=describe_entitlement(account),
    )
