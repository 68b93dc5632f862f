"""Firebase ID token verification for sign-in."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
from jose import JWTError, jwt

from config import settings

logger = logging.getLogger(__name__)

FIREBASE_CERTS_URL = (
    "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com"
)
FIREBASE_ISSUER_PREFIX = "https://securetoken.google.com/"
DEFAULT_CERT_TTL_SECONDS = 3600


class IdentityVerificationError(ValueError):
    """Raised when a sign-in credential cannot be trusted."""


class IdentityNotConfigured(RuntimeError):
    """Raised when no identity project is configured."""


@dataclass(frozen=True)
class VerifiedIdentity:
    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None


def _max_age(cache_control: str) -> int:
    match = re.search(r"max-age=(\d+)", cache_control or "")
    return int(match.group(1)) if match else DEFAULT_CERT_TTL_SECONDS


class FirebaseIdentityVerifier:
    """Checks Firebase ID tokens against Google's published signing certificates."""

    def __init__(self, project_id: Optional[str] = None, certs_url: str = FIREBASE_CERTS_URL):
        self.project_id = (project_id if project_id is not None else settings.FIREBASE_PROJECT_ID).strip()
        self.certs_url = certs_url
        self._certificates: Dict[str, str] = {}
        self._certificates_expire_at = 0.0

    async def _signing_certificates(self) -> Dict[str, str]:
        if self._certificates and time.time() < self._certificates_expire_at:
            return self._certificates
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.get(self.certs_url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Could not fetch identity signing certificates: %s", exc)
            raise IdentityVerificationError("Identity provider is unreachable.") from exc

        self._certificates = dict(response.json())
        self._certificates_expire_at = time.time() + _max_age(response.headers.get("cache-control", ""))
        return self._certificates

    async def verify(self, id_token: str) -> VerifiedIdentity:
        """Return the identity an ID token vouches for; raise when it does not verify."""
        if not self.project_id:
            raise IdentityNotConfigured("FIREBASE_PROJECT_ID is not configured.")
        if not id_token:
            raise IdentityVerificationError("Missing ID token.")

        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as exc:
            raise IdentityVerificationError("ID token is malformed.") from exc
        if header.get("alg") != "RS256":
            raise IdentityVerificationError("ID token has an unexpected signing algorithm.")

        certificates = await self._signing_certificates()
        certificate = certificates.get(str(header.get("kid") or ""))
        if not certificate:
            raise IdentityVerificationError("ID token was signed with an unknown key.")

        try:
            claims = jwt.decode(
                id_token,
                certificate,
                algorithms=["RS256"],
                audience=self.project_id,
                issuer=f"{FIREBASE_ISSUER_PREFIX}{self.project_id}",
            )
        except JWTError as exc:
            raise IdentityVerificationError(f"ID token rejected: {exc}") from exc

        subject = str(claims.get("sub") or "").strip()
        if not subject or len(subject) > 128:
            raise IdentityVerificationError("ID token has no usable subject.")
        auth_time = claims.get("auth_time")
        if auth_time is not None:
            if not isinstance(auth_time, (int, float)) or auth_time > time.time() + 60:
                raise IdentityVerificationError("ID token has an invalid authentication time.")

        return VerifiedIdentity(
            user_id=subject,
            email=str(claims.get("email") or "") or None,
            display_name=str(claims.get("name") or "") or None,
        )
