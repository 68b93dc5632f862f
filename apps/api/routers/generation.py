"""Generation router: credit-gated persona and story generation."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from openai import OpenAIError
from pydantic import BaseModel, Field

from routers.dependencies import AuthContext, ensure_user_scope, get_auth_context, get_generator, get_ledger
from routers.rate_limit import rate_limit
from services.entitlement_types import GenerationKind
from services.entitlements import AccountNotFound, EntitlementLedger, InsufficientCredit, describe_entitlement
from services.generation import GenerationUnavailable, PersonaGenerator, run_costed_generation

router = APIRouter()
logger = logging.getLogger(__name__)


class GenerationRequest(BaseModel):
    pet_name: str = Field(min_length=1, max_length=80)
    theme: str = Field(default="adventure", max_length=80)
    feedback: Optional[str] = Field(default=None, max_length=2000)
    story_so_far: Optional[str] = Field(default=None, max_length=20000)
    chapter_text: Optional[str] = Field(default=None, max_length=20000)
    user_id: Optional[str] = None


@router.post("/{kind}")
async def generate(
    kind: GenerationKind,
    request: GenerationRequest,
    _rate_limit: None = Depends(rate_limit("generation", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    ledger: EntitlementLedger = Depends(get_ledger),
    generator: PersonaGenerator = Depends(get_generator),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    payload = request.model_dump(exclude_none=True)

    async def _produce():
        return await generator.generate(kind, payload)

    try:
        output, account = await run_costed_generation(ledger, scoped_user_id, kind, _produce)
    except AccountNotFound as exc:
        raise HTTPException(status_code=404, detail="User not found") from exc
    except InsufficientCredit as exc:
        raise HTTPException(
            status_code=402,
            detail={
                "message": "You have no generation credits remaining. Please upgrade to Pro.",
                "upgrade_path": "/billing/checkout",
                "entitlement": describe_entitlement(exc.account),
            },
        ) from exc
    except (GenerationUnavailable, OpenAIError) as exc:
        logger.warning("Generation %s failed for user %s: %s", kind.value, scoped_user_id, exc)
        raise HTTPException(status_code=503, detail=f"Generation failed: {exc}") from exc

    return {
        "kind": kind.value,
        "output": output,
        "entitlement": describe_entitlement(account),
    }
