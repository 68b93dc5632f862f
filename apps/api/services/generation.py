"""Costed generative-AI workflows for personas and stories."""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from openai import AsyncOpenAI

from config import settings
from services.entitlement_types import GenerationKind, UserAccount
from services.entitlements import EntitlementLedger

logger = logging.getLogger(__name__)


class GenerationUnavailable(RuntimeError):
    """Raised when the model cannot be reached or returned nothing usable."""


async def run_costed_generation(
    ledger: EntitlementLedger,
    user_id: str,
    kind: GenerationKind,
    produce: Callable[[], Awaitable[Dict[str, Any]]],
) -> Tuple[Dict[str, Any], UserAccount]:
    """Run ``produce`` for an entitled user and charge one credit once it succeeds.

    A failure inside ``produce`` propagates without touching the balance.
    """
    await ledger.ensure_can_afford(user_id)
    output = await produce()
    account = await ledger.consume_credit(user_id)
    logger.info("generation kind=%s user=%s tier=%s", kind.value, user_id, account.plan_tier.value)
    return output, account


def get_openai_client(api_key: str) -> Optional[AsyncOpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return AsyncOpenAI(api_key=api_key)


def _text(payload: Dict[str, Any], key: str, default: str = "") -> str:
    return str(payload.get(key) or default).strip()


class PersonaGenerator:
    """Produces persona images, lore and story chapters through OpenAI."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        text_model: Optional[str] = None,
        image_model: Optional[str] = None,
    ):
        self.client = get_openai_client(api_key if api_key is not None else settings.OPENAI_API_KEY)
        self.text_model = text_model or settings.OPENAI_TEXT_MODEL
        self.image_model = image_model or settings.OPENAI_IMAGE_MODEL

    def _require_client(self) -> AsyncOpenAI:
        if self.client is None:
            raise GenerationUnavailable("OpenAI is not configured (OPENAI_API_KEY).")
        return self.client

    async def _json_completion(self, prompt: str) -> Dict[str, Any]:
        client = self._require_client()
        response = await client.chat.completions.create(
            model=self.text_model,
            messages=[
                {"role": "system", "content": "You write short, warm stories starring pets. Reply with JSON only."},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise GenerationUnavailable("The model did not return any text.")
        try:
            parsed = json.loads(content)
        except ValueError as exc:
            raise GenerationUnavailable("The model returned malformed JSON.") from exc
        if not isinstance(parsed, dict):
            raise GenerationUnavailable("The model returned an unexpected payload.")
        return parsed

    async def _image(self, prompt: str) -> Dict[str, Any]:
        client = self._require_client()
        response = await client.images.generate(model=self.image_model, prompt=prompt, n=1, size="1024x1024")
        first = response.data[0] if response.data else None
        if first is None:
            raise GenerationUnavailable("The model did not return an image.")
        if getattr(first, "url", None):
            return {"image_url": first.url}
        if getattr(first, "b64_json", None):
            return {"image_url": f"data:image/png;base64,{first.b64_json}"}
        raise GenerationUnavailable("The model did not return an image.")

    async def generate(self, kind: GenerationKind, payload: Dict[str, Any]) -> Dict[str, Any]:
        pet_name = _text(payload, "pet_name", "the pet")
        theme = _text(payload, "theme", "adventure")
        feedback = _text(payload, "feedback")

        if kind is GenerationKind.PERSONA_IMAGE:
            return await self._image(
                f"A storybook portrait of a pet named {pet_name} reimagined as a {theme} character."
            )

        if kind is GenerationKind.PERSONA_LORE:
            result = await self._json_completion(
                f"Invent a {theme} persona for a pet named {pet_name}. "
                'Return {"persona_name": ..., "lore_text": ...} with 100-150 words of lore.'
            )
            lore = _text(result, "lore_text")
            if not lore:
                raise GenerationUnavailable("Failed to generate persona lore.")
            return {"persona_name": _text(result, "persona_name", pet_name), "lore_text": lore}

        if kind is GenerationKind.STORY_CHAPTER:
            story_so_far = _text(payload, "story_so_far")
            result = await self._json_completion(
                f"Write the next chapter of a {theme} story starring {pet_name}. "
                f"Story so far: {story_so_far or '(this is the first chapter)'}. "
                f"Direction: {feedback or 'continue naturally'}. "
                'Return {"title": ..., "text": ...}.'
            )
            text = _text(result, "text")
            if not text:
                raise GenerationUnavailable("Failed to generate the story chapter.")
            return {"title": _text(result, "title", "Untitled chapter"), "text": text}

        if kind is GenerationKind.CHAPTER_IMAGE_REGENERATION:
            chapter_text = _text(payload, "chapter_text")
            return await self._image(
                f"A storybook illustration of {pet_name} for this scene: {chapter_text[:800]}. "
                f"Adjustments: {feedback or 'none'}."
            )

        if kind is GenerationKind.LORE_REGENERATION:
            result = await self._json_completion(
                f"Rewrite the {theme} lore for a pet named {pet_name} using this feedback: {feedback}. "
                'Return {"lore_text": ...} with 100-150 words.'
            )
            lore = _text(result, "lore_text")
            if not lore:
                raise GenerationUnavailable("Failed to regenerate persona lore.")
            return {"lore_text": lore}

        raise ValueError(f"Unsupported generation kind: {kind}")
