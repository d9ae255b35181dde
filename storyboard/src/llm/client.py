from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, List, Optional, Protocol, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..errors import CapabilityError, MalformedResponseError, SafetyRejectionError
from ..imaging.media import ImageResource
from .prompts import PRIMARY_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class TextCapability(Protocol):
    async def generate_structured(
        self,
        prompt: str,
        schema: Type[SchemaT],
        images: Optional[Sequence[ImageResource]] = None,
        model: Optional[str] = None,
    ) -> SchemaT:
        ...


def strip_code_fences(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        text = text.strip("`").strip()
        if text.lower().startswith("json"):
            text = text[4:].strip()
    return text


def parse_structured(raw: Optional[str], schema: Type[SchemaT]) -> SchemaT:
    """Validate a raw JSON answer against ``schema``; never returns partial data."""
    if not raw or not raw.strip():
        raise MalformedResponseError(f"Empty response for {schema.__name__}", capability="text")
    try:
        return schema.model_validate_json(strip_code_fences(raw))
    except ValidationError as exc:
        raise MalformedResponseError(
            f"Response does not match {schema.__name__}: {exc.error_count()} validation error(s)",
            capability="text",
        ) from exc


def build_messages(system: str, text: str, images: Optional[Sequence[ImageResource]] = None) -> List[Dict[str, Any]]:
    content: List[Dict[str, Any]] = [{"type": "text", "text": text}]
    for image in images or []:
        content.append({"type": "image_url", "image_url": {"url": image.to_data_url()}})
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": content},
    ]


class OpenAIStructuredClient:
    """Text-understanding capability backed by OpenAI chat completions with JSON schema output."""

    def __init__(
        self,
        model: str = "gpt-4o",
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        system_prompt: str = PRIMARY_SYSTEM_PROMPT,
        client: Any = None,
    ) -> None:
        self.model = model
        self.system_prompt = system_prompt
        if client is None:
            api_key = api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise CapabilityError("OPENAI_API_KEY not set", capability="text")
            from openai import AsyncOpenAI

            client = AsyncOpenAI(api_key=api_key, timeout=timeout)
        self._client = client

    async def generate_structured(
        self,
        prompt: str,
        schema: Type[SchemaT],
        images: Optional[Sequence[ImageResource]] = None,
        model: Optional[str] = None,
    ) -> SchemaT:
        from openai import OpenAIError

        model_name = model or self.model
        started = time.monotonic()
        try:
            response = await self._client.chat.completions.create(
                model=model_name,
                messages=build_messages(self.system_prompt, prompt, images),
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": schema.__name__, "schema": schema.model_json_schema()},
                },
            )
        except OpenAIError as exc:
            logger.error("Text capability call for %s failed: %s", schema.__name__, exc)
            raise CapabilityError(f"Text capability failed: {exc}", capability="text") from exc

        choice = response.choices[0]
        logger.info(
            "%s answered %s in %.2fs (finish=%s, images=%d)",
            model_name,
            schema.__name__,
            time.monotonic() - started,
            choice.finish_reason,
            len(images or []),
        )
        if choice.finish_reason == "content_filter" or getattr(choice.message, "refusal", None):
            raise SafetyRejectionError(
                f"Request refused by the text capability: {getattr(choice.message, 'refusal', None) or 'content filter'}",
                capability="text",
            )
        return parse_structured(choice.message.content, schema)
