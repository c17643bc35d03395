"""
LLM client abstraction.

The extraction agent only needs "prompt (+ optional image) in, text out".
Keeping that behind a small interface lets tests drive the agent with a
scripted fake and keeps Gemini specifics in one place.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import google.generativeai as genai
import structlog
from google.api_core import exceptions as google_exceptions
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ledger_intake.config.settings import GeminiSettings


logger = structlog.get_logger(__name__)


class LLMError(Exception):
    """The model could not produce a response."""
    pass


class ImagePart(BaseModel):
    """An inline image sent alongside the prompt."""

    mime_type: str
    data: bytes


# Transient failures worth one more attempt: rate limit, overload, timeout
RETRYABLE_ERRORS = (
    google_exceptions.ResourceExhausted,
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
    asyncio.TimeoutError,
)


class LLMClient(ABC):
    """Text generation backend."""

    @abstractmethod
    async def generate(self, prompt: str, image: Optional[ImagePart] = None) -> str:
        """
        Generate a completion.

        Raises:
            LLMError: the model failed or returned nothing.
        """
        pass


class GeminiClient(LLMClient):
    """Google Gemini backend."""

    def __init__(self, settings: GeminiSettings):
        self._settings = settings
        genai.configure(api_key=settings.api_key)
        self._model = genai.GenerativeModel(
            model_name=settings.model_name,
            generation_config={
                "temperature": settings.temperature,  # Low temperature for consistency
                "max_output_tokens": settings.max_tokens,
            },
        )

    @retry(
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        reraise=True,
    )
    async def _generate_once(self, parts: list) -> str:
        response = await asyncio.wait_for(
            self._model.generate_content_async(parts),
            timeout=self._settings.timeout_seconds,
        )
        return response.text

    async def generate(self, prompt: str, image: Optional[ImagePart] = None) -> str:
        parts: list = [prompt]
        if image is not None:
            parts.append({"mime_type": image.mime_type, "data": image.data})

        try:
            text = await self._generate_once(parts)
        except (google_exceptions.GoogleAPIError, asyncio.TimeoutError) as e:
            logger.warning("llm_request_failed", model=self._settings.model_name, error=str(e))
            raise LLMError(f"Gemini request failed: {e}") from e
        except ValueError as e:
            # response.text raises ValueError when the candidate was blocked
            raise LLMError(f"Gemini returned no text: {e}") from e
        except Exception as e:
            # Safety blocks, auth and transport errors from the SDK stack
            logger.warning(
                "llm_request_failed",
                model=self._settings.model_name,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise LLMError(f"Gemini call failed: {type(e).__name__}: {e}") from e

        if not text or not text.strip():
            raise LLMError("Gemini returned an empty response")
        return text
