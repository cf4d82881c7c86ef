import logging
import time
import random
from typing import Optional
from google import genai
from google.genai import types

from pyqvault.config import Config

logger = logging.getLogger(__name__)


def create_gemini_client(config: Config) -> genai.Client:
    """Create a Gemini client whose HTTP calls are bounded by the moderation timeout"""
    if not config.GEMINI_API_KEY:
        raise ValueError("GEMINI_API_KEY is not configured")
    return genai.Client(
        api_key=config.GEMINI_API_KEY,
        http_options=types.HttpOptions(timeout=int(config.MODERATION_TIMEOUT * 1000)),
    )


def _is_retryable(error: Exception) -> bool:
    error_str = str(error)
    return "503" in error_str or "UNAVAILABLE" in error_str or "429" in error_str


def generate_content_with_retry(
    client: genai.Client,
    model: str,
    contents: list,
    config: Optional[types.GenerateContentConfig] = None,
    retries: int = 3,
    initial_delay: float = 1.0
):
    """
    Call Gemini generate_content with exponential backoff for 503/429 errors.
    Other errors are raised immediately.
    """
    delay = initial_delay

    for attempt in range(retries):
        try:
            return client.models.generate_content(
                model=model,
                contents=contents,
                config=config
            )
        except Exception as e:
            if not _is_retryable(e) or attempt == retries - 1:
                raise

            wait_time = delay + random.uniform(0, 1)
            logger.warning(
                "Gemini API busy (503/429). Retrying in %.2fs... (Attempt %d/%d)",
                wait_time, attempt + 1, retries
            )
            time.sleep(wait_time)
            delay *= 2
