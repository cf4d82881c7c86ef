import asyncio
import json
import logging
import requests
from dataclasses import dataclass
from typing import Optional
from google.genai import types

from pyqvault.config import Config
from pyqvault.clients.gemini_client import create_gemini_client, generate_content_with_retry
from pyqvault.errors import ExternalServiceFailure

logger = logging.getLogger(__name__)

MODERATION_PROMPT = """You are the content moderation classifier of an academic file sharing site.
Students upload photos and scans of exam papers and notes.

Rate how sexually explicit, gory or otherwise unsafe this image is.

Return ONLY a JSON object of the form:
{"explicitness": <number between 0 and 1>}

0 means clearly safe (text, diagrams, handwriting), 1 means clearly explicit."""


@dataclass
class ModerationVerdict:
    reject: bool
    score: Optional[float] = None


def parse_score(text: str, key: str) -> float:
    """Pull a normalized score out of a JSON answer, tolerating markdown fences"""
    json_str = (text or "").strip()
    if "```json" in json_str:
        json_str = json_str.split("```json")[1].split("```")[0]
    elif "```" in json_str:
        json_str = json_str.split("```")[1].split("```")[0]

    try:
        payload = json.loads(json_str)
        score = float(payload[key])
    except (ValueError, KeyError, TypeError) as e:
        raise ExternalServiceFailure(f"Moderation service returned an unreadable answer: {e}") from e

    if score != score:  # NaN
        raise ExternalServiceFailure("Moderation service returned NaN")
    return min(1.0, max(0.0, score))


class ContentClassifier:
    """Blocking client for an external explicitness classifier"""

    def explicitness(self, data: bytes, media_type: str) -> float:
        raise NotImplementedError


class GeminiContentClassifier(ContentClassifier):
    def __init__(self, client, model: str):
        self.client = client
        self.model = model

    def explicitness(self, data: bytes, media_type: str) -> float:
        response = generate_content_with_retry(
            self.client,
            model=self.model,
            contents=[
                types.Part.from_bytes(data=data, mime_type=media_type),
                MODERATION_PROMPT
            ],
            config=types.GenerateContentConfig(response_mime_type="application/json", temperature=0.0)
        )
        if not response or not response.text:
            raise ExternalServiceFailure("Moderation service returned an empty answer")
        return parse_score(response.text, "explicitness")


class HttpContentClassifier(ContentClassifier):
    """Self-hosted classifier: multipart image in, {"score": float} out"""

    def __init__(self, url: str, timeout: float):
        self.url = url
        self.timeout = timeout

    def explicitness(self, data: bytes, media_type: str) -> float:
        response = requests.post(
            self.url,
            files={"file": ("upload", data, media_type)},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return parse_score(response.text, "score")


class ModerationGate:
    """Decide whether an image must be rejected. Reject iff score > threshold."""

    def __init__(self, classifier: Optional[ContentClassifier], threshold: float = 0.6, timeout: float = 20.0):
        self.classifier = classifier
        self.threshold = threshold
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return self.classifier is not None

    async def assess(self, data: bytes, media_type: str = "image/jpeg") -> ModerationVerdict:
        """
        Ask the classifier about one image.

        Raises:
            ExternalServiceFailure: the service failed, timed out or answered nonsense
        """
        if self.classifier is None:
            return ModerationVerdict(reject=False)

        try:
            score = await asyncio.wait_for(
                asyncio.to_thread(self.classifier.explicitness, data, media_type),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExternalServiceFailure(f"Moderation service timed out after {self.timeout:.0f}s") from e
        except ExternalServiceFailure:
            raise
        except Exception as e:
            raise ExternalServiceFailure(f"Moderation service failed: {e}") from e

        return ModerationVerdict(reject=score > self.threshold, score=score)


def create_moderation_gate(config: Config) -> ModerationGate:
    provider = config.MODERATION_PROVIDER
    if provider == "gemini":
        classifier = GeminiContentClassifier(create_gemini_client(config), config.GEMINI_MODERATION_MODEL)
    elif provider == "http":
        classifier = HttpContentClassifier(config.MODERATION_URL, config.MODERATION_TIMEOUT)
    else:
        logger.warning("Image moderation is disabled (MODERATION_PROVIDER=none)")
        classifier = None

    return ModerationGate(classifier, threshold=config.MODERATION_THRESHOLD, timeout=config.MODERATION_TIMEOUT)
