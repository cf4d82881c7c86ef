import time
from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import BrokenClassifier, FakeClassifier
from pyqvault.config import Config
from pyqvault.errors import ExternalServiceFailure
from pyqvault.services.moderation_service import (
    ContentClassifier, GeminiContentClassifier, HttpContentClassifier, ModerationGate,
    create_moderation_gate, parse_score,
)


class SlowClassifier(ContentClassifier):
    def explicitness(self, data, media_type):
        time.sleep(0.5)
        return 0.0


class FixedClassifier(ContentClassifier):
    def __init__(self, score):
        self.score = score

    def explicitness(self, data, media_type):
        return self.score


def test_parse_score_reads_plain_and_fenced_json():
    assert parse_score('{"explicitness": 0.25}', "explicitness") == 0.25
    assert parse_score('```json\n{"score": 0.7}\n```', "score") == 0.7


def test_parse_score_clamps_to_unit_interval():
    assert parse_score('{"score": 1.8}', "score") == 1.0
    assert parse_score('{"score": -3}', "score") == 0.0


@pytest.mark.parametrize("text", ["", "not json", '{"other": 1}', '{"score": "high"}', '{"score": NaN}'])
def test_parse_score_rejects_unreadable_answers(text):
    with pytest.raises(ExternalServiceFailure):
        parse_score(text, "score")


@pytest.mark.asyncio
@pytest.mark.parametrize("score,reject", [(0.0, False), (0.6, False), (0.61, True), (1.0, True)])
async def test_reject_only_above_threshold(score, reject):
    gate = ModerationGate(FixedClassifier(score), threshold=0.6)

    verdict = await gate.assess(b"img", "image/png")

    assert verdict.reject is reject
    assert verdict.score == score


@pytest.mark.asyncio
async def test_disabled_gate_passes_everything():
    gate = ModerationGate(None)

    verdict = await gate.assess(b"img")

    assert gate.enabled is False
    assert verdict.reject is False


@pytest.mark.asyncio
async def test_classifier_errors_become_service_failures():
    gate = ModerationGate(BrokenClassifier())

    with pytest.raises(ExternalServiceFailure, match="classifier offline"):
        await gate.assess(b"img")


@pytest.mark.asyncio
async def test_slow_classifier_times_out():
    gate = ModerationGate(SlowClassifier(), timeout=0.05)

    with pytest.raises(ExternalServiceFailure, match="timed out"):
        await gate.assess(b"img")


@pytest.mark.asyncio
async def test_fake_classifier_flags_by_payload():
    gate = ModerationGate(FakeClassifier(flagged=[b"bad"]))

    assert (await gate.assess(b"bad")).reject is True
    assert (await gate.assess(b"fine")).reject is False


def test_http_classifier_posts_image_and_reads_score():
    response = MagicMock(text='{"score": 0.8}')
    response.raise_for_status.return_value = None

    with patch("pyqvault.services.moderation_service.requests.post", return_value=response) as post:
        score = HttpContentClassifier("http://moderator/classify", timeout=3).explicitness(b"img", "image/png")

    assert score == 0.8
    args, kwargs = post.call_args
    assert args[0] == "http://moderator/classify"
    assert kwargs["timeout"] == 3
    assert kwargs["files"]["file"] == ("upload", b"img", "image/png")


def test_http_classifier_raises_on_http_error():
    response = MagicMock()
    response.raise_for_status.side_effect = requests.HTTPError("503 Service Unavailable")

    with patch("pyqvault.services.moderation_service.requests.post", return_value=response):
        with pytest.raises(requests.HTTPError):
            HttpContentClassifier("http://moderator/classify", timeout=3).explicitness(b"img", "image/png")


def test_gemini_classifier_reads_explicitness():
    client = MagicMock()
    client.models.generate_content.return_value = MagicMock(text='{"explicitness": 0.9}')

    score = GeminiContentClassifier(client, "gemini-2.5-flash").explicitness(b"img", "image/jpeg")

    assert score == 0.9
    kwargs = client.models.generate_content.call_args.kwargs
    assert kwargs["model"] == "gemini-2.5-flash"
    assert kwargs["config"].response_mime_type == "application/json"


def test_gemini_classifier_empty_answer_is_a_failure():
    client = MagicMock()
    client.models.generate_content.return_value = MagicMock(text="")

    with pytest.raises(ExternalServiceFailure):
        GeminiContentClassifier(client, "gemini-2.5-flash").explicitness(b"img", "image/jpeg")


def test_gemini_retries_busy_responses():
    client = MagicMock()
    client.models.generate_content.side_effect = [
        RuntimeError("503 UNAVAILABLE"),
        MagicMock(text='{"explicitness": 0.1}'),
    ]

    with patch("pyqvault.clients.gemini_client.time.sleep"):
        score = GeminiContentClassifier(client, "gemini-2.5-flash").explicitness(b"img", "image/jpeg")

    assert score == 0.1
    assert client.models.generate_content.call_count == 2


def test_factory_builds_configured_provider():
    gate = create_moderation_gate(Config({"MODERATION_PROVIDER": "none"}))
    assert gate.enabled is False

    gate = create_moderation_gate(Config({
        "MODERATION_PROVIDER": "http",
        "MODERATION_URL": "http://moderator/classify",
        "MODERATION_THRESHOLD": "0.5",
    }))
    assert isinstance(gate.classifier, HttpContentClassifier)
    assert gate.threshold == 0.5
