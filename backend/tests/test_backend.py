"""Tests for the async generation backend against a scripted provider."""

import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BACKEND_DIR))
sys.path.insert(0, str(BACKEND_DIR / "tests"))

import dataclasses
import os
import time
import unittest
from unittest import mock

from fakes import TEST_CONFIG, ScriptedClient, fake_audio

from modules.backend import (
    CHAT_PLACEHOLDER,
    MAX_TTS_CHARS,
    SUMMARY_PLACEHOLDER,
    GenerationBackend,
    parse_outline,
    parse_script,
)
from modules.episode_types import Notebook, Source
from modules.errors import MalformedResponseError, ProviderError, ProviderTimeoutError
from modules.fallback import generate_local_outline


def _notebook() -> Notebook:
    return Notebook(
        id="nb",
        title="Tidal Energy",
        category="science",
        sources=[
            Source(id="s1", kind="text", title="Turbines", content="Tidal turbines spin slowly."),
            Source(id="s2", kind="text", title="Costs", content="Tidal projects cost more up front."),
        ],
    )


class TestParsing(unittest.TestCase):

    def test_outline_is_trimmed_to_limits(self):
        payload = {
            "outline": [
                {"part": i, "topics": ["a", "b", "c", "d", " "]} for i in range(1, 9)
            ]
        }
        outline = parse_outline(payload)
        self.assertEqual(len(outline.segments), 6)
        self.assertEqual(outline.segments[0].topics, ["a", "b", "c"])
        self.assertEqual([s.index for s in outline.segments], list(range(6)))

    def test_outline_too_short_is_malformed(self):
        with self.assertRaises(MalformedResponseError):
            parse_outline({"outline": [{"part": 1, "topics": ["only"]}]})
        with self.assertRaises(MalformedResponseError):
            parse_outline({"outline": [{"part": 1, "topics": []}] * 4})
        with self.assertRaises(MalformedResponseError):
            parse_outline({"segments": []})

    def test_unknown_speaker_is_malformed(self):
        payload = {
            "script": "Narrator: hi",
            "transcript": [{"speaker": "Narrator", "text": "hi", "startMs": 0, "endMs": 10}],
        }
        with self.assertRaises(MalformedResponseError):
            parse_script(payload)

    def test_script_rebuilt_from_transcript_when_missing(self):
        payload = {
            "script": "",
            "transcript": [
                {"speaker": "Jordan", "text": "Colons: fine here", "startMs": 10, "endMs": 5},
            ],
        }
        segment = parse_script(payload)
        self.assertEqual(segment.script, "Jordan: Colons: fine here")
        self.assertEqual(segment.transcript[0].end_ms, 10)


class TestGenerationBackend(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.client = ScriptedClient()
        self.backend = GenerationBackend(client=self.client, config=TEST_CONFIG)

    async def test_outline_and_script(self):
        notebook = _notebook()
        outline = await self.backend.generate_outline(notebook, "SOURCE 1 (Turbines):\n...")
        self.assertEqual(outline.origin, "remote")
        self.assertEqual(len(outline.segments), 5)

        segment = await self.backend.generate_script_segment(notebook, outline, 1, "debate", "grounding")
        self.assertEqual([t.speaker for t in segment.transcript], ["Alex", "Jordan"])
        prompt = self.client.calls_of("script")[0]["prompt"]
        self.assertIn("part 2 of 5", prompt)
        self.assertIn("different positions", prompt)
        self.assertIn("grounding", prompt)

    async def test_transient_error_is_retried(self):
        self.client.fail("outline", ProviderError("slow down", status_code=429))
        waits = []
        outline = await self.backend.generate_outline(
            _notebook(), "g", on_wait=lambda exc, attempt, delay: waits.append(attempt)
        )
        self.assertEqual(len(outline.segments), 5)
        self.assertEqual(len(self.client.calls_of("outline")), 2)
        self.assertEqual(waits, [1])

    async def test_permanent_error_is_raised_once(self):
        self.client.fail("script", ProviderError("HTTP 500", status_code=500))
        outline = generate_local_outline(_notebook())
        with self.assertRaises(ProviderError):
            await self.backend.generate_script_segment(_notebook(), outline, 0, "neutral", "g")
        self.assertEqual(len(self.client.calls_of("script")), 1)

    async def test_malformed_outline_is_not_retried(self):
        self.client.outline_payload = {"outline": [{"part": 1, "topics": ["x"]}]}
        with self.assertRaises(MalformedResponseError):
            await self.backend.generate_outline(_notebook(), "g")
        self.assertEqual(len(self.client.calls_of("outline")), 1)

    async def test_speech_request_is_capped_and_voiced(self):
        audio = await self.backend.synthesize_speech("Alex: hi\n" * 5000)
        self.assertEqual(audio, fake_audio(1))
        call = self.client.calls_of("tts")[0]
        self.assertEqual(len(call["prompt"]), MAX_TTS_CHARS)
        voices = call["generation_config"]["speechConfig"]["multiSpeakerVoiceConfig"]["speakerVoiceConfigs"]
        mapping = {v["speaker"]: v["voiceConfig"]["prebuiltVoiceConfig"]["voiceName"] for v in voices}
        self.assertEqual(mapping, {"Alex": "Kore", "Jordan": "Puck"})

    async def test_artwork(self):
        uri = await self.backend.generate_artwork(_notebook())
        self.assertTrue(uri.startswith("data:image/png;base64,"))
        self.assertIn("deep violet", self.client.calls_of("image")[0]["prompt"])

    async def test_artwork_never_raises(self):
        self.client.fail_always("image", ProviderError("HTTP 500", status_code=500))
        self.assertIsNone(await self.backend.generate_artwork(_notebook()))

    async def test_auxiliary_placeholders(self):
        for kind in ("text", "search"):
            self.client.fail_always(kind, ProviderError("HTTP 403", status_code=403))
        self.assertEqual(await self.backend.generate_summary(_notebook()), SUMMARY_PLACEHOLDER)
        self.assertEqual(await self.backend.generate_chat_answer(_notebook(), "why?"), CHAT_PLACEHOLDER)
        self.assertEqual(await self.backend.perform_web_search("tides"), [])

    async def test_auxiliary_success(self):
        self.assertEqual(await self.backend.generate_summary(_notebook()), "Answer #1")
        answer = await self.backend.generate_chat_answer(_notebook(), "What do turbines do?")
        self.assertEqual(answer, "Answer #2")
        self.assertIn("QUESTION: What do turbines do?", self.client.calls_of("text")[1]["prompt"])
        results = await self.backend.perform_web_search("tides")
        self.assertEqual([r.url for r in results], ["https://example.org/a", "https://example.org/b"])
        self.assertEqual(results[1].title, "https://example.org/b")

    async def test_timeout_becomes_transient_provider_error(self):
        class SlowClient:
            def generate_content(self, **kwargs):
                time.sleep(0.3)
                return {}

        config = dataclasses.replace(TEST_CONFIG, request_timeout_seconds=0.05, retry_max_attempts=1)
        backend = GenerationBackend(client=SlowClient(), config=config)
        with self.assertRaises(ProviderTimeoutError):
            await backend.synthesize_speech("Alex: hi")

    async def test_missing_api_key_is_permanent_provider_error(self):
        backend = GenerationBackend(config=TEST_CONFIG)
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ProviderError) as ctx:
                await backend.generate_outline(_notebook(), "g")
        self.assertEqual(ctx.exception.status_code, 401)

    async def test_json_wrapped_in_prose_is_accepted(self):
        class ChattyClient(ScriptedClient):
            def _respond(self, kind, prompt, number):
                payload = super()._respond(kind, prompt, number)
                text = payload["candidates"][0]["content"]["parts"][0]["text"]
                payload["candidates"][0]["content"]["parts"][0]["text"] = f"Here you go:\n{text}\nEnjoy"
                return payload

        backend = GenerationBackend(client=ChattyClient(), config=TEST_CONFIG)
        outline = await backend.generate_outline(_notebook(), "g")
        self.assertEqual(len(outline.segments), 5)
        self.assertEqual(outline.segments[0].topics, ["Topic 1", "Angle 1"])


if __name__ == "__main__":
    unittest.main()
