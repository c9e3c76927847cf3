"""
Tests for the transcription bridge: blank filtering, debouncing, single-flight.
"""

import asyncio

import numpy as np
import pytest

from src.voiceloop.errors import CollaboratorRuntimeError
from src.voiceloop.stt import TranscriptionBridge, is_blank_transcript

from tests.fakes import FakeTranscriber, make_config


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


SAMPLES = np.zeros(1600, dtype=np.float32)


def make_bridge(outputs, clock=None):
    transcriber = FakeTranscriber(outputs=outputs)
    emitted = []
    bridge = TranscriptionBridge(
        transcriber,
        make_config(),
        on_text=emitted.append,
        clock=clock or FakeClock(),
    )
    return bridge, transcriber, emitted


@pytest.mark.parametrize("text", ["", "   ", "[BLANK_AUDIO]", "[ Silence ]", "[Silence]"])
def test_blank_sentinels(text):
    assert is_blank_transcript(text)


def test_real_text_is_not_blank():
    assert not is_blank_transcript("hello")


@pytest.mark.asyncio
async def test_blank_output_is_not_forwarded():
    bridge, _, emitted = make_bridge(["[BLANK_AUDIO]"])

    assert await bridge.submit(SAMPLES) is None
    assert emitted == []
    assert not bridge.has_transcribed_speech
    assert bridge.metrics.blank_results == 1


@pytest.mark.asyncio
async def test_speech_sets_flag_and_latest_text():
    bridge, _, emitted = make_bridge(["  I moved to Seattle  "])

    assert await bridge.submit(SAMPLES) == "I moved to Seattle"
    assert emitted == ["I moved to Seattle"]
    assert bridge.has_transcribed_speech
    assert bridge.latest_text == "I moved to Seattle"

    bridge.reset_speech_flag()
    assert not bridge.has_transcribed_speech
    assert bridge.latest_text == "I moved to Seattle"


@pytest.mark.asyncio
async def test_duplicate_text_is_debounced_within_window():
    clock = FakeClock()
    bridge, _, emitted = make_bridge(["hello", "hello", "hello"], clock=clock)

    await bridge.submit(SAMPLES)
    clock.now += 0.5
    assert await bridge.submit(SAMPLES) is None
    clock.now += 1.5
    assert await bridge.submit(SAMPLES) == "hello"

    assert emitted == ["hello", "hello"]
    assert bridge.metrics.debounced_results == 1


@pytest.mark.asyncio
async def test_blank_between_duplicates_resets_debounce():
    clock = FakeClock()
    bridge, _, emitted = make_bridge(["hello", "[Silence]", "hello"], clock=clock)

    await bridge.submit(SAMPLES)
    clock.now += 0.1
    await bridge.submit(SAMPLES)
    clock.now += 0.1
    await bridge.submit(SAMPLES)

    assert emitted == ["hello", "hello"]


@pytest.mark.asyncio
async def test_submission_skipped_while_in_flight():
    bridge, transcriber, emitted = make_bridge(["first", "second"])
    transcriber.gate = asyncio.Event()

    first = asyncio.create_task(bridge.submit(SAMPLES))
    await asyncio.sleep(0)
    assert bridge.is_transcribing

    assert await bridge.submit(SAMPLES) is None
    assert transcriber.calls == 1

    transcriber.gate.set()
    assert await first == "first"
    assert not bridge.is_transcribing
    assert emitted == ["first"]


@pytest.mark.asyncio
async def test_transcriber_error_is_recorded_not_raised():
    bridge, transcriber, emitted = make_bridge([])
    transcriber.fail_with = CollaboratorRuntimeError("transcriber", "boom")

    assert await bridge.submit(SAMPLES) is None
    assert "boom" in bridge.error
    assert not bridge.is_transcribing
    assert bridge.metrics.errors == 1
    assert emitted == []


@pytest.mark.asyncio
async def test_async_text_callback_is_awaited():
    received = []

    async def on_text(text):
        await asyncio.sleep(0)
        received.append(text)

    bridge = TranscriptionBridge(FakeTranscriber(outputs=["hi there"]), make_config(), on_text=on_text)
    await bridge.submit(SAMPLES)

    assert received == ["hi there"]
