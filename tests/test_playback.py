"""
Tests for the synthesis request queue and the bounded playback queue.
"""

import asyncio

import pytest

from src.voiceloop.playback import PlaybackEntry, PlaybackQueue, SynthesisQueue

from tests.fakes import FakeSink, FakeTTS, make_config


def entry(i: int) -> PlaybackEntry:
    return PlaybackEntry(audio=f"chunk-{i}".encode(), text=f"chunk-{i}")


class TestPlaybackQueue:
    """Tests for the bounded playback queue."""

    @pytest.mark.asyncio
    async def test_overflow_drops_oldest_and_keeps_fifo(self):
        sink = FakeSink(blocked=True)
        queue = PlaybackQueue(sink, capacity=10)

        for i in range(12):
            queue.push(entry(i))

        assert len(queue) == 10
        assert queue.dropped == 2
        assert [e.text for e in queue.pending] == [f"chunk-{i}" for i in range(2, 12)]

        queue.stop()

    @pytest.mark.asyncio
    async def test_eleventh_entry_removes_exactly_the_oldest(self):
        queue = PlaybackQueue(FakeSink(blocked=True), capacity=10)

        for i in range(11):
            queue.push(entry(i))

        assert [e.text for e in queue.pending] == [f"chunk-{i}" for i in range(1, 11)]
        queue.stop()

    @pytest.mark.asyncio
    async def test_plays_in_order_one_at_a_time(self):
        sink = FakeSink(blocked=True)
        queue = PlaybackQueue(sink, capacity=10)
        for i in range(3):
            queue.push(entry(i))

        await asyncio.sleep(0)
        assert queue.is_playing
        assert queue.current.text == "chunk-0"
        assert len(queue) == 2

        sink.block.set()
        await queue.join()

        assert sink.played == [b"chunk-0", b"chunk-1", b"chunk-2"]
        assert not queue.is_playing
        assert queue.idle

    @pytest.mark.asyncio
    async def test_failed_chunk_is_skipped(self):
        sink = FakeSink(fail_on={b"chunk-1"})
        queue = PlaybackQueue(sink, capacity=10)
        for i in range(3):
            queue.push(entry(i))

        await queue.join()

        assert sink.played == [b"chunk-0", b"chunk-2"]

    @pytest.mark.asyncio
    async def test_stop_and_clear_empty_the_queue(self):
        sink = FakeSink(blocked=True)
        queue = PlaybackQueue(sink, capacity=10)
        for i in range(4):
            queue.push(entry(i))
        await asyncio.sleep(0)

        queue.stop()
        queue.clear()

        assert sink.stops == 1
        assert not queue.is_playing
        assert len(queue) == 0
        assert queue.idle

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            PlaybackQueue(FakeSink(), capacity=0)


class TestSynthesisQueue:
    """Tests for the single-flight synthesis queue."""

    @pytest.mark.asyncio
    async def test_three_sentences_become_three_playback_entries_in_order(self):
        sink = FakeSink(blocked=True)
        tts = FakeTTS()
        playback = PlaybackQueue(sink, capacity=10)
        synthesis = SynthesisQueue(tts, playback, make_config())

        for text in ("One.", "Two.", "Three."):
            synthesis.enqueue(text)
        await synthesis.join()

        assert tts.requests == ["One.", "Two.", "Three."]
        played_or_pending = [playback.current.text] + [e.text for e in playback.pending]
        assert played_or_pending == ["One.", "Two.", "Three."]

        sink.block.set()
        await playback.join()
        assert sink.played == [b"One.", b"Two.", b"Three."]

    @pytest.mark.asyncio
    async def test_failed_request_is_dropped_and_draining_resumes(self):
        sink = FakeSink()
        tts = FakeTTS(fail_on={"Bad."})
        playback = PlaybackQueue(sink, capacity=10)
        synthesis = SynthesisQueue(tts, playback, make_config())

        for text in ("One.", "Bad.", "Three."):
            synthesis.enqueue(text)
        await synthesis.join()
        await playback.join()

        assert tts.requests == ["One.", "Bad.", "Three."]
        assert sink.played == [b"One.", b"Three."]
        assert synthesis.error is None
        assert synthesis.idle

    @pytest.mark.asyncio
    async def test_error_with_nothing_left_is_surfaced(self):
        tts = FakeTTS(fail_on={"Bad."})
        synthesis = SynthesisQueue(tts, PlaybackQueue(FakeSink()), make_config())

        synthesis.enqueue("Bad.")
        await synthesis.join()

        assert "Bad." in synthesis.error
        assert synthesis.idle

    @pytest.mark.asyncio
    async def test_error_callback_receives_surfaced_error(self):
        errors = []
        tts = FakeTTS(fail_on={"Bad."})
        synthesis = SynthesisQueue(tts, PlaybackQueue(FakeSink()), make_config(), on_error=errors.append)

        synthesis.enqueue("One.")
        synthesis.enqueue("Bad.")
        await synthesis.join()

        assert errors == [synthesis.error]
        assert "Bad." in errors[0]

    @pytest.mark.asyncio
    async def test_only_one_request_in_flight(self):
        tts = FakeTTS()
        synthesis = SynthesisQueue(tts, PlaybackQueue(FakeSink()), make_config())

        synthesis.enqueue("One.")
        synthesis.enqueue("Two.")
        await asyncio.sleep(0)

        assert tts.requests == ["One."]
        assert [r.text for r in synthesis.pending] == ["One.", "Two."]
        await synthesis.join()
        assert tts.requests == ["One.", "Two."]

    @pytest.mark.asyncio
    async def test_blank_text_is_not_queued(self):
        synthesis = SynthesisQueue(FakeTTS(), PlaybackQueue(FakeSink()), make_config())

        synthesis.enqueue("   ")

        assert len(synthesis) == 0
        assert synthesis.idle

    @pytest.mark.asyncio
    async def test_cancel_and_clear(self):
        tts = FakeTTS()
        synthesis = SynthesisQueue(tts, PlaybackQueue(FakeSink()), make_config())
        synthesis.enqueue("One.")
        synthesis.enqueue("Two.")

        synthesis.cancel()
        synthesis.clear()

        assert tts.cancels == 1
        assert len(synthesis) == 0
        assert not synthesis.in_flight
