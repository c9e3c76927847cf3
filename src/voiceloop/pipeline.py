"""
Voice pipeline orchestrator.

Owns one conversation:
- Builds memory context and submits single-flight generation turns
- Splits the token stream into sentences and queues them for synthesis
- Commits what the user said to long-term memory
- Interrupts everything in flight when a new utterance arrives
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import numpy as np
import structlog

from src.voiceloop.capture import UtteranceBoundary
from src.voiceloop.config import get_config
from src.voiceloop.context import ContextBuilder, is_denial
from src.voiceloop.errors import CollaboratorLoadError
from src.voiceloop.llm import ConversationHistory, LLMClient
from src.voiceloop.memory import MemoryRecord, MemoryStore
from src.voiceloop.playback import AudioSink, PlaybackQueue, SynthesisQueue
from src.voiceloop.tts_providers.base import TTSProvider

logger = structlog.get_logger(__name__)

SENTENCE_END = re.compile(r"[.?!]")

# Inputs of at most this many words are not worth remembering.
MIN_MEMORY_WORDS = 1
# Inputs of at least this many words are summarized before storing.
SUMMARIZE_MIN_WORDS = 15

# A response containing any of these means the model claimed to have no
# memory; storing the exchange would poison later context.
DENIAL_PHRASES_FOR_STORAGE = (
    "don't have personal memories",
    "don't retain information",
    "start from a blank slate",
    "cannot recall past conversations",
    "don't have memory",
    "i cannot recall",
    "i don't recall",
    "i am unable to recall",
    "i don't have information about you",
    "i don't know your name",
)

WELCOME_BACK_TRIGGER = "You are {AGENT_NAME}. Briefly welcome the user back by knowing what is the user's name."
WELCOME_BACK_FALLBACK = "You are {AGENT_NAME}. Briefly welcome the user back."
FIRST_VISIT_GREETING = (
    "Welcome! I'm {AGENT_NAME}, your conversational companion. "
    "I keep memories of our chats so we can pick up where we left off. "
    "To help me remember you next time, what should I call you?"
)


class TurnState(str, Enum):
    """State of the generation turn."""
    IDLE = "idle"
    CONTEXT_BUILDING = "context_building"
    SUBMITTED = "submitted"
    STREAMING = "streaming"
    COMPLETING = "completing"
    INTERRUPTED = "interrupted"


@dataclass
class TurnMetrics:
    """Metrics for a single conversation turn."""
    turn_id: int = 0
    start_time: float = 0.0
    context_ms: float = 0.0
    llm_first_token_ms: float = 0.0
    llm_total_ms: float = 0.0
    sentences_spoken: int = 0
    total_turn_ms: float = 0.0
    had_audio: bool = False
    was_interrupted: bool = False

    def finalize(self) -> None:
        """Calculate total turn time."""
        if self.start_time > 0:
            self.total_turn_ms = (time.time() - self.start_time) * 1000


@dataclass
class GenerationTurn:
    """The single in-flight generation request."""
    turn_id: int
    user_text: Optional[str]
    audio: Optional[np.ndarray] = None
    messages: List[Dict[str, Any]] = field(default_factory=list)
    response: str = ""
    metrics: TurnMetrics = field(default_factory=TurnMetrics)

    @property
    def is_greeting(self) -> bool:
        return self.user_text is None


def count_words(text: str) -> int:
    return len((text or "").split())


class VoicePipeline:
    """
    Main voice pipeline orchestrator.

    Every submission first calls `interrupt()` to retire the previous turn
    synchronously, then schedules the new turn as a task. The new task waits
    for the retired one to unwind before touching shared state.
    """

    def __init__(
        self,
        llm: LLMClient,
        tts: TTSProvider,
        sink: AudioSink,
        memory: Optional[MemoryStore] = None,
        config: Optional[Any] = None,
        *,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.config = config or get_config()
        self._llm = llm
        self._tts = tts
        self._memory = memory
        self._on_error = on_error

        self.history = ConversationHistory(window=self.config.history_window)
        self.context = ContextBuilder(memory, self.config)
        self.playback = PlaybackQueue(sink, capacity=self.config.playback_queue_capacity)
        self.synthesis = SynthesisQueue(tts, self.playback, self.config, on_error=self._on_synthesis_error)

        self._state = TurnState.IDLE
        self._turn: Optional[GenerationTurn] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._retiring: List[asyncio.Task] = []
        self._memory_tasks: Set[asyncio.Task] = set()
        self._turn_counter = 0
        self._completed_turns: List[TurnMetrics] = []

        self._sentence_buffer = ""
        self._has_spoken = False
        self.error: Optional[str] = None
        self.total_interruptions = 0

    # --- Properties ---

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def turn(self) -> Optional[GenerationTurn]:
        return self._turn

    @property
    def sentence_buffer(self) -> str:
        return self._sentence_buffer

    @property
    def has_spoken(self) -> bool:
        return self._has_spoken

    @property
    def completed_turns(self) -> List[TurnMetrics]:
        return list(self._completed_turns)

    # --- Lifecycle ---

    async def start(self) -> None:
        """
        Load every collaborator.

        Raises:
            CollaboratorLoadError: A collaborator failed; the error is also
                kept on `self.error`
        """
        collaborators = [self._llm, self._tts]
        if self._memory is not None:
            collaborators.append(self._memory)

        for collaborator in collaborators:
            try:
                await collaborator.load()
            except CollaboratorLoadError as e:
                self._set_error(str(e))
                raise

        logger.info("Pipeline started", collaborators=[c.name for c in collaborators])

    async def stop(self) -> None:
        """Interrupt, flush pending memory writes and close collaborators."""
        self.interrupt()
        if self._retiring:
            await asyncio.gather(*self._retiring, return_exceptions=True)
            self._retiring.clear()
        if self._memory_tasks:
            await asyncio.gather(*list(self._memory_tasks), return_exceptions=True)

        for collaborator in (self._llm, self._tts, self._memory):
            if collaborator is None:
                continue
            try:
                await collaborator.close()
            except Exception as e:
                logger.warning("Error closing collaborator", collaborator=collaborator.name, error=str(e))

        logger.info(
            "Pipeline stopped",
            total_turns=len(self._completed_turns),
            total_interruptions=self.total_interruptions,
        )

    # --- Submission ---

    def handle_utterance(self, boundary: UtteranceBoundary) -> Optional[asyncio.Task]:
        """Start a turn for a detected end of utterance."""
        text = (boundary.text or "").strip()
        if not text:
            logger.debug("Ignoring empty utterance")
            return None
        return self._submit(text, boundary.audio)

    def submit_text(self, text: str) -> Optional[asyncio.Task]:
        """Start a turn for typed input."""
        text = (text or "").strip()
        if not text:
            return None
        return self._submit(text, None)

    def _submit(self, text: Optional[str], audio: Optional[np.ndarray]) -> asyncio.Task:
        self.interrupt()

        self._turn_counter += 1
        turn = GenerationTurn(
            turn_id=self._turn_counter,
            user_text=text,
            audio=audio,
            metrics=TurnMetrics(turn_id=self._turn_counter, start_time=time.time(), had_audio=audio is not None),
        )
        retiring, self._retiring = self._retiring, []
        self._turn_task = asyncio.create_task(self._run_turn(turn, retiring))
        return self._turn_task

    async def greet(self) -> Optional[str]:
        """
        Open the conversation.

        With no stored memories, speaks a fixed introduction and returns it.
        Otherwise starts a welcome-back turn and returns None.
        """
        first_visit = True
        if self._memory is not None:
            try:
                first_visit = not await self._memory.get_all()
            except Exception as e:
                logger.warning("Could not read memories for greeting", error=str(e))

        if not first_visit:
            self._submit(None, None)
            return None

        self.interrupt()
        greeting = FIRST_VISIT_GREETING.replace("{AGENT_NAME}", self.config.agent_name)
        self.history.add_assistant_message(greeting)
        self._speak(greeting)
        logger.info("First visit greeting")
        return greeting

    # --- Interrupt controller ---

    def interrupt(self) -> None:
        """
        Retire all in-flight work and return to Idle with empty queues.

        Safe to call at any time, any number of times.
        """
        task = self._turn_task
        active = self._state != TurnState.IDLE or (task is not None and not task.done())

        # (a) abort generation and synthesis
        if active:
            self._llm.interrupt()
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                self._retiring.append(task)
        self._turn_task = None
        if active or self.synthesis.in_flight:
            self.synthesis.cancel()

        # (b) stop playback
        self.playback.stop()

        # (c) drop queued work
        self.synthesis.clear()
        self.playback.clear()

        # (d) sentence state
        self._sentence_buffer = ""
        self._has_spoken = False

        # (e) idle
        if active:
            self._state = TurnState.INTERRUPTED
            self.total_interruptions += 1
            if self._turn is not None:
                self._turn.metrics.was_interrupted = True
                logger.info("Turn interrupted", turn_id=self._turn.turn_id)
        self._state = TurnState.IDLE

    # --- Turn ---

    async def _run_turn(self, turn: GenerationTurn, retiring: List[asyncio.Task]) -> None:
        if retiring:
            await asyncio.gather(*retiring, return_exceptions=True)

        self._turn = turn
        started = time.time()

        try:
            self._state = TurnState.CONTEXT_BUILDING
            turn.messages = await self._build_messages(turn)
            turn.metrics.context_ms = (time.time() - started) * 1000

            self._state = TurnState.SUBMITTED
            llm_start = time.time()
            async for token in self._llm.generate_streaming(turn.messages, turn.audio):
                if self._state == TurnState.SUBMITTED:
                    self._state = TurnState.STREAMING
                    turn.metrics.llm_first_token_ms = (time.time() - llm_start) * 1000
                self._on_token(turn, token)
            turn.metrics.llm_total_ms = (time.time() - llm_start) * 1000

        except asyncio.CancelledError:
            self._retire_cancelled(turn)
            raise
        except Exception as e:
            logger.error("Generation failed", turn_id=turn.turn_id, error=str(e))
            self._set_error(f"Generation failed: {e}")
            self._sentence_buffer = ""
            self._has_spoken = False
            self._state = TurnState.IDLE
            self._end_turn(turn)
            return

        self._state = TurnState.COMPLETING
        self._complete(turn)
        self._state = TurnState.IDLE

    async def _build_messages(self, turn: GenerationTurn) -> List[Dict[str, Any]]:
        if turn.is_greeting:
            trigger = WELCOME_BACK_TRIGGER.replace("{AGENT_NAME}", self.config.agent_name)
            system_prompt = await self.context.build(trigger)
            if not system_prompt:
                logger.warning("Context builder returned empty for welcome message, using fallback")
                system_prompt = WELCOME_BACK_FALLBACK.replace("{AGENT_NAME}", self.config.agent_name)
            return [{"role": "system", "content": system_prompt}]

        self.history.add_user_message(turn.user_text)
        system_prompt = await self.context.build(turn.user_text)

        messages: List[Dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(m.to_dict() for m in self.history.recent())
        return messages

    def _on_token(self, turn: GenerationTurn, token: str) -> None:
        turn.response += token
        self._sentence_buffer += token
        if SENTENCE_END.search(token):
            sentence = self._sentence_buffer.strip()
            self._sentence_buffer = ""
            if sentence:
                self._speak(sentence)
                self._has_spoken = True
                turn.metrics.sentences_spoken += 1

    def _speak(self, text: str) -> None:
        # Markdown emphasis is read aloud literally by TTS.
        cleaned = text.replace("*", "").strip()
        if cleaned:
            self.synthesis.enqueue(cleaned)

    def _complete(self, turn: GenerationTurn) -> None:
        remaining = self._sentence_buffer.strip()
        self._sentence_buffer = ""
        response = turn.response.strip()

        if not self._has_spoken:
            if response:
                self._speak(response)
                turn.metrics.sentences_spoken += 1
        elif remaining:
            self._speak(remaining)
            turn.metrics.sentences_spoken += 1
        self._has_spoken = False

        if response:
            self.history.add_assistant_message(response)
            self.error = None
            if not turn.is_greeting:
                self._commit_memory(turn.user_text, response)

        self._end_turn(turn)

    def _retire_cancelled(self, turn: GenerationTurn) -> None:
        partial = turn.response.strip()
        if partial:
            self.history.add_assistant_message(partial)
        turn.metrics.was_interrupted = True
        self._end_turn(turn)

    def _end_turn(self, turn: GenerationTurn) -> None:
        metrics = turn.metrics
        metrics.finalize()
        self._completed_turns.append(metrics)
        if self._turn is turn:
            self._turn = None

        logger.info(
            "Turn completed",
            turn_id=metrics.turn_id,
            context_ms=round(metrics.context_ms, 2),
            llm_first_token_ms=round(metrics.llm_first_token_ms, 2),
            llm_total_ms=round(metrics.llm_total_ms, 2),
            sentences_spoken=metrics.sentences_spoken,
            total_turn_ms=round(metrics.total_turn_ms, 2),
            had_audio=metrics.had_audio,
            was_interrupted=metrics.was_interrupted,
        )

    # --- Memory ---

    def _commit_memory(self, user_text: str, response: str) -> Optional[asyncio.Task]:
        if self._memory is None:
            return None

        if is_denial(response, DENIAL_PHRASES_FOR_STORAGE):
            logger.info("Skipping memory storage: response denies having memory")
            return None

        words = count_words(user_text)
        if words <= MIN_MEMORY_WORDS:
            logger.debug("Input too short, skipping memory storage", words=words)
            return None

        if words < SUMMARIZE_MIN_WORDS:
            coro = self._store_memory(user_text)
        else:
            coro = self._summarize_and_store(user_text)

        task = asyncio.create_task(coro)
        self._memory_tasks.add(task)
        task.add_done_callback(self._memory_tasks.discard)
        return task

    async def _store_memory(self, text: str) -> None:
        try:
            memory_id = await self._memory.add(text, "user")
        except Exception as e:
            logger.error("Failed to add memory", error=str(e))
            return
        logger.info("User input added to memory", memory_id=memory_id, words=count_words(text))

    async def _summarize_and_store(self, text: str) -> None:
        logger.info("Requesting summarization for user input", words=count_words(text))
        try:
            summary = (await self._llm.summarize(text)).strip()
        except Exception as e:
            logger.error("Failed to generate memory summary", error=str(e))
            return
        if not summary:
            logger.warning("Received empty summary, not saving to memory")
            return
        await self._store_memory(summary)

    async def list_memories(self) -> List[MemoryRecord]:
        if self._memory is None:
            return []
        return await self._memory.get_all()

    async def delete_memory(self, memory_id: str) -> bool:
        if self._memory is None:
            return False
        return await self._memory.delete(memory_id)

    # --- Helpers ---

    async def wait_until_idle(self) -> None:
        """Wait for the current turn, then for its audio to be synthesized and played."""
        while self._turn_task is not None and not self._turn_task.done():
            await asyncio.wait({self._turn_task})
        await self.synthesis.join()
        await self.playback.join()

    async def wait_for_memory(self) -> None:
        if self._memory_tasks:
            await asyncio.gather(*list(self._memory_tasks), return_exceptions=True)

    def _set_error(self, message: str) -> None:
        self.error = message
        if self._on_error is not None:
            self._on_error(message)

    def _on_synthesis_error(self, message: str) -> None:
        self._set_error(f"Speech synthesis failed: {message}")


async def create_pipeline(
    llm: LLMClient,
    tts: TTSProvider,
    sink: AudioSink,
    memory: Optional[MemoryStore] = None,
    config: Optional[Any] = None,
) -> VoicePipeline:
    """
    Create and start a new voice pipeline.

    Returns:
        Initialized and started VoicePipeline
    """
    pipeline = VoicePipeline(llm, tts, sink, memory, config)
    await pipeline.start()
    return pipeline
