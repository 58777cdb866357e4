"""
Generation pipeline - one chat turn from user message to settled ledger entry.

Turn flow:
1. Persist the user message (and auto-title a fresh conversation)
2. Build the prompt context: mode prompt, summary, memories, history
3. Stream from the provider chain (primary, one fallback)
4. Forward visible text to the consumer as it arrives
5. Settle: persist the assistant message, spend its cost, bump updated_at
6. Every SUMMARY_INTERVAL assistant turns, refresh the summary (best effort)

Memory extraction over the user message runs concurrently with the stream.

The provider stream is consumed by a background task that pushes events
onto a queue. The HTTP response only reads from that queue, so a client
that disconnects stops receiving events but never cancels generation or
settlement.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db import (
    async_session_maker, Conversation, Message, MessageRole, DEFAULT_CONVERSATION_TITLE,
)
from app.services.credit_service import (
    CreditLedger, InsufficientCreditError, StorageConflictError, get_credit_ledger,
)
from app.services.llm_service import (
    ProviderChain, ProviderError, ProviderUnavailableError,
    estimate_message_tokens, estimate_tokens, get_provider_chain,
)
from app.services.memory_extractor import MemoryExtractor, get_memory_extractor
from app.services.memory_service import MemoryService
from app.services.pricing import calculate_credit_cost
from app.services.prompt_builder import (
    ChatMode, HISTORY_FETCH_LIMIT, build_messages, build_summary_messages,
)
from app.services.stream_filter import ReasoningFilter

logger = logging.getLogger(__name__)

SUMMARY_INTERVAL = 10
SUMMARY_SOURCE_LIMIT = 50
MAX_TITLE_LENGTH = 80
GENERATION_FAILED_MESSAGE = "Generation failed"


class ConversationNotFoundError(Exception):
    """Conversation does not exist or belongs to another user."""


@dataclass
class TurnEvent:
    type: str  # "content" | "done" | "error"
    data: Any


@dataclass
class TurnResult:
    """Outcome of a settled turn"""
    assistant_message_id: Optional[str] = None
    content: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    credit_cost: Decimal = Decimal("0")
    error: Optional[str] = None
    memories_saved: int = 0


class TurnStream:
    """Consumer side of a running turn."""

    def __init__(self, queue: asyncio.Queue, task: asyncio.Task):
        self._queue = queue
        self._task = task

    def __aiter__(self) -> AsyncIterator[TurnEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[TurnEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def wait_closed(self) -> TurnResult:
        """Wait for the turn to finish settling, regardless of consumption."""
        return await asyncio.shield(self._task)


def derive_title(content: str) -> str:
    return " ".join(content.split())[:MAX_TITLE_LENGTH]


class GenerationPipeline:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = async_session_maker,
        provider_chain: Optional[ProviderChain] = None,
        ledger: Optional[CreditLedger] = None,
        extractor: Optional[MemoryExtractor] = None,
        max_tokens: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._provider_chain = provider_chain
        self._ledger = ledger
        self.extractor = extractor or get_memory_extractor()
        self.max_tokens = max_tokens or settings.max_tokens
        self._background: Set[asyncio.Task] = set()

    @property
    def provider_chain(self) -> ProviderChain:
        if self._provider_chain is None:
            self._provider_chain = get_provider_chain()
        return self._provider_chain

    @property
    def ledger(self) -> CreditLedger:
        if self._ledger is None:
            self._ledger = get_credit_ledger()
        return self._ledger

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self):
        """Wait for outstanding background work (summaries, memory saves)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def start_turn(
        self,
        user_id: str,
        conversation_id: str,
        content: str,
        mode: ChatMode = ChatMode.CHAT,
    ) -> TurnStream:
        """
        Persist the user message, fix the prompt and start streaming.

        Raises ProviderUnavailableError before anything is written when no
        provider has credentials, and ConversationNotFoundError when the
        conversation is not the user's.
        """
        if not self.provider_chain.available():
            raise ProviderUnavailableError("No LLM provider is configured")

        async with self._session_factory() as db:
            result = await db.execute(
                select(Conversation).where(
                    Conversation.id == conversation_id,
                    Conversation.user_id == user_id,
                )
            )
            conversation = result.scalar_one_or_none()
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)

            result = await db.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.desc())
                .limit(HISTORY_FETCH_LIMIT)
            )
            history = list(reversed(result.scalars().all()))
            memories = await MemoryService(db).recent(user_id, settings.memory_recall_limit)

            db.add(Message(
                conversation_id=conversation_id,
                role=MessageRole.USER.value,
                content=content,
            ))
            title = derive_title(content)
            if title and conversation.title == DEFAULT_CONVERSATION_TITLE:
                conversation.title = title
            await db.commit()

            messages = build_messages(
                mode, content, history,
                summary=conversation.conversation_summary,
                memories=memories,
            )

        memory_task = None
        if settings.auto_extract_memories:
            memory_task = self._spawn(self._extract_memories(user_id, content))

        queue: asyncio.Queue = asyncio.Queue()
        task = self._spawn(self._run_turn(user_id, conversation_id, mode, messages, queue, memory_task))
        return TurnStream(queue, task)

    async def run_turn(
        self,
        user_id: str,
        conversation_id: str,
        content: str,
        mode: ChatMode = ChatMode.CHAT,
    ) -> TurnResult:
        """Run a turn to completion without streaming."""
        stream = await self.start_turn(user_id, conversation_id, content, mode)
        async for _ in stream:
            pass
        return await stream.wait_closed()

    async def _run_turn(
        self,
        user_id: str,
        conversation_id: str,
        mode: ChatMode,
        messages: List[Dict[str, str]],
        queue: asyncio.Queue,
        memory_task: Optional[asyncio.Task],
    ) -> TurnResult:
        outcome = TurnResult()
        try:
            raw_text = await self._generate(mode, messages, queue, outcome)
            await self._settle(user_id, conversation_id, mode, messages, raw_text, outcome)

            if memory_task is not None:
                outcome.memories_saved = await memory_task

            if outcome.error:
                await queue.put(TurnEvent("error", outcome.error))
            else:
                await queue.put(TurnEvent("done", {
                    "message_id": outcome.assistant_message_id,
                    "tokens_used": outcome.input_tokens + outcome.output_tokens,
                    "credit_cost": str(outcome.credit_cost),
                }))
            return outcome
        except Exception:
            logger.exception(f"Failed to settle turn in conversation {conversation_id}")
            outcome.error = GENERATION_FAILED_MESSAGE
            await queue.put(TurnEvent("error", GENERATION_FAILED_MESSAGE))
            raise
        finally:
            await queue.put(None)

    async def _generate(
        self,
        mode: ChatMode,
        messages: List[Dict[str, str]],
        queue: asyncio.Queue,
        outcome: TurnResult,
    ) -> str:
        """Stream from the provider chain into the queue. Returns the raw text."""
        reasoning_filter = ReasoningFilter() if mode.filters_reasoning else None
        raw_parts: List[str] = []
        visible_parts: List[str] = []
        input_tokens: Optional[int] = None
        output_tokens: Optional[int] = None

        async def emit(text: str):
            if text:
                visible_parts.append(text)
                await queue.put(TurnEvent("content", text))

        try:
            async for chunk in self.provider_chain.stream(messages, self.max_tokens):
                if chunk.input_tokens is not None:
                    input_tokens = chunk.input_tokens
                if chunk.output_tokens is not None:
                    output_tokens = chunk.output_tokens
                if chunk.content:
                    raw_parts.append(chunk.content)
                    await emit(reasoning_filter.feed(chunk.content) if reasoning_filter else chunk.content)
        except (ProviderError, ProviderUnavailableError) as e:
            logger.error(f"Generation failed: {e}")
            outcome.error = GENERATION_FAILED_MESSAGE

        if reasoning_filter:
            await emit(reasoning_filter.flush())

        raw_text = "".join(raw_parts)
        if input_tokens is None and output_tokens is None and raw_text:
            # Provider gave no usage report
            input_tokens = estimate_message_tokens(messages)
            output_tokens = estimate_tokens(raw_text)

        outcome.content = "".join(visible_parts)
        outcome.input_tokens = input_tokens or 0
        outcome.output_tokens = output_tokens or 0
        return raw_text

    async def _settle(
        self,
        user_id: str,
        conversation_id: str,
        mode: ChatMode,
        messages: List[Dict[str, str]],
        raw_text: str,
        outcome: TurnResult,
    ):
        """Persist the assistant message, charge for it and bump the conversation."""
        total_tokens = outcome.input_tokens + outcome.output_tokens
        outcome.credit_cost = calculate_credit_cost(outcome.input_tokens, outcome.output_tokens)

        async with self._session_factory() as db:
            assistant = Message(
                conversation_id=conversation_id,
                role=MessageRole.ASSISTANT.value,
                content=outcome.content,
                tokens_used=total_tokens,
                credit_cost=outcome.credit_cost,
            )
            db.add(assistant)
            await db.commit()
            outcome.assistant_message_id = assistant.id

        if outcome.credit_cost > 0:
            try:
                await self.ledger.spend(
                    user_id,
                    outcome.credit_cost,
                    f"AI message ({total_tokens} tokens)",
                    {
                        "message_id": outcome.assistant_message_id,
                        "conversation_id": conversation_id,
                        "input_tokens": outcome.input_tokens,
                        "output_tokens": outcome.output_tokens,
                        "mode": mode.value,
                    },
                )
            except (InsufficientCreditError, StorageConflictError) as e:
                # The generation already happened; the user is not blocked after the fact
                logger.error(
                    f"Could not charge {outcome.credit_cost} credits to user {user_id} "
                    f"for message {outcome.assistant_message_id}: {e}"
                )

        async with self._session_factory() as db:
            conversation = await db.get(Conversation, conversation_id)
            if conversation is not None:
                conversation.updated_at = datetime.utcnow()
                await db.commit()

            result = await db.execute(
                select(func.count(Message.id)).where(
                    Message.conversation_id == conversation_id,
                    Message.role == MessageRole.ASSISTANT.value,
                )
            )
            assistant_turns = result.scalar_one()

        if assistant_turns and assistant_turns % SUMMARY_INTERVAL == 0:
            self._spawn(self.summarize(user_id, conversation_id))

    async def summarize(self, user_id: str, conversation_id: str) -> Optional[str]:
        """Refresh conversation_summary. Failures are logged and ignored."""
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(Message)
                    .where(Message.conversation_id == conversation_id)
                    .order_by(Message.created_at.desc())
                    .limit(SUMMARY_SOURCE_LIMIT)
                )
                history = list(reversed(result.scalars().all()))

            response = await self.provider_chain.complete(
                build_summary_messages(history),
                max_tokens=settings.summary_max_tokens,
                temperature=settings.summary_temperature,
            )
            if not response.content:
                return None

            async with self._session_factory() as db:
                conversation = await db.get(Conversation, conversation_id)
                conversation.conversation_summary = response.content
                await db.commit()

            await self.ledger.charge_usage(
                user_id,
                response.tokens_input,
                response.tokens_output,
                description="Conversation summary",
                metadata={"conversation_id": conversation_id},
            )
            logger.info(f"Updated summary for conversation {conversation_id}")
            return response.content
        except Exception as e:
            logger.warning(f"Summary for conversation {conversation_id} failed: {e}")
            return None

    async def _extract_memories(self, user_id: str, content: str) -> int:
        candidates = self.extractor.extract(content)
        if not candidates:
            return 0
        try:
            async with self._session_factory() as db:
                return await MemoryService(db).save_candidates(user_id, candidates)
        except SQLAlchemyError as e:
            logger.error(f"Failed to save memories for user {user_id}: {e}")
            return 0


# Singleton instance
_pipeline: Optional[GenerationPipeline] = None


def get_generation_pipeline() -> GenerationPipeline:
    """Get the generation pipeline singleton."""
    global _pipeline
    if _pipeline is None:
        _pipeline = GenerationPipeline()
    return _pipeline
