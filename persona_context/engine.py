"""ChatEngine: turn orchestrator wiring all components together."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import httpx

from .config import load_config
from .core.auto_summary import AutoSummarizer
from .core.billing import BillingService
from .core.dispatcher import BackgroundDispatcher
from .core.filters import filter_memories, filter_world_info
from .core.locks import SummarizationLockManager
from .core.memory import MemoryService
from .core.prompt import SystemPromptAssembler
from .core.store import ConversationStore
from .core.summarizer import SummaryGenerator
from .core.trigger import SummaryTriggerEvaluator
from .core.window import build_conversation, select_recency_window
from .storage.sqlite import SQLiteStore
from .token_counter import create_token_counter
from .types import (
    AddonSettings,
    Character,
    CharacterSettings,
    ChatModel,
    ContextExtractor,
    Conversation,
    DurableSummary,
    LLMProvider,
    LLMProviderError,
    Message,
    Persona,
    PersonaContextConfig,
    PlanTier,
    PromptInputs,
    RecencyWindow,
    SituationalContext,
    StoreError,
    TimeAwareness,
    TurnEvent,
    TurnOutcome,
    TurnRequest,
    TurnState,
    TurnValidationError,
    UserProfile,
    WorldInfoEntry,
)

logger = logging.getLogger(__name__)

GENERATION_ERROR_TEXT = "I'm sorry, I ran into a problem generating a response. Please try again."


# ---------------------------------------------------------------------------
# Context extractors
# ---------------------------------------------------------------------------

class NullContextExtractor:
    """Extractor used when no extraction endpoint is configured."""

    async def extract(
        self,
        conversation_id: str,
        character_id: str,
        user_id: str,
        addons: AddonSettings,
    ) -> None:
        logger.debug("No context extractor configured, skipping %s", conversation_id)


class HttpContextExtractor:
    """Posts the finished turn to an external situational-context extractor."""

    def __init__(self, url: str, timeout: float = 30.0, api_key: str = "") -> None:
        self.url = url
        self.timeout = timeout
        self.api_key = api_key

    async def extract(
        self,
        conversation_id: str,
        character_id: str,
        user_id: str,
        addons: AddonSettings,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.url,
                headers=headers,
                json={
                    "conversation_id": conversation_id,
                    "character_id": character_id,
                    "user_id": user_id,
                    "addons": addons.to_dict(),
                },
            )
        response.raise_for_status()


# ---------------------------------------------------------------------------
# Turn handle
# ---------------------------------------------------------------------------

@dataclass
class _TurnData:
    """Everything Gather loaded for one turn."""
    request: TurnRequest
    conversation: Conversation
    character: Character
    settings: CharacterSettings
    profile: UserProfile | None
    persona: Persona | None
    world_info: list[WorldInfoEntry]
    summaries: list[DurableSummary]
    latest_summary: DurableSummary | None
    situational: SituationalContext | None
    history: list[Message]
    boundary: int
    is_new_conversation: bool = False
    plan: PlanTier | None = None
    user_message: Message | None = None
    placeholder: Message | None = None
    state: TurnState = TurnState.GATHER


class TurnHandle:
    """A started turn: its reserved messages, an event stream and the outcome."""

    def __init__(
        self,
        turn_id: str,
        user_message: Message,
        placeholder: Message,
    ) -> None:
        self.turn_id = turn_id
        self.user_message = user_message
        self.placeholder = placeholder
        self.queue: asyncio.Queue[TurnEvent] = asyncio.Queue()
        self.task: asyncio.Task | None = None

    async def events(self) -> AsyncIterator[TurnEvent]:
        """Yield chunk events, then the final done event."""
        while True:
            event = await self.queue.get()
            yield event
            if event.kind == "done":
                return

    async def wait(self) -> TurnOutcome:
        if self.task is None:
            raise RuntimeError(f"Turn {self.turn_id} was never scheduled")
        return await asyncio.shield(self.task)


@dataclass
class _GenerationResult:
    content: str = ""
    error: str | None = None
    chunks: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ChatEngine:
    """Main orchestrator for chat turns.

    Usage:
        engine = ChatEngine(config_path="./persona-context.yaml")

        handle = await engine.start_turn(request)   # raises on validation/billing
        async for event in handle.events():
            ...
        outcome = await handle.wait()

    ``start_turn`` runs Gather, Bill and Reserve inline. Plan, Compress,
    Generate and Finalize run in a separate task, so a consumer that stops
    reading events never prevents the placeholder from being finalized.
    """

    def __init__(
        self,
        config_path: str | Path | None = None,
        config: PersonaContextConfig | None = None,
        store: ConversationStore | None = None,
        summary_llm: LLMProvider | None = None,
        chat_model: ChatModel | None = None,
        extractor: ContextExtractor | None = None,
        locks: SummarizationLockManager | None = None,
        dispatcher: BackgroundDispatcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or load_config(config_path)
        self._token_counter = create_token_counter(self.config.token_counter)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        if store is None:
            store = SQLiteStore(db_path=self.config.storage.sqlite_path)
        if locks is None:
            locks = SummarizationLockManager(
                release_delay=self.config.summarization.lock_release_delay,
            )
        self.store = store
        self.locks = locks
        self.dispatcher = dispatcher if dispatcher is not None else BackgroundDispatcher()
        self._init_providers(summary_llm, chat_model)
        self._init_extractor(extractor)
        self._init_components()

    def _init_providers(self, summary_llm: LLMProvider | None, chat_model: ChatModel | None) -> None:
        """Build OpenRouter providers for whatever was not injected."""
        if summary_llm is None or chat_model is None:
            from .providers.openrouter import OpenRouterProvider

        if summary_llm is None:
            summ = self.config.summarization
            summary_llm = OpenRouterProvider(
                base_url=summ.base_url,
                model=summ.model,
                temperature=summ.temperature,
                api_key_env=summ.api_key_env,
                # AutoSummarizer owns the retry loop
                max_retries=1,
            )
        if chat_model is None:
            chat = self.config.chat
            chat_model = OpenRouterProvider(
                base_url=chat.base_url,
                model=self.config.plans[self.config.default_plan].model,
                temperature=chat.temperature,
                api_key_env=chat.api_key_env,
                timeout=chat.generation_timeout,
            )
        self.summary_llm = summary_llm
        self.chat_model = chat_model

    def _init_extractor(self, extractor: ContextExtractor | None) -> None:
        if extractor is not None:
            self.extractor = extractor
        elif self.config.extractor.url:
            self.extractor = HttpContextExtractor(
                url=self.config.extractor.url,
                timeout=self.config.extractor.timeout,
            )
        else:
            self.extractor = NullContextExtractor()

    def _init_components(self) -> None:
        summ = self.config.summarization
        self.trigger = SummaryTriggerEvaluator(interval=summ.interval, locks=self.locks)
        self.generator = SummaryGenerator(self.summary_llm, max_tokens=summ.max_tokens)
        self.auto_summarizer = AutoSummarizer(
            store=self.store,
            generator=self.generator,
            locks=self.locks,
            max_attempts=summ.max_attempts,
            retry_backoff=summ.retry_backoff,
        )
        self.assembler = SystemPromptAssembler(
            delay_threshold=self.config.time_awareness.delay_threshold,
        )
        self.billing = BillingService(
            store=self.store,
            plans=self.config.plans,
            default_plan=self.config.default_plan,
        )
        self.memories = MemoryService(self.store, self.generator, self.billing)

    # -- public API --

    async def start_turn(self, request: TurnRequest) -> TurnHandle:
        """Gather, bill and reserve, then schedule the rest of the turn.

        Raises TurnValidationError or BillingError before anything is written.
        """
        for name in ("conversation_id", "user_id", "character_id", "message"):
            if not isinstance(getattr(request, name), str):
                raise TurnValidationError(f"{name} must be a string")
        for name in ("persona_id", "world_info_id"):
            value = getattr(request, name)
            if value is not None and not isinstance(value, str):
                raise TurnValidationError(f"{name} must be a string or null")
        if not request.message.strip():
            raise TurnValidationError("Message must not be empty")

        data = await self._gather(request)

        self._transition_to(data, TurnState.BILL)
        data.plan = self.billing.resolve_plan(data.profile)
        await self.billing.charge_turn(request.user_id, data.plan)

        self._transition_to(data, TurnState.RESERVE)
        try:
            if data.is_new_conversation:
                data.conversation = await asyncio.to_thread(
                    self.store.create_conversation,
                    request.conversation_id, request.user_id, request.character_id,
                )
            data.user_message, data.placeholder = await asyncio.to_thread(
                self.store.reserve_turn, request.conversation_id, request.message,
            )
        except StoreError:
            await asyncio.to_thread(self.store.add_credits, request.user_id, data.plan.credit_cost)
            logger.warning(
                "Reserve failed for %s, refunded %d credits",
                request.conversation_id, data.plan.credit_cost,
            )
            raise

        handle = TurnHandle(
            turn_id=str(uuid.uuid4()),
            user_message=data.user_message,
            placeholder=data.placeholder,
        )
        handle.task = asyncio.ensure_future(self._run(data, handle))
        return handle

    async def run_turn(self, request: TurnRequest) -> tuple[list[TurnEvent], TurnOutcome]:
        """Start a turn and collect all of its events."""
        handle = await self.start_turn(request)
        events = [event async for event in handle.events()]
        return events, await handle.wait()

    async def create_memory(self, conversation_id: str, user_id: str) -> DurableSummary:
        return await self.memories.create_memory(conversation_id, user_id)

    async def get_latest_summary(self, conversation_id: str) -> DurableSummary | None:
        return await asyncio.to_thread(self.store.get_automatic_summary, conversation_id)

    async def aclose(self) -> None:
        await self.dispatcher.drain(timeout=self.config.extractor.timeout)
        self.store.close()

    # -- states --

    def _transition_to(self, data: _TurnData, new_state: TurnState) -> None:
        old = data.state
        data.state = new_state
        logger.info(
            "Turn %s: %s -> %s",
            data.request.conversation_id[:12], old.value, new_state.value,
        )

    async def _gather(self, request: TurnRequest) -> _TurnData:
        store = self.store
        cid = request.conversation_id

        character = await asyncio.to_thread(store.get_character, request.character_id)
        if character is None:
            raise TurnValidationError(f"Character not found: {request.character_id}")

        conversation = await asyncio.to_thread(store.get_conversation, cid)
        is_new = conversation is None
        if is_new:
            # created in Reserve, after billing succeeds
            conversation = Conversation(id=cid, user_id=request.user_id, character_id=request.character_id)
        elif conversation.user_id != request.user_id or conversation.character_id != request.character_id:
            raise TurnValidationError(f"Conversation {cid} belongs to another user or character")

        (
            settings, profile, persona, world_info, summaries,
            latest_summary, situational, history, boundary,
        ) = await asyncio.gather(
            asyncio.to_thread(store.get_character_settings, request.character_id),
            asyncio.to_thread(store.get_user, request.user_id),
            asyncio.to_thread(store.get_persona, request.persona_id) if request.persona_id else _none(),
            asyncio.to_thread(store.get_world_info, request.world_info_id) if request.world_info_id else _empty(),
            asyncio.to_thread(store.get_summaries, request.character_id, request.user_id),
            asyncio.to_thread(store.get_latest, request.character_id, request.user_id),
            asyncio.to_thread(store.get_latest_situational_context, cid),
            asyncio.to_thread(store.get_history, cid),
            asyncio.to_thread(store.get_boundary, cid),
        )

        return _TurnData(
            request=request,
            conversation=conversation,
            character=character,
            settings=settings,
            profile=profile,
            persona=persona,
            world_info=world_info,
            summaries=summaries,
            latest_summary=latest_summary,
            situational=situational,
            history=history,
            boundary=boundary,
            is_new_conversation=is_new,
        )

    async def _run(self, data: _TurnData, handle: TurnHandle) -> TurnOutcome:
        """Plan through Finalize. Never raises; failures finalize the placeholder."""
        cid = data.request.conversation_id
        summary_triggered = False
        try:
            self._transition_to(data, TurnState.PLAN)
            budget = self._window_budget(data.plan)
            window = select_recency_window(
                data.history, budget, self.config.context.max_pairs, self._token_counter,
            )
            trigger = self.trigger.evaluate(cid, data.history, data.boundary)

            if trigger.triggered:
                summary_triggered = True
                self._transition_to(data, TurnState.COMPRESS)
                outcome = await self.auto_summarizer.run(trigger, data.conversation, data.character)
                if outcome is not None:
                    data.latest_summary = outcome.summary
                    data.summaries = [outcome.summary] + [
                        s for s in data.summaries if s.id != outcome.summary.id
                    ]
                    budget = max(0, budget - self._token_counter(outcome.summary.prose))
                    window = select_recency_window(
                        data.history, budget, self.config.context.max_pairs, self._token_counter,
                    )
                else:
                    logger.warning("Compression failed for %s, continuing with current window", cid)

            system_prompt = self.assembler.build(self._prompt_inputs(data))
            plan = build_conversation(
                system_prompt,
                window,
                data.request.message,
                data.plan.max_context_tokens,
                self._token_counter,
            )
            metadata = await self._ceiling_metadata(cid, window, plan.total_tokens, data.plan)

            self._transition_to(data, TurnState.GENERATE)
            result = await self._generate(plan.messages, data.plan, handle)
        except Exception as e:
            logger.error("Turn for %s failed in %s: %s", cid, data.state.value, e, exc_info=True)
            return await self._fail(data, handle, str(e), summary_triggered)

        self._transition_to(data, TurnState.FINALIZE)
        final_text = result.content if result.error is None else (
            result.content + ("\n\n" if result.content else "") + GENERATION_ERROR_TEXT
        )
        try:
            message = await self._finalize(data, final_text)
        except Exception as e:
            logger.error("Could not persist reply for %s: %s", cid, e)
            return await self._fail(data, handle, str(e), summary_triggered, finalize=False)

        metadata["autoSummaryTriggered"] = summary_triggered
        if result.error is not None:
            metadata["error"] = result.error
        await handle.queue.put(TurnEvent(kind="done", metadata=metadata))

        self._transition_to(data, TurnState.COMPLETED if result.error is None else TurnState.FAILED)
        return TurnOutcome(
            state=data.state,
            message=message,
            error=result.error,
            auto_summary_triggered=summary_triggered,
            context_ceiling_reached=bool(metadata.get("contextCeilingReached")),
        )

    # -- steps --

    def _window_budget(self, plan: PlanTier) -> int:
        ctx = self.config.context
        return max(0, min(ctx.window_token_budget, plan.max_context_tokens - ctx.safety_margin))

    def _prompt_inputs(self, data: _TurnData) -> PromptInputs:
        req = data.request
        addons = data.conversation.addons
        lookback = self.config.context.recent_message_lookback
        limit = self.config.context.max_addon_entries
        recent = [m for m in data.history if not m.is_placeholder]

        world_info = []
        if addons.dynamic_world_info:
            world_info = filter_world_info(data.world_info, req.message, recent, limit, lookback)
        memories = []
        if addons.enhanced_memory:
            memories = filter_memories(
                [s.as_memory() for s in data.summaries], req.message, recent, limit, lookback,
            )

        user_name = (
            (data.persona.name if data.persona else "")
            or (data.profile.username if data.profile else "")
            or "User"
        )
        return PromptInputs(
            character=data.character,
            addons=addons,
            user_name=user_name,
            persona=data.persona,
            situational_context=data.situational,
            chat_mode=data.settings.chat_mode,
            time_awareness=self._time_awareness(data),
            world_info=world_info,
            memories=memories,
            latest_summary=data.latest_summary,
        )

    def _time_awareness(self, data: _TurnData) -> TimeAwareness | None:
        if not (data.settings.time_awareness or data.conversation.addons.time_awareness):
            return None
        now = self._clock()
        last_ai = max(
            (m for m in data.history if m.is_countable_ai),
            key=lambda m: m.created_at,
            default=None,
        )
        delay = int((now - last_ai.created_at).total_seconds()) if last_ai else None
        return TimeAwareness(
            now=now,
            timezone=data.profile.timezone if data.profile else "UTC",
            delay_seconds=delay,
        )

    async def _ceiling_metadata(
        self,
        conversation_id: str,
        window: RecencyWindow,
        total_tokens: int,
        plan: PlanTier,
    ) -> dict:
        if not window.ceiling_reached:
            return {}
        first_time = await asyncio.to_thread(self.store.mark_ceiling_warned, conversation_id)
        if not first_time:
            return {}
        logger.info("Context ceiling reached for %s, notifying once", conversation_id)
        return {
            "contextCeilingReached": True,
            "droppedMessages": window.dropped_count,
            "tokenUsage": {
                "total": total_tokens,
                "max": plan.max_context_tokens,
                "percentUsed": round(total_tokens / plan.max_context_tokens * 100),
            },
        }

    async def _generate(
        self,
        messages: list[dict],
        plan: PlanTier,
        handle: TurnHandle,
    ) -> _GenerationResult:
        """Stream the reply into the handle's queue under a hard deadline."""
        result = _GenerationResult()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.chat.generation_timeout
        stream = self.chat_model.stream_chat(
            messages, model=plan.model, max_tokens=self.config.chat.max_tokens,
        )
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError
                try:
                    chunk = await asyncio.wait_for(stream.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    break
                if not chunk:
                    continue
                result.chunks.append(chunk)
                await handle.queue.put(TurnEvent(kind="chunk", content=chunk))
        except asyncio.TimeoutError:
            result.error = f"Generation timed out after {self.config.chat.generation_timeout}s"
        except LLMProviderError as e:
            result.error = str(e)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.debug("Error closing model stream: %s", e)

        result.content = "".join(result.chunks)
        if result.error is not None:
            logger.warning("Generation failed (%s): %s", plan.model, result.error)
            await handle.queue.put(TurnEvent(kind="chunk", content=_error_chunk(result.content)))
        return result

    async def _finalize(self, data: _TurnData, content: str) -> Message:
        """Convert the placeholder, bump activity, dispatch extraction once."""
        req = data.request
        chat = self.config.chat
        message: Message | None = None
        for attempt in range(1, chat.persist_attempts + 1):
            try:
                message = await asyncio.to_thread(
                    self.store.finalize_message, data.placeholder.id, content, data.situational,
                )
                break
            except StoreError as e:
                logger.warning(
                    "Finalize attempt %d/%d for %s failed: %s",
                    attempt, chat.persist_attempts, req.conversation_id, e,
                )
                if attempt == chat.persist_attempts:
                    raise
                await asyncio.sleep(chat.persist_backoff * attempt)

        try:
            await asyncio.to_thread(
                self.store.touch_activity, req.conversation_id, req.character_id, self._clock(),
            )
        except StoreError as e:
            logger.warning("Could not update activity for %s: %s", req.conversation_id, e)

        self.dispatcher.dispatch(
            self.extractor.extract(
                req.conversation_id, req.character_id, req.user_id, data.conversation.addons,
            ),
            name=f"extract:{req.conversation_id}",
        )
        return message

    async def _fail(
        self,
        data: _TurnData,
        handle: TurnHandle,
        error: str,
        summary_triggered: bool,
        finalize: bool = True,
    ) -> TurnOutcome:
        message = None
        if finalize:
            try:
                message = await asyncio.to_thread(
                    self.store.finalize_message, data.placeholder.id, GENERATION_ERROR_TEXT,
                )
            except Exception as e:
                logger.error("Could not finalize placeholder for %s: %s", data.request.conversation_id, e)
            await handle.queue.put(TurnEvent(kind="chunk", content=GENERATION_ERROR_TEXT))
        await handle.queue.put(TurnEvent(
            kind="done",
            metadata={"autoSummaryTriggered": summary_triggered, "error": error},
        ))
        self._transition_to(data, TurnState.FAILED)
        return TurnOutcome(
            state=TurnState.FAILED,
            message=message,
            error=error,
            auto_summary_triggered=summary_triggered,
        )


def _error_chunk(partial: str) -> str:
    return ("\n\n" if partial else "") + GENERATION_ERROR_TEXT


async def _none() -> None:
    return None


async def _empty() -> list:
    return []
