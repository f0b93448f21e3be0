"""
Generation Orchestrator

Drives one cancellable generation at a time, process-wide:

    Idle -> Generating -> {Completed, Cancelled, Failed} -> Idle

Single-character sessions stream free text into an assistant message,
applying accumulated text at a throttled interval. Group sessions make one
non-streaming "scene director" call and materialize each returned action as
an attributed message.

Outcome rules:
- Cancelled: partial text is kept as the message's final content
- Failed: a brand-new message is removed; a continued message gets its
  previous content back
- Regeneration never replaces a message; the new one joins an alternates
  group with the original and becomes the active sibling
"""

import logging
import time
from contextlib import aclosing
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

from nexus_engine.config.models import SystemConfig
from nexus_engine.llm.base import ERROR_MESSAGES, AbortError, BaseLLMClient, LLMError, race_cancellation
from nexus_engine.llm.retry import with_retries
from nexus_engine.models import (
    Alternates,
    Cancelled,
    Character,
    Chunk,
    Completed,
    ConversationMessage,
    Failed,
    GenerationEvent,
    GenerationResult,
    GenerationState,
    GroupSession,
    KnowledgeEntry,
    MessageRole,
    NARRATOR_ID,
    NARRATOR_NAME,
    ReasoningStep,
    ResponseStarted,
    Session,
    ThinkingStepRecord,
    now_ms,
)
from nexus_engine.utils.cancellation import CancellationToken
from nexus_engine.utils.debug_logger import DebugLogger
from .context_window import fit_history
from .json_extraction import parse_turn_actions
from .memory_manager import MemoryManager
from .prompt_assembly import PromptAssemblyService
from .session_store import SessionStore
from .thinking import ThinkingService

logger = logging.getLogger(__name__)


class GenerationInProgressError(RuntimeError):
    """A generation is already running; new requests are rejected, not queued."""
    pass


class SessionNotFoundError(LookupError):
    """The session id does not exist in the store."""
    pass


class GenerationOrchestrator:
    """
    Runs chat turns against the store and the LLM client.

    ``on_error`` receives user-visible error and warning text. Cancellation
    is never reported there.
    """

    def __init__(
        self,
        store: SessionStore,
        llm_client: BaseLLMClient,
        config: Optional[SystemConfig] = None,
        assembler: Optional[PromptAssemblyService] = None,
        memory: Optional[MemoryManager] = None,
        thinking: Optional[ThinkingService] = None,
        debug_logger: Optional[DebugLogger] = None,
        on_error: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.llm_client = llm_client
        self.config = config or SystemConfig()
        self.on_error = on_error
        self.debug_logger = debug_logger
        self.assembler = assembler or PromptAssemblyService(self.config, index_cache=store.index_cache)
        self.memory = memory or MemoryManager(
            llm_client, self.config, on_warning=self._report, debug_logger=debug_logger
        )
        self.thinking = thinking or ThinkingService(
            llm_client, self.config, on_warning=self._report, debug_logger=debug_logger
        )
        self._clock = clock

        self._state = GenerationState.IDLE
        self._token: Optional[CancellationToken] = None
        self.last_error: Optional[str] = None

    @property
    def state(self) -> GenerationState:
        return self._state

    @property
    def is_generating(self) -> bool:
        return self._state == GenerationState.GENERATING

    def stop(self, reason: str = "Generation stopped by user.") -> bool:
        """Cancel the running generation. Returns False when idle."""
        if self._token is None:
            return False
        self._token.cancel(reason)
        return True

    def _report(self, message: str) -> None:
        self.last_error = message
        if self.on_error is not None:
            self.on_error(message)

    def _begin(self) -> CancellationToken:
        # Check and set happen in one synchronous step; no await in between.
        if self._state == GenerationState.GENERATING:
            logger.info("Generation already in progress, rejecting request")
            raise GenerationInProgressError("A generation is already in progress.")
        self._state = GenerationState.GENERATING
        self._token = CancellationToken()
        self.last_error = None
        return self._token

    def _end(self) -> None:
        self._state = GenerationState.IDLE
        self._token = None

    def _require_session(self, session_id: str):
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    def _context_size(self, session: Session) -> int:
        return session.settings.context_size or self.config.llm.context_window

    def _temperature(self, session: Session) -> float:
        if session.settings.temperature is not None:
            return session.settings.temperature
        return self.config.llm.temperature

    def _max_tokens(self, session: Session) -> int:
        if session.settings.max_output_tokens is not None:
            return session.settings.max_output_tokens
        return self.config.llm.max_response_tokens

    # --- Public operations ---

    async def send_message(self, session_id: str, content: str) -> GenerationResult:
        """
        Append a user message and generate the reply.

        Raises:
            GenerationInProgressError: Another generation is running
            SessionNotFoundError: Unknown session
        """
        token = self._begin()
        try:
            self._require_session(session_id)
            self.store.add_message(session_id, ConversationMessage(role=MessageRole.USER, content=content))
            try:
                history = await self._prepare_history(session_id, token)
            except AbortError:
                logger.info(f"Generation cancelled during summarization in session {session_id}")
                return Cancelled(reason=token.reason or "Generation stopped by user.")

            session = self._require_session(session_id)
            if session.is_group:
                return await self._run_group(session, history, token)
            return await self._run_single(session, history, token)
        finally:
            self._end()

    async def regenerate(self, session_id: str) -> GenerationResult:
        """
        Re-run the reply to the last user message.

        In single sessions the previous reply stays available as an
        alternate of the new one.
        """
        token = self._begin()
        try:
            session = self._require_session(session_id)
            history = self.store.history(session_id)
            last_user_index = next(
                (i for i in range(len(history) - 1, -1, -1) if history[i].role == MessageRole.USER),
                None,
            )
            if last_user_index is None:
                logger.info(f"Nothing to regenerate in session {session_id}")
                return Failed("There is no user message to respond to.")

            to_process = history[: last_user_index + 1]
            following = history[last_user_index + 1] if last_user_index + 1 < len(history) else None
            original_id = (
                following.id
                if following is not None and following.role == MessageRole.ASSISTANT
                else None
            )

            session = self.store.set_message_ids(session_id, [m.id for m in to_process])
            fitted = fit_history(to_process, self._context_size(session))

            if session.is_group:
                return await self._run_group(session, fitted, token)
            return await self._run_single(session, fitted, token, regenerate_from=original_id)
        finally:
            self._end()

    async def continue_generation(self, session_id: str) -> GenerationResult:
        """
        Ask the model to keep going on the current history.

        In single sessions a trailing assistant message is extended in place;
        no prefill and no thinking steps are used.
        """
        token = self._begin()
        try:
            session = self._require_session(session_id)
            history = self.store.history(session_id)
            fitted = fit_history(history, self._context_size(session))

            if session.is_group:
                return await self._run_group(session, fitted, token)

            target = history[-1] if history and history[-1].role == MessageRole.ASSISTANT else None
            return await self._run_single(
                session,
                fitted,
                token,
                continuation=True,
                continue_message_id=target.id if target else None,
            )
        finally:
            self._end()

    def set_active_alternate(self, session_id: str, message_id: str, direction: str) -> Optional[str]:
        """
        Show the previous or next sibling of a regenerated turn.

        Swaps the id in the session's turn order; its length and positions
        are unchanged. Returns the newly active id, or None if nothing moved.
        """
        if direction not in ("prev", "next"):
            raise ValueError(f"direction must be 'prev' or 'next', got {direction!r}")

        session = self.store.get_session(session_id)
        message = self.store.get_message(message_id)
        if session is None or message is None or message.alternates is None:
            return None
        if message_id not in session.message_ids:
            return None

        ids = message.alternates.ids
        index = message.alternates.active_index
        if direction == "prev" and index > 0:
            new_index = index - 1
        elif direction == "next" and index < len(ids) - 1:
            new_index = index + 1
        else:
            return None

        new_alternates = Alternates(ids=ids, active_index=new_index)
        for sibling_id in ids:
            self.store.update_message(sibling_id, alternates=new_alternates)

        new_active_id = ids[new_index]
        self.store.set_message_ids(
            session_id,
            [new_active_id if m == message_id else m for m in session.message_ids],
        )
        return new_active_id

    def lore_suggestions(self, session_id: str, window: int = 5) -> List[KnowledgeEntry]:
        """Lore entries related to the latest messages of a session."""
        session = self.store.get_session(session_id)
        if session is None:
            return []
        world = self.store.get_world(session.world_id)
        return self.assembler.suggest_lore(world, self.store.history(session_id)[-window:])

    # --- Internals ---

    async def _prepare_history(self, session_id: str, token: CancellationToken) -> List[ConversationMessage]:
        """Fit history to the budget and condense it when memory triggers."""
        session = self._require_session(session_id)
        fitted = fit_history(self.store.history(session_id), self._context_size(session))
        outcome = await self.memory.maybe_summarize(session, fitted, cancel_token=token)
        if outcome.triggered:
            self.store.save_message(outcome.marker)
            self.store.update_session(
                session_id,
                message_ids=[m.id for m in outcome.history],
                memory_summary=outcome.summary,
            )
        return outcome.history

    async def _direct_events(
        self,
        messages: List[Dict[str, str]],
        temperature: float,
        max_tokens: int,
        token: CancellationToken,
    ) -> AsyncIterator[GenerationEvent]:
        stream = self.llm_client.stream_with_history(
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            cancel_token=token,
        )
        async with aclosing(stream):
            async for text in stream:
                yield Chunk(text)

    async def _run_single(
        self,
        session: Session,
        history: Sequence[ConversationMessage],
        token: CancellationToken,
        regenerate_from: Optional[str] = None,
        continuation: bool = False,
        continue_message_id: Optional[str] = None,
    ) -> GenerationResult:
        character = self.store.get_character(session.character_id)
        if character is None:
            return self._fail_before_start("Active character not found")

        world = self.store.get_world(session.world_id)
        interaction_stats = self.store.interaction_stats(session.world_id)
        is_continuation = continue_message_id is not None
        use_thinking = self.config.thinking.enabled and not continuation
        prefill = None if continuation else (self.config.generation.response_prefill or None)
        temperature = self._temperature(session)
        max_tokens = self._max_tokens(session)

        if is_continuation:
            message = self.store.get_message(continue_message_id)
            base_content = message.content
        else:
            message = self.store.add_message(
                session.id,
                ConversationMessage(role=MessageRole.ASSISTANT, content="", is_thinking=use_thinking),
            )
            base_content = ""
        message_id = message.id

        sent_messages: List[Dict[str, str]] = []

        def build_messages(thinking_context: Optional[str]) -> List[Dict[str, str]]:
            components = self.assembler.assemble_prompt(
                history,
                character,
                user_persona=self.store.user_persona,
                world=world,
                memory_summary=session.memory_summary,
                interaction_stats=interaction_stats,
                prefill=prefill,
                thinking_context=thinking_context,
            )
            sent_messages[:] = components.messages
            return components.messages

        accumulated = ""
        interval = self.config.generation.render_interval_ms / 1000
        last_render: Optional[float] = None

        try:
            if use_thinking:
                events = self.thinking.generate(
                    history,
                    character.persona,
                    build_messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    cancel_token=token,
                    session_id=session.id,
                )
            else:
                events = self._direct_events(build_messages(None), temperature, max_tokens, token)

            async with aclosing(events):
                async for event in events:
                    match event:
                        case Chunk(text=text):
                            accumulated += text
                            now = self._clock()
                            if last_render is None or now - last_render >= interval:
                                self.store.update_message(
                                    message_id, content=base_content + accumulated, is_thinking=False
                                )
                                last_render = now
                        case ReasoningStep(title=title, content=step_content):
                            current = self.store.get_message(message_id)
                            self.store.update_message(
                                message_id,
                                thinking_process=current.thinking_process
                                + [ThinkingStepRecord(title=title, content=step_content)],
                            )
                        case ResponseStarted():
                            self.store.update_message(message_id, is_thinking=False)

                    if token.cancelled:
                        break
        except AbortError:
            token.cancel()
        except Exception as e:
            return self._fail_single(
                session, e, message_id, is_continuation, base_content, regenerate_from,
                use_thinking, sent_messages,
            )

        self.store.update_message(
            message_id,
            content=base_content + accumulated,
            is_thinking=False,
            timestamp=now_ms(),
        )
        if regenerate_from is not None:
            self._link_alternates(regenerate_from, message_id)

        self._log_chat(session.id, sent_messages, base_content + accumulated, temperature, max_tokens)

        if token.cancelled:
            logger.info(f"Generation cancelled in session {session.id}; kept {len(accumulated)} chars")
            return Cancelled(message_id=message_id, reason=token.reason or "Generation stopped by user.")

        logger.info(f"Generation completed in session {session.id}: {len(accumulated)} chars")
        return Completed(message_ids=[message_id])

    def _fail_before_start(self, error: str) -> Failed:
        self._report(f"Error: {error}")
        return Failed(error)

    def _fail_single(
        self,
        session: Session,
        error: Exception,
        message_id: str,
        is_continuation: bool,
        base_content: str,
        regenerate_from: Optional[str],
        use_thinking: bool,
        sent_messages: List[Dict[str, str]],
    ) -> Failed:
        if isinstance(error, LLMError):
            logger.error(f"Generation failed in session {session.id}: {error}")
            message = str(error)
        else:
            logger.exception(f"Unexpected error during generation in session {session.id}")
            message = ERROR_MESSAGES["unknown"]

        if is_continuation:
            self.store.update_message(message_id, content=base_content, is_thinking=False)
        else:
            self.store.delete_message(session.id, message_id)
            if regenerate_from is not None:
                current = self.store.get_session(session.id)
                self.store.set_message_ids(session.id, current.message_ids + [regenerate_from])

        self._log_chat(session.id, sent_messages, None, None, None, error=str(error))

        prefix = "Thinking process failed: " if use_thinking else "Error: "
        self._report(f"{prefix}{message}")
        return Failed(message, exception=error)

    def _link_alternates(self, original_id: str, new_id: str) -> None:
        """Make ``new_id`` the active, last sibling of ``original_id``'s group."""
        original = self.store.get_message(original_id)
        if original is None:
            return
        if original.alternates is not None:
            ids = original.alternates.ids + [new_id]
        else:
            ids = [original_id, new_id]
        alternates = Alternates(ids=ids, active_index=len(ids) - 1)
        for sibling_id in ids:
            self.store.update_message(sibling_id, alternates=alternates)
        logger.debug(f"Linked {len(ids)} alternates, active={new_id}")

    async def _run_group(
        self,
        session: GroupSession,
        history: Sequence[ConversationMessage],
        token: CancellationToken,
    ) -> GenerationResult:
        characters = [
            c for c in (self.store.get_character(cid) for cid in session.character_ids) if c is not None
        ]
        world = self.store.get_world(session.world_id)
        components = self.assembler.assemble_group_prompt(
            history,
            characters,
            session.scenario,
            user_persona=self.store.user_persona,
            world=world,
            memory_summary=session.memory_summary,
            interaction_stats=self.store.interaction_stats(session.world_id),
        )
        temperature = self._temperature(session)
        max_tokens = self._max_tokens(session)

        async def director_call():
            return await self.llm_client.generate_with_history(
                components.messages,
                temperature=temperature,
                max_tokens=max_tokens,
                json_mode=True,
            )

        try:
            response = await race_cancellation(
                with_retries(director_call, self.config.retry, description="Group director call"),
                token,
            )
            if token.cancelled:
                raise AbortError(token.reason or "Generation stopped by user.")
            actions = parse_turn_actions(response.content)
        except AbortError:
            logger.info(f"Group generation cancelled in session {session.id}; reply discarded")
            return Cancelled(reason=token.reason or "Generation stopped by user.")
        except LLMError as e:
            logger.error(f"Group generation failed in session {session.id}: {e}")
            self._log_chat(session.id, components.messages, None, temperature, max_tokens, error=str(e))
            self._report(f"Error: {e}")
            return Failed(str(e), exception=e)

        self._log_chat(session.id, components.messages, response.content, temperature, max_tokens)

        new_ids = []
        for action in actions:
            speaker = self._match_speaker(action.speaker_name, characters)
            message = ConversationMessage(
                role=MessageRole.ASSISTANT,
                content=action.content,
                character_id=speaker.id if speaker else NARRATOR_ID,
            )
            self.store.add_message(session.id, message)
            new_ids.append(message.id)

        logger.info(f"Group turn in session {session.id}: {len(new_ids)} actions")
        return Completed(message_ids=new_ids)

    @staticmethod
    def _match_speaker(name: str, characters: Sequence[Character]) -> Optional[Character]:
        """Character with exactly this name; None for the narrator or unknown names."""
        if name == NARRATOR_NAME:
            return None
        return next((c for c in characters if c.name == name), None)

    def _log_chat(
        self,
        session_id: str,
        messages: List[Dict[str, str]],
        response: Optional[str],
        temperature: Optional[float],
        max_tokens: Optional[int],
        error: Optional[str] = None,
    ) -> None:
        if self.debug_logger is None:
            return
        self.debug_logger.log_llm_interaction(
            conversation_id=session_id,
            interaction_type="chat",
            model=self.llm_client.model,
            prompt=messages,
            response=response,
            settings={"temperature": temperature, "max_tokens": max_tokens},
            error=error,
        )
