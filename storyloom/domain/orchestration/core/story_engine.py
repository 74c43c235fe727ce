from typing import TypedDict, Annotated, List, Dict, Any, Optional, Literal, Callable, Awaitable
import operator
import time

from langgraph.graph import StateGraph, END
from langchain_core.messages import BaseMessage
import structlog

from storyloom.domain.context import prompt_builder
from storyloom.domain.errors import GenerationError, InputValidationError
from storyloom.domain.models.session import Session, Segment, Choice, GameMode, generate_session_title
from storyloom.domain.orchestration.narrator.base_narrator import Narrator
from storyloom.domain.parsing.response_parser import parse_story_response, parse_choices_response
from storyloom.domain.persistence.persistence_coordinator import PersistenceCoordinator, SaveResult
from storyloom.domain.persistence.session_store import SessionStore, InMemorySessionStore, JsonFileSessionStore
from storyloom.domain.persistence.validation import validate_custom_scene, validate_custom_action
from storyloom.domain.streaming.stream_classifier import StreamClassifier, ClassifiedChunk
from storyloom.infrastructure.config import Settings
from storyloom.infrastructure.observability.logging import session_logger, metrics

logger = structlog.get_logger(__name__)

ChunkCallback = Callable[[str], Awaitable[None]]

CHOICE_TEMPERATURE = 0.7
CHOICE_MAX_TOKENS = 400
REGENERATE_TEMPERATURE_STEP = 0.1
MAX_TEMPERATURE = 1.0


class TurnState(TypedDict):
    """State for one pass through the turn graph"""
    kind: Literal["opening", "continue", "regenerate"]
    session: Optional[Session]
    mode: GameMode
    custom_scene: Optional[str]
    action: Optional[Choice]
    temperature: float
    callbacks: Dict[str, Optional[ChunkCallback]]
    messages: List[BaseMessage]
    raw_response: str
    segment: Optional[Segment]
    result: Optional[Session]
    trace: Annotated[List[str], operator.add]


class StoryEngine:
    """Runs story turns and keeps their sessions saved"""

    def __init__(
        self,
        narrator: Narrator,
        store: Optional[SessionStore] = None,
        settings: Optional[Settings] = None,
        on_save_failed: Optional[Callable[[SaveResult], Any]] = None
    ):
        self.narrator = narrator
        self.settings = settings or Settings()

        if store is None:
            store = JsonFileSessionStore(self.settings.save_dir) if self.settings.save_dir else InMemorySessionStore()
        self.store = store

        self.coordinator = PersistenceCoordinator(
            store,
            debounce_seconds=self.settings.save_debounce_seconds,
            max_attempts=self.settings.save_max_attempts,
            backoff_base_seconds=self.settings.save_backoff_base_seconds,
            conflict_tolerance_seconds=self.settings.save_conflict_tolerance_seconds,
            on_save_failed=on_save_failed
        )
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the turn graph"""

        workflow = StateGraph(TurnState)

        workflow.add_node("context_builder", self.context_builder_node)
        workflow.add_node("narrator", self.narrator_node)
        workflow.add_node("response_parser", self.response_parser_node)
        workflow.add_node("choice_generator", self.choice_generator_node)
        workflow.add_node("session_updater", self.session_updater_node)

        workflow.set_entry_point("context_builder")
        workflow.add_edge("context_builder", "narrator")
        workflow.add_edge("narrator", "response_parser")

        # Standard mode needs choices; ask for them separately if the story came without
        workflow.add_conditional_edges(
            "response_parser",
            self.route_after_parsing,
            {
                "needs_choices": "choice_generator",
                "complete": "session_updater"
            }
        )
        workflow.add_edge("choice_generator", "session_updater")
        workflow.add_edge("session_updater", END)

        return workflow.compile()

    async def context_builder_node(self, state: TurnState) -> Dict[str, Any]:
        """Assemble the prompt for this turn"""

        include_scene = self.settings.enable_illustrations
        session = state["session"]
        mode = state["mode"]

        if state["kind"] == "opening" or (state["kind"] == "regenerate" and session.turn == 0):
            if mode == GameMode.CUSTOM:
                messages = prompt_builder.custom_opening_messages(state["custom_scene"], include_scene)
            else:
                messages = prompt_builder.opening_messages(include_scene)
            return {"messages": messages, "trace": ["context_builder"]}

        if state["kind"] == "regenerate":
            # Re-ask the turn that produced the current segment
            segments = session.segment_history
            actions = session.action_history[:-1]
            action = session.action_history[-1]
            scene = segments[-1].scene_description or ""
        else:
            segments = session.context_segments()
            actions = session.action_history
            action = state["action"]
            scene = session.current_scene

        if mode == GameMode.CUSTOM:
            messages = prompt_builder.custom_continuation_messages(
                action.text, segments, actions, scene, include_scene, self.settings.custom_context_tokens
            )
        else:
            messages = prompt_builder.continuation_messages(
                action, segments, actions, scene, include_scene, self.settings.story_context_tokens
            )

        return {"messages": messages, "trace": ["context_builder"]}

    async def narrator_node(self, state: TurnState) -> Dict[str, Any]:
        """Stream the narrator response through a fresh classifier"""

        classifier = StreamClassifier(self.settings.reasoning_open_tag, self.settings.reasoning_close_tag)
        callbacks = state["callbacks"]
        fragments = []
        start = time.perf_counter()

        try:
            async for fragment in self.narrator.stream(
                state["messages"],
                temperature=state["temperature"],
                max_tokens=self.settings.max_response_tokens
            ):
                fragments.append(fragment)
                await self._emit(callbacks, classifier.process_chunk(fragment))
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(f"Failed to generate story: {e}", "api_error") from e

        await self._emit(callbacks, classifier.flush())
        self.narrator.update_activity()

        metrics.record_latency("narrator_stream", (time.perf_counter() - start) * 1000, {"kind": state["kind"]})

        return {"raw_response": "".join(fragments), "trace": ["narrator"]}

    async def response_parser_node(self, state: TurnState) -> Dict[str, Any]:
        """Turn the raw response into a Segment"""

        segment = parse_story_response(
            state["raw_response"],
            include_scene=self.settings.enable_illustrations,
            with_choices=state["mode"] == GameMode.STANDARD,
            open_tag=self.settings.reasoning_open_tag,
            close_tag=self.settings.reasoning_close_tag
        )
        return {"segment": segment, "trace": ["response_parser"]}

    async def choice_generator_node(self, state: TurnState) -> Dict[str, Any]:
        """Ask the narrator for choices in a second, non-streamed call"""

        segment = state["segment"]
        messages = prompt_builder.choices_messages(segment.text, segment.scene_description or "")

        try:
            response = await self.narrator.complete(messages, temperature=CHOICE_TEMPERATURE, max_tokens=CHOICE_MAX_TOKENS)
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(f"Failed to generate choices: {e}", "api_error") from e

        choices = parse_choices_response(
            response, self.settings.reasoning_open_tag, self.settings.reasoning_close_tag
        )
        return {"segment": segment.model_copy(update={"choices": choices}), "trace": ["choice_generator"]}

    async def session_updater_node(self, state: TurnState) -> Dict[str, Any]:
        """Apply the new segment to the session"""

        session = state["session"]
        segment = state["segment"]

        if session is None:
            result = Session(current_segment=segment, mode=state["mode"], custom_scene=state["custom_scene"])
        elif state["kind"] == "regenerate" or state["kind"] == "opening":
            result = session.replace_current(segment)
        else:
            result = session.advance(state["action"], segment)

        return {"result": result, "trace": ["session_updater"]}

    def route_after_parsing(self, state: TurnState) -> Literal["needs_choices", "complete"]:
        if state["mode"] == GameMode.STANDARD and not state["segment"].choices:
            return "needs_choices"
        return "complete"

    async def _emit(self, callbacks: Dict[str, Optional[ChunkCallback]], chunk: ClassifiedChunk):
        if chunk.reasoning_chunk and callbacks.get("on_reasoning"):
            await callbacks["on_reasoning"](chunk.reasoning_chunk)
        if chunk.narrative_chunk and callbacks.get("on_narrative"):
            await callbacks["on_narrative"](chunk.narrative_chunk)

    async def _run_turn(
        self,
        kind: str,
        session: Optional[Session],
        mode: GameMode,
        custom_scene: Optional[str] = None,
        action: Optional[Choice] = None,
        temperature: Optional[float] = None,
        on_narrative: Optional[ChunkCallback] = None,
        on_reasoning: Optional[ChunkCallback] = None
    ) -> Session:
        initial_state: TurnState = {
            "kind": kind,
            "session": session,
            "mode": mode,
            "custom_scene": custom_scene,
            "action": action,
            "temperature": temperature if temperature is not None else self.settings.story_temperature,
            "callbacks": {"on_narrative": on_narrative, "on_reasoning": on_reasoning},
            "messages": [],
            "raw_response": "",
            "segment": None,
            "result": None,
            "trace": []
        }

        start = time.perf_counter()
        final_state = await self.workflow.ainvoke(initial_state)
        result = final_state["result"]

        metrics.record_latency("story_turn", (time.perf_counter() - start) * 1000, {"kind": kind, "mode": mode.value})
        session_logger.log_turn_event(
            f"turn_{kind}",
            result.session_id,
            result.turn,
            data={"trace": final_state["trace"], "choices": len(result.current_segment.choices)}
        )
        return result

    async def start_game(
        self,
        mode: GameMode = GameMode.STANDARD,
        custom_scene: Optional[str] = None,
        on_narrative: Optional[ChunkCallback] = None,
        on_reasoning: Optional[ChunkCallback] = None
    ) -> Session:
        """Create a session from a freshly generated opening segment"""

        if mode == GameMode.CUSTOM:
            custom_scene = validate_custom_scene(custom_scene)
        else:
            custom_scene = None

        session = await self._run_turn(
            "opening", None, mode, custom_scene=custom_scene,
            on_narrative=on_narrative, on_reasoning=on_reasoning
        )
        await self.coordinator.write_now(session)
        return session

    async def choose(
        self,
        session: Session,
        choice: Choice,
        on_narrative: Optional[ChunkCallback] = None,
        on_reasoning: Optional[ChunkCallback] = None
    ) -> Session:
        """Advance a standard-mode session with one of the offered choices"""

        if session.mode != GameMode.STANDARD:
            raise InputValidationError("Choices are only available in standard mode", field="choice_id")
        if all(offered.id != choice.id for offered in session.current_segment.choices):
            raise InputValidationError(f"Choice {choice.id} is not offered by the current segment", field="choice_id")

        updated = await self._run_turn(
            "continue", session, session.mode, session.custom_scene, action=choice,
            on_narrative=on_narrative, on_reasoning=on_reasoning
        )
        await self.coordinator.write_now(updated)
        return updated

    async def custom_action(
        self,
        session: Session,
        text: str,
        on_narrative: Optional[ChunkCallback] = None,
        on_reasoning: Optional[ChunkCallback] = None
    ) -> Session:
        """Advance a custom-mode session with a player-written action"""

        if session.mode != GameMode.CUSTOM:
            raise InputValidationError("Custom actions are only available in custom mode", field="custom_action")

        action = Choice(text=validate_custom_action(text), is_player_authored=True)
        updated = await self._run_turn(
            "continue", session, session.mode, session.custom_scene, action=action,
            on_narrative=on_narrative, on_reasoning=on_reasoning
        )
        await self.coordinator.write_now(updated)
        return updated

    async def regenerate(
        self,
        session: Session,
        on_narrative: Optional[ChunkCallback] = None,
        on_reasoning: Optional[ChunkCallback] = None
    ) -> Session:
        """Replace the current segment with a fresh take at a slightly higher temperature"""

        temperature = min(self.settings.story_temperature + REGENERATE_TEMPERATURE_STEP, MAX_TEMPERATURE)
        updated = await self._run_turn(
            "regenerate", session, session.mode, session.custom_scene, temperature=temperature,
            on_narrative=on_narrative, on_reasoning=on_reasoning
        )
        await self.coordinator.write_now(updated)
        return updated

    async def rollback(self, session: Session, segment_index: int) -> Session:
        """Resume from an earlier segment, discarding everything after it"""

        try:
            rolled = session.rolled_back(segment_index)
        except IndexError as e:
            raise InputValidationError(str(e), field="segment_index") from e

        # Overwrite: the stored copy has more actions and would otherwise win
        await self.coordinator.write_now(rolled, overwrite=True)
        session_logger.log_turn_event("rollback", rolled.session_id, rolled.turn, data={"segment_index": segment_index})
        return rolled

    async def attach_illustration(self, session: Session, image_url: str) -> Session:
        """Attach a late-arriving illustration to the current segment"""

        segment = session.current_segment.model_copy(update={"image_url": image_url})
        updated = session.replace_current(segment)
        self.coordinator.schedule_write(updated)
        return updated

    async def load(self, session_id: str) -> Optional[Session]:
        return await self.store.get(session_id)

    async def delete(self, session_id: str) -> bool:
        """Delete a saved session and any write still waiting for it"""

        self.coordinator.cancel(session_id)
        deleted = await self.store.delete(session_id)
        logger.info("Session deleted", session_id=session_id, existed=deleted)
        return deleted

    async def list_sessions(self) -> List[Dict[str, Any]]:
        """Summaries of all saved sessions, most recently updated first"""

        summaries = []
        for session_id in await self.store.list_ids():
            session = await self.store.get(session_id)
            if session is None:
                continue
            summary = session.get_summary()
            summary["title"] = generate_session_title(session)
            summaries.append(summary)

        return sorted(summaries, key=lambda item: item["last_updated"], reverse=True)

    async def shutdown(self):
        """Drop pending writes and wait for in-flight ones"""

        self.coordinator.cleanup()
        await self.coordinator.wait_idle()
        logger.info("Story engine stopped")
