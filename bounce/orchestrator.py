"""Debate state machine: rounds, consensus checks, pruning and judge synthesis."""

import asyncio
import copy
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import fields, replace
from typing import Any

from bounce import prompts as prompt_builder
from bounce.consensus_analyzer import (
    AnalysisOptions,
    analyze_consensus,
    identify_prunable_participants,
    update_consensus_with_trend,
)
from bounce.models import (
    COMPLETE,
    CONSENSUS,
    ERROR,
    IDLE,
    JUDGING,
    MAX_ROUNDS,
    PAUSED,
    RUNNING,
    WAITING_USER,
    BounceAction,
    BounceConfig,
    BounceEvent,
    BounceResponse,
    BounceRound,
    BounceState,
    ConsensusAnalysis,
    ParticipantConfig,
    PrunedParticipant,
)
from bounce.response_parser import (
    extract_agreements_and_disagreements,
    extract_confidence,
    extract_key_points,
    parse_stance,
)
from config.config_loader import PromptsConfig

logger = logging.getLogger(__name__)

SendMessage = Callable[[str, str, str, asyncio.Event | None], Awaitable[str]]
EventHandler = Callable[[BounceEvent], None]

# Actions
START = "START"
PAUSE = "PAUSE"
RESUME = "RESUME"
STOP = "STOP"
INJECT_MESSAGE = "INJECT_MESSAGE"
SKIP_TO_JUDGE = "SKIP_TO_JUDGE"
ADD_PARTICIPANT = "ADD_PARTICIPANT"
REMOVE_PARTICIPANT = "REMOVE_PARTICIPANT"
UPDATE_CONFIG = "UPDATE_CONFIG"

# Events
BOUNCE_STARTED = "BOUNCE_STARTED"
ROUND_STARTED = "ROUND_STARTED"
PARTICIPANT_THINKING = "PARTICIPANT_THINKING"
PARTICIPANT_RESPONDED = "PARTICIPANT_RESPONDED"
ROUND_COMPLETE = "ROUND_COMPLETE"
CONSENSUS_UPDATED = "CONSENSUS_UPDATED"
USER_INTERJECTION_REQUESTED = "USER_INTERJECTION_REQUESTED"
USER_INTERJECTED = "USER_INTERJECTED"
JUDGING_STARTED = "JUDGING_STARTED"
BOUNCE_PAUSED = "BOUNCE_PAUSED"
BOUNCE_RESUMED = "BOUNCE_RESUMED"
BOUNCE_COMPLETE = "BOUNCE_COMPLETE"
BOUNCE_ERROR = "BOUNCE_ERROR"
BOUNCE_CANCELLED = "BOUNCE_CANCELLED"
PARTICIPANT_PRUNED = "PARTICIPANT_PRUNED"

_CONFIG_FIELDS = {f.name for f in fields(BounceConfig)}


class BounceAbortedError(Exception):
    """Raised inside a run once STOP or reset() has cancelled it. Never retried."""


class BounceOrchestrator:
    """Drives one debate at a time over an injected model transport.

    send_message(model_id, system_prompt, user_message, abort) returns the
    model's text. abort is an asyncio.Event set on cancellation; the
    orchestrator also stops waiting for the call itself once it is set.

    dispatch() is the only way to change state. Errors inside a run end in
    status "error" with state.error set and do not propagate; cancellation
    raises BounceAbortedError out of the dispatch() that was running.
    """

    def __init__(self, send_message: SendMessage, prompts: PromptsConfig) -> None:
        self._send_message = send_message
        self._prompts = prompts
        self._state = BounceState()
        self._handlers: list[EventHandler] = []
        self._abort = asyncio.Event()

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register handler for every event. Returns a function that unregisters it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def get_state(self) -> BounceState:
        """Deep copy of the current state."""
        return copy.deepcopy(self._state)

    async def dispatch(self, action: BounceAction) -> None:
        if action.type == START:
            await self._start(action.topic, action.participants, action.config)
        elif action.type == PAUSE:
            self._pause()
        elif action.type == RESUME:
            await self._resume()
        elif action.type == STOP:
            self._stop()
        elif action.type == INJECT_MESSAGE:
            await self._inject_user_message(action.message)
        elif action.type == SKIP_TO_JUDGE:
            await self._skip_to_judge()
        elif action.type == ADD_PARTICIPANT:
            if action.participant is not None:
                self._add_participant(action.participant)
        elif action.type == REMOVE_PARTICIPANT:
            self._remove_participant(action.session_id)
        elif action.type == UPDATE_CONFIG:
            self._update_config(action.config)
        else:
            logger.warning("Unknown action: %s", action.type)

    def reset(self) -> None:
        """Cancel any run and return to a fresh idle state."""
        self._abort.set()
        self._state = BounceState()

    async def _start(
        self,
        topic: str,
        participants: list[ParticipantConfig],
        overrides: dict[str, Any],
    ) -> None:
        if self._state.status not in (IDLE, COMPLETE, ERROR):
            logger.warning("Bounce already in progress (%s)", self._state.status)
            return

        config = self._apply_overrides(BounceConfig(), overrides)
        config.participants = list(participants)
        self._state = BounceState(
            status=RUNNING,
            config=config,
            original_topic=topic,
            source_session_id=participants[0].session_id if participants else "",
            started_at=time.time(),
        )
        self._abort = asyncio.Event()

        logger.info("Debate started: %d participants, %s, max %d rounds",
                    len(participants), config.mode, config.max_rounds)
        self._emit(BOUNCE_STARTED, topic=topic, participants=list(participants))
        await self._run_guarded(self._run_debate_loop)

    def _pause(self) -> None:
        if self._state.status != RUNNING:
            return
        self._state.status = PAUSED
        self._emit(BOUNCE_PAUSED)

    async def _resume(self) -> None:
        if self._state.status not in (PAUSED, WAITING_USER):
            return
        self._state.status = RUNNING
        self._emit(BOUNCE_RESUMED)
        await self._run_guarded(self._run_debate_loop)

    def _stop(self) -> None:
        self._abort.set()
        self._state.status = COMPLETE
        self._state.completed_at = time.time()
        logger.info("Debate cancelled")
        self._emit(BOUNCE_CANCELLED)

    async def _inject_user_message(self, message: str) -> None:
        if self._state.status not in (WAITING_USER, PAUSED):
            logger.warning("Not waiting for user input (%s)", self._state.status)
            return
        self._state.original_topic = f"{self._state.original_topic}\n\n[User Interjection]: {message}"
        self._emit(USER_INTERJECTED, message=message)
        await self._resume()

    async def _skip_to_judge(self) -> None:
        if not self._state.rounds:
            logger.warning("No rounds to judge")
            return
        await self._run_guarded(self._run_judge_synthesis)

    def _add_participant(self, participant: ParticipantConfig) -> None:
        if self._state.status == RUNNING:
            logger.warning("Cannot add participant while debate is running")
            return
        self._state.config.participants.append(participant)

    def _remove_participant(self, session_id: str) -> None:
        if self._state.status == RUNNING:
            logger.warning("Cannot remove participant while debate is running")
            return
        self._state.config.participants = [
            p for p in self._state.config.participants if p.session_id != session_id
        ]

    def _update_config(self, overrides: dict[str, Any]) -> None:
        if self._state.status == RUNNING:
            logger.warning("Cannot update config while debate is running")
            return
        self._state.config = self._apply_overrides(self._state.config, overrides)

    @staticmethod
    def _apply_overrides(config: BounceConfig, overrides: dict[str, Any]) -> BounceConfig:
        unknown = set(overrides) - _CONFIG_FIELDS
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))
        return replace(config, **{k: v for k, v in overrides.items() if k in _CONFIG_FIELDS})

    async def _run_guarded(self, run: Callable[[], Awaitable[None]]) -> None:
        try:
            await run()
        except BounceAbortedError:
            logger.info("Debate run aborted")
            raise
        except Exception as exc:
            self._handle_error(exc)

    async def _run_debate_loop(self) -> None:
        config = self._state.config
        options = AnalysisOptions.from_config(config)

        while self._state.status == RUNNING and self._state.current_round < config.max_rounds:
            self._state.current_round += 1
            self._state.current_participant_index = 0
            round_number = self._state.current_round
            logger.info("Round %d started", round_number)
            self._emit(ROUND_STARTED, round_number=round_number)

            if config.mode == "parallel":
                responses = await self._run_parallel_round()
            else:
                responses = await self._run_sequential_round()

            consensus = analyze_consensus(responses, options)
            consensus = update_consensus_with_trend(consensus, self._state.rounds, options)
            completed = BounceRound(
                round_number=round_number,
                responses=responses,
                consensus_at_end=consensus,
                timestamp=time.time(),
            )
            self._state.rounds.append(completed)
            self._state.consensus = consensus
            logger.info(
                "Round %d complete: %d responses, consensus %.2f (%s), %s",
                round_number, len(responses), consensus.score, consensus.level, consensus.recommendation,
            )
            self._emit(ROUND_COMPLETE, round=completed)
            self._emit(CONSENSUS_UPDATED, consensus=consensus)

            if config.enable_pruning and len(config.participants) > 2:
                self._prune(responses, config)

            if self._state.status != RUNNING:
                # Paused mid-round; RESUME starts the next round.
                return

            if self._should_stop(consensus):
                break

            if config.allow_user_interjection and self._state.current_round < config.max_rounds:
                self._state.status = WAITING_USER
                self._emit(USER_INTERJECTION_REQUESTED)
                return

        if self._state.status in (RUNNING, CONSENSUS, MAX_ROUNDS):
            await self._run_judge_synthesis()

    async def _run_sequential_round(self) -> list[BounceResponse]:
        config = self._state.config
        responses: list[BounceResponse] = []
        participants = list(config.participants)
        for i, participant in enumerate(participants):
            if self._state.status != RUNNING:
                break
            self._state.current_participant_index = i
            response = await self._get_participant_response(participant, responses)
            if response is None:
                continue
            responses.append(response)
            self._emit(PARTICIPANT_RESPONDED, response=response)
            if config.pause_between_responses_sec > 0 and i < len(participants) - 1:
                await self._sleep(config.pause_between_responses_sec)
        return responses

    async def _run_parallel_round(self) -> list[BounceResponse]:
        results = await asyncio.gather(
            *(self._get_participant_response(p, []) for p in self._state.config.participants)
        )
        responses = [r for r in results if r is not None]
        for response in responses:
            self._emit(PARTICIPANT_RESPONDED, response=response)
        return responses

    def _prune(self, responses: list[BounceResponse], config: BounceConfig) -> None:
        for response, similar_to in identify_prunable_participants(responses, config.pruning_threshold):
            config.participants = [
                p for p in config.participants if p.session_id != response.participant_session_id
            ]
            self._state.pruned_participants.append(
                PrunedParticipant(
                    session_id=response.participant_session_id,
                    model_title=response.model_title,
                    pruned_at_round=self._state.current_round,
                )
            )
            logger.info("Pruned %s (aligned with %s)", response.model_title, similar_to)
            self._emit(
                PARTICIPANT_PRUNED,
                session_id=response.participant_session_id,
                model_title=response.model_title,
                reason=f"Aligned with {similar_to}",
            )

    async def _get_participant_response(
        self,
        participant: ParticipantConfig,
        previous: list[BounceResponse],
    ) -> BounceResponse | None:
        """One participant's parsed answer, or None when the call failed for good."""
        self._emit(PARTICIPANT_THINKING, session_id=participant.session_id, model_id=participant.model_id)
        start = time.monotonic()

        if not self._state.rounds and not previous:
            prompt = prompt_builder.initial_prompt(self._prompts, self._state.original_topic)
        else:
            history = [r for rnd in self._state.rounds for r in rnd.responses] + previous
            prompt = prompt_builder.history_prompt(
                self._prompts,
                self._state.original_topic,
                history,
                self._state.current_round,
                self._state.config.max_context_tokens,
            )
        system_prompt = prompt_builder.participant_system_prompt(
            self._prompts, participant.title, participant.system_prompt
        )
        logger.debug("Prompt for %s: ~%d tokens", participant.title, prompt_builder.estimate_tokens(prompt))

        try:
            content = await self._send_message_with_retry(participant.model_id, system_prompt, prompt)
        except BounceAbortedError:
            raise
        except Exception as exc:
            logger.warning("No response from %s (%s): %s", participant.title, participant.model_id, exc)
            return None

        agreements, disagreements = extract_agreements_and_disagreements(content)
        response = BounceResponse(
            participant_session_id=participant.session_id,
            model_id=participant.model_id,
            model_title=participant.title,
            stance=parse_stance(content),
            content=content,
            key_points=extract_key_points(content),
            agreements=agreements,
            disagreements=disagreements,
            confidence=extract_confidence(content),
            duration_sec=time.monotonic() - start,
            timestamp=time.time(),
        )
        logger.debug("%s: %s at %.2f", participant.title, response.stance, response.confidence)
        return response

    async def _send_message_with_retry(self, model_id: str, system_prompt: str, prompt: str) -> str:
        """Call the transport up to max_response_retries + 1 times with doubling backoff."""
        config = self._state.config
        attempts = max(1, config.max_response_retries + 1)
        for attempt in range(1, attempts + 1):
            try:
                return await self._abortable(self._send_message(model_id, system_prompt, prompt, self._abort))
            except BounceAbortedError:
                raise
            except Exception as exc:
                if attempt >= attempts:
                    raise
                backoff = config.retry_backoff_sec * 2 ** (attempt - 1)
                logger.warning("Retry %d/%d for %s in %.2fs: %s", attempt, attempts - 1, model_id, backoff, exc)
                await self._sleep(backoff)
        raise RuntimeError("Failed to obtain model response")

    async def _abortable(self, awaitable: Awaitable[str]) -> str:
        if self._abort.is_set():
            raise BounceAbortedError()
        call = asyncio.ensure_future(awaitable)
        aborted = asyncio.ensure_future(self._abort.wait())
        try:
            await asyncio.wait({call, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()
        if not call.done():
            call.cancel()
            raise BounceAbortedError()
        return call.result()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._abort.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise BounceAbortedError()

    def _should_stop(self, consensus: ConsensusAnalysis) -> bool:
        config = self._state.config
        reached_vote = consensus.consensus_outcome == "reached"
        reached_quorum = consensus.proposal_convergence.support_ratio >= config.resolution_quorum

        if (
            config.auto_stop_on_consensus
            and reached_vote
            and consensus.score >= config.consensus_threshold
            and reached_quorum
            and consensus.stable_rounds >= config.minimum_stable_rounds
        ):
            self._state.status = CONSENSUS
            return True
        if consensus.recommendation == "complete":
            return True
        if consensus.recommendation == "call_judge" and reached_vote and reached_quorum:
            return True
        if consensus.recommendation == "deadlock":
            return True
        if self._state.current_round >= config.max_rounds:
            self._state.status = MAX_ROUNDS
            return True
        return False

    async def _run_judge_synthesis(self) -> None:
        self._state.status = JUDGING
        self._emit(JUDGING_STARTED)

        responses = [r for rnd in self._state.rounds for r in rnd.responses]
        if not responses:
            self._handle_error(RuntimeError("No responses to synthesize"))
            return

        consensus = self._state.consensus or analyze_consensus(
            responses, AnalysisOptions.from_config(self._state.config)
        )
        prompt = prompt_builder.judge_synthesis_prompt(
            self._prompts, self._state.original_topic, responses, consensus
        )
        logger.info("Judge %s synthesizing %d responses", self._state.config.judge_model_id, len(responses))
        final_answer = await self._send_message_with_retry(
            self._state.config.judge_model_id,
            prompt_builder.judge_system_prompt(self._prompts),
            prompt,
        )

        self._state.final_answer = final_answer
        self._state.status = COMPLETE
        self._state.completed_at = time.time()
        self._emit(BOUNCE_COMPLETE, final_answer=final_answer, consensus=consensus)

    def _emit(self, event_type: str, **payload: Any) -> None:
        event = BounceEvent(type=event_type, payload=payload)
        for handler in list(self._handlers):
            handler(event)

    def _handle_error(self, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        self._state.status = ERROR
        self._state.error = message
        logger.error("Debate failed: %s", message)
        self._emit(BOUNCE_ERROR, error=message)
