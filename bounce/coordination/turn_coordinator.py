"""Turn-taking state machine for protocol sessions: round-robin, free-form and supervised."""

import asyncio
import logging

from bounce.events import Emitter
from bounce.protocol.types import ProtocolEntry, ProtocolRules

logger = logging.getLogger(__name__)

# States
IDLE = "idle"
AGENT_ACTIVE = "agent-active"
YIELD_RECEIVED = "yield-received"
NEXT_AGENT = "next-agent"
TIMEOUT = "timeout"
ESCALATING = "escalating"
ROUND_COMPLETE = "round-complete"
SESSION_COMPLETE = "session-complete"

# Events
STATE_CHANGE = "state-change"
AGENT_TURN = "agent-turn"
TIMEOUT_EVENT = "timeout"
ESCALATION = "escalation"
ROUND_COMPLETE_EVENT = "round-complete"
SESSION_COMPLETE_EVENT = "session-complete"


class TurnCoordinator(Emitter):
    """Decides which agent may write next in a protocol session.

    Every activation arms a timer of rules.turn_timeout seconds. When it fires
    the escalation policy applies: ``timeout-skip`` and ``default-action``
    skip the agent and advance, ``human`` parks in ``escalating`` until
    force_advance() is called.

    Timers use the running event loop, so start() must be called from inside
    one. Call dispose() before dropping a coordinator.

    Events (all synchronous): ``state-change(old, new)``,
    ``agent-turn(agent, round, turn)``, ``timeout(agent)``,
    ``escalation(reason)``, ``round-complete(round)``,
    ``session-complete(reason)``.
    """

    def __init__(self, rules: ProtocolRules, turn_timeout_sec: float | None = None) -> None:
        super().__init__()
        self._rules = rules
        self._agents: list[str] = list(rules.agents or [])
        self._turn_order = rules.turn_order or "round-robin"
        self._max_rounds = rules.max_rounds or 1
        self._timeout_sec = turn_timeout_sec if turn_timeout_sec is not None else float(rules.turn_timeout or 0)

        self._state = IDLE
        self._current_agent: str | None = None
        self._current_round = 0
        self._current_turn = 0
        self._completion_reason: str | None = None

        self._rr_index = 0
        self._contributed: set[str] = set()
        self._yielded: set[str] = set()
        self._supervised_next: str | None = None

        self._timer: asyncio.TimerHandle | None = None
        self._disposed = False

    @property
    def state(self) -> str:
        return self._state

    @property
    def current_agent(self) -> str | None:
        return self._current_agent

    @property
    def current_round(self) -> int:
        return self._current_round

    @property
    def current_turn(self) -> int:
        return self._current_turn

    @property
    def completion_reason(self) -> str | None:
        return self._completion_reason

    def is_complete(self) -> bool:
        return self._state == SESSION_COMPLETE

    def is_agent_allowed(self, agent: str) -> bool:
        if self._state != AGENT_ACTIVE:
            return False
        if self._turn_order == "free-form":
            return agent in self._agents
        if self._turn_order in ("round-robin", "supervised"):
            return agent == self._current_agent
        return False

    def start(self) -> None:
        if self._state != IDLE:
            raise RuntimeError(f'Cannot start: coordinator is in state "{self._state}", expected "idle"')

        if not self._agents:
            self._complete_session("no-agents")
            return

        self._current_round = 1
        self._current_turn = 1
        self._reset_round_tracking()
        logger.info("Turn coordination started: %d agents, %s", len(self._agents), self._turn_order)
        self._activate(self._agents[0])

    def record_entry(self, entry: ProtocolEntry) -> None:
        """Note an entry's author; in supervised order its action_requested may name the next agent."""
        if self._state == SESSION_COMPLETE:
            return

        if self._turn_order == "free-form":
            self._contributed.add(entry.author)

        requested = entry.fields.action_requested
        if self._turn_order == "supervised" and requested and requested != "n/a":
            # Substring match, first listed agent wins.
            matched = next((a for a in self._agents if a in requested), None)
            if matched:
                self._supervised_next = matched

    def record_yield(self, agent: str) -> None:
        if self._state != AGENT_ACTIVE:
            return
        self._cancel_timer()
        if self._turn_order == "free-form":
            self._yielded.add(agent)
        self._transition(YIELD_RECEIVED)
        self._advance()

    def force_advance(self) -> None:
        if self._state in (SESSION_COMPLETE, IDLE):
            return
        self._cancel_timer()
        self._advance()

    def dispose(self) -> None:
        self._disposed = True
        self._cancel_timer()
        self.clear()

    def _transition(self, new_state: str) -> None:
        old_state = self._state
        self._state = new_state
        self.emit(STATE_CHANGE, old_state, new_state)

    def _reset_round_tracking(self) -> None:
        self._rr_index = 0
        self._contributed.clear()
        self._yielded.clear()
        self._supervised_next = None

    def _activate(self, agent: str) -> None:
        self._current_agent = agent
        self._transition(AGENT_ACTIVE)
        self._arm_timer()
        logger.debug("Round %d turn %d: %s", self._current_round, self._current_turn, agent)
        self.emit(AGENT_TURN, agent, self._current_round, self._current_turn)

    def _advance(self) -> None:
        self._transition(NEXT_AGENT)
        if self._turn_order == "round-robin":
            self._advance_round_robin()
        elif self._turn_order == "free-form":
            self._advance_free_form()
        elif self._turn_order == "supervised":
            self._advance_supervised()

    def _advance_round_robin(self) -> None:
        self._rr_index += 1
        if self._rr_index >= len(self._agents):
            self._complete_round()
            return
        self._current_turn += 1
        self._activate(self._agents[self._rr_index])

    def _advance_free_form(self) -> None:
        everyone_contributed = all(a in self._contributed for a in self._agents)
        everyone_yielded = all(a in self._yielded for a in self._agents)
        waiting = next((a for a in self._agents if a not in self._contributed), None)
        if everyone_contributed or everyone_yielded or waiting is None:
            self._complete_round()
            return
        # Free-form has no real owner; the timer tracks the first agent still owed.
        self._current_turn += 1
        self._activate(waiting)

    def _advance_supervised(self) -> None:
        if self._supervised_next is None:
            self._complete_round()
            return
        agent, self._supervised_next = self._supervised_next, None
        self._current_turn += 1
        self._activate(agent)

    def _complete_round(self) -> None:
        self._transition(ROUND_COMPLETE)
        logger.info("Round %d complete", self._current_round)
        self.emit(ROUND_COMPLETE_EVENT, self._current_round)

        if self._current_round >= self._max_rounds:
            self._complete_session("max-rounds-reached")
            return

        self._current_round += 1
        self._current_turn = 1
        self._reset_round_tracking()
        self._activate(self._agents[0])

    def _complete_session(self, reason: str) -> None:
        self._cancel_timer()
        self._transition(SESSION_COMPLETE)
        self._completion_reason = reason
        self._current_agent = None
        logger.info("Session complete: %s", reason)
        self.emit(SESSION_COMPLETE_EVENT, reason)

    def _arm_timer(self) -> None:
        self._cancel_timer()
        if self._timeout_sec <= 0:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._timeout_sec, self._on_timeout)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self) -> None:
        self._timer = None
        if self._disposed or self._state != AGENT_ACTIVE:
            return

        agent = self._current_agent
        self._transition(TIMEOUT)
        logger.warning("Turn timed out: %s (round %d)", agent, self._current_round)
        if agent:
            self.emit(TIMEOUT_EVENT, agent)

        self._transition(ESCALATING)
        policy = self._rules.escalation or "human"
        reason = f'Timeout for agent "{agent or "unknown"}", policy: {policy}'
        self.emit(ESCALATION, reason)

        if policy == "human":
            return
        if self._turn_order == "free-form" and agent:
            self._contributed.add(agent)
            self._yielded.add(agent)
        self._advance()
