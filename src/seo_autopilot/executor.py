"""
Action Executor

Dispatches decisions to one handler per ``ActionType``.  The rate limiter
is the hard enforcement point (the engine's batch caps are only intent):
a breach skips the rest of that category for this run and leaves other
categories untouched.  A handler failure is recorded and the batch goes on.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol, Sequence, Set

from .config_env import ActionType
from .models import ActionResult, Decision, DecisionOutcome, OutcomeStatus, RunOutcome
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_ACTIONS: FrozenSet[ActionType] = frozenset({ActionType.PROPOSE, ActionType.CLONE})


class ActionHandler(Protocol):
    def apply(self, decision: Decision) -> ActionResult:
        ...


class ActionExecutor:
    def __init__(
        self,
        handlers: Mapping[ActionType, ActionHandler],
        rate_limiter: Optional[RateLimiter] = None,
        *,
        dry_run: bool = False,
        cooldown_s: float = 0.0,
        cooldown_actions: Iterable[ActionType] = DEFAULT_COOLDOWN_ACTIONS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._handlers = dict(handlers)
        self._limiter = rate_limiter
        self._dry_run = dry_run
        self._cooldown_s = max(0.0, float(cooldown_s))
        self._cooldown_actions = frozenset(cooldown_actions)
        self._sleep = sleep
        self._clock = clock

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def missing_handlers(self) -> List[ActionType]:
        return [action for action in ActionType if action not in self._handlers]

    def execute(self, decisions: Sequence[Decision]) -> RunOutcome:
        """Process every decision in descending priority; never raises per item."""
        ordered = sorted(decisions, key=lambda d: -d.priority)
        outcome = RunOutcome()
        blocked: Dict[str, str] = {}
        cooldown_due: Set[ActionType] = set()

        for decision in ordered:
            result = self._execute_one(decision, blocked, cooldown_due)
            outcome.outcomes.append(result)

        logger.info(
            "Executed %d decisions: succeeded=%d failed=%d skipped=%d dry_run=%d",
            outcome.total,
            outcome.succeeded,
            outcome.failed,
            outcome.skipped,
            outcome.planned,
        )
        return outcome

    def _execute_one(
        self,
        decision: Decision,
        blocked: Dict[str, str],
        cooldown_due: Set[ActionType],
    ) -> DecisionOutcome:
        action = decision.action_type
        handler = self._handlers.get(action)
        if handler is None:
            logger.error("No handler registered for %s (%s)", action.value, decision.target_key)
            return DecisionOutcome(decision, OutcomeStatus.FAILED, reason=f"No handler for {action.value}")

        category = action.rate_category
        if category is not None and category in blocked:
            return DecisionOutcome(decision, OutcomeStatus.SKIPPED, reason=blocked[category])

        if self._dry_run:
            logger.info(
                "[dry-run] %s %s priority=%.2f: %s",
                action.value,
                decision.target_key,
                decision.priority,
                decision.reason,
            )
            return DecisionOutcome(decision, OutcomeStatus.DRY_RUN, reason=decision.reason)

        if category is not None and self._limiter is not None:
            gate = self._limiter.try_acquire(category)
            if not gate.allowed:
                reason = gate.reason or f"{category} rate limit reached"
                blocked[category] = reason
                logger.warning(
                    "Skipping remaining %s actions this run: %s", category, reason
                )
                return DecisionOutcome(decision, OutcomeStatus.SKIPPED, reason=reason)

        if action in cooldown_due:
            self._sleep(self._cooldown_s)
            cooldown_due.discard(action)

        started = self._clock()
        try:
            result = handler.apply(decision)
        except Exception as exc:
            elapsed_ms = (self._clock() - started) * 1000.0
            logger.error(
                "Action failed: %s %s: %s", action.value, decision.target_key, exc, exc_info=True
            )
            return DecisionOutcome(
                decision,
                OutcomeStatus.FAILED,
                reason=f"{type(exc).__name__}: {exc}",
                duration_ms=elapsed_ms,
            )
        elapsed_ms = (self._clock() - started) * 1000.0

        if not result.success:
            logger.error(
                "Action failed: %s %s: %s", action.value, decision.target_key, result.error
            )
            return DecisionOutcome(
                decision,
                OutcomeStatus.FAILED,
                reason=result.error or "handler reported failure",
                detail=result.detail,
                duration_ms=elapsed_ms,
            )

        if action in self._cooldown_actions and self._cooldown_s > 0:
            cooldown_due.add(action)
        logger.info("Action applied: %s %s", action.value, decision.target_key)
        return DecisionOutcome(
            decision,
            OutcomeStatus.SUCCEEDED,
            reason=decision.reason,
            detail=result.detail,
            duration_ms=elapsed_ms,
        )
