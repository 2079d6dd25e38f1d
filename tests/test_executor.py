from __future__ import annotations

from seo_autopilot.config_env import ActionType
from seo_autopilot.executor import ActionExecutor
from seo_autopilot.models import ActionResult, Decision, OutcomeStatus
from seo_autopilot.rate_limiter import RateLimiter
from seo_autopilot.thresholds import RateLimit


class RecordingHandler:
    def __init__(self, fail_keys=(), raise_keys=()):
        self.calls = []
        self._fail = set(fail_keys)
        self._raise = set(raise_keys)

    def apply(self, decision: Decision) -> ActionResult:
        self.calls.append(decision.target_key)
        if decision.target_key in self._raise:
            raise RuntimeError("boom")
        if decision.target_key in self._fail:
            return ActionResult(success=False, error="generator unavailable")
        return ActionResult(success=True, detail={"key": decision.target_key})


def _decision(action: ActionType, location: str, priority: float) -> Decision:
    return Decision(
        action_type=action,
        target_key=f"plumbing:{location}",
        reason="test",
        priority=priority,
    )


def test_failed_action_does_not_stop_the_batch():
    handler = RecordingHandler(fail_keys={"plumbing:B"}, raise_keys={"plumbing:C"})
    executor = ActionExecutor({ActionType.CREATE: handler})
    decisions = [
        _decision(ActionType.CREATE, "A", 30.0),
        _decision(ActionType.CREATE, "B", 20.0),
        _decision(ActionType.CREATE, "C", 10.0),
        _decision(ActionType.CREATE, "D", 5.0),
    ]

    outcome = executor.execute(decisions)

    assert handler.calls == ["plumbing:A", "plumbing:B", "plumbing:C", "plumbing:D"]
    assert outcome.succeeded == 2
    assert outcome.failed == 2
    reasons = {o.decision.target_key: o.reason for o in outcome.failures()}
    assert reasons == {
        "plumbing:B": "generator unavailable",
        "plumbing:C": "RuntimeError: boom",
    }


def test_rate_limit_skips_rest_of_category_only(clock):
    limiter = RateLimiter({"create": RateLimit(per_day=2)}, clock=clock)
    creates = RecordingHandler()
    rewrites = RecordingHandler()
    executor = ActionExecutor(
        {ActionType.CREATE: creates, ActionType.REWRITE: rewrites},
        limiter,
    )
    decisions = [
        _decision(ActionType.CREATE, f"C{i}", 100.0 - i) for i in range(4)
    ] + [_decision(ActionType.REWRITE, "R", 1.0)]

    outcome = executor.execute(decisions)

    assert creates.calls == ["plumbing:C0", "plumbing:C1"]
    assert rewrites.calls == ["plumbing:R"]
    skipped = [o for o in outcome.outcomes if o.status == OutcomeStatus.SKIPPED]
    assert [o.decision.target_key for o in skipped] == ["plumbing:C2", "plumbing:C3"]
    assert all(o.reason == "Page creation daily limit exceeded (2 calls/day)" for o in skipped)
    assert outcome.counts_by_action() == {
        "CREATE": {"succeeded": 2, "skipped": 2},
        "REWRITE": {"succeeded": 1},
    }


def test_cooldown_between_successful_proposals():
    sleeps = []
    executor = ActionExecutor(
        {ActionType.PROPOSE: RecordingHandler(), ActionType.CREATE: RecordingHandler()},
        cooldown_s=2.0,
        sleep=sleeps.append,
    )
    decisions = [_decision(ActionType.PROPOSE, f"P{i}", 10.0 - i) for i in range(3)]
    decisions.append(_decision(ActionType.CREATE, "X", 0.5))

    executor.execute(decisions)

    assert sleeps == [2.0, 2.0]


def test_dry_run_consumes_no_quota_and_calls_no_handler(clock):
    limiter = RateLimiter({"create": RateLimit(per_day=1)}, clock=clock)
    handler = RecordingHandler()
    executor = ActionExecutor({ActionType.CREATE: handler}, limiter, dry_run=True)

    outcome = executor.execute([_decision(ActionType.CREATE, f"C{i}", 1.0) for i in range(3)])

    assert handler.calls == []
    assert outcome.planned == 3
    assert limiter.usage("create")["daily"] == 0


def test_missing_handler_is_a_failure():
    executor = ActionExecutor({ActionType.CREATE: RecordingHandler()})

    outcome = executor.execute([_decision(ActionType.REWRITE, "A", 1.0)])

    assert outcome.failed == 1
    assert outcome.outcomes[0].reason == "No handler for REWRITE"
    assert ActionType.REWRITE in executor.missing_handlers()


def test_freeze_has_no_rate_category(clock):
    limiter = RateLimiter({"create": RateLimit(per_day=0)}, clock=clock)
    handler = RecordingHandler()
    executor = ActionExecutor({ActionType.FREEZE: handler}, limiter)

    outcome = executor.execute([_decision(ActionType.FREEZE, f"F{i}", 1.0) for i in range(3)])

    assert outcome.succeeded == 3
