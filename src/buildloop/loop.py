"""The iteration state machine driving one session.

``pending -> running -> {paused, completed, failed}``; ``paused -> running``
is the only re-entry and goes through :meth:`SessionStore.resume`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from buildloop.agents import AgentInvoker, AgentResult
from buildloop.circuit_breaker import CircuitBreaker, CircuitBreakerStats
from buildloop.completion import detect_completion, summarize_changes
from buildloop.cost import CostStats, CostTracker, format_cost
from buildloop.config import Paths
from buildloop.gitops import GitError, GitRepo
from buildloop.judge import CompletionJudge, format_judge_feedback
from buildloop.plan import check_file_based_completion, parse_plan_tasks
from buildloop.progress import ActivityLog, ProgressEntry
from buildloop.rate_limiter import RateLimiter
from buildloop.session import (
    ExitReason,
    InvalidTransitionError,
    IterationOutcome,
    Session,
    SessionStatus,
    SessionStore,
    ValidationOutcome,
    apply_pause,
    format_session_summary,
)
from buildloop.validation import (
    ValidationCommand,
    ValidationGate,
    all_passed,
    failure_summary,
    format_validation_feedback,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_WAIT_MS = 60_000


@dataclass(frozen=True)
class LoopStats:
    total_duration_s: float
    avg_iteration_s: float
    validation_failures: int
    breaker: CircuitBreakerStats
    cost: CostStats


@dataclass(frozen=True)
class LoopResult:
    session_id: str
    success: bool
    status: SessionStatus
    exit_reason: ExitReason | None
    iterations: int
    commits: tuple[str, ...] = ()
    pr_url: str | None = None
    error: str | None = None
    warnings: tuple[str, ...] = ()
    stats: LoopStats | None = None


def build_prompt(task: str, feedback: str | None) -> str:
    if not feedback:
        return task
    return f"{task}\n\n{feedback}"


def default_pr_body(session: Session) -> str:
    commits = "\n".join(f"- {sha[:12]}" for sha in session.commits) or "- (none)"
    return (
        "Automated PR created by buildloop\n\n"
        f"## Task\n{session.task}\n\n"
        f"## Commits\n{commits}"
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Iteration:
    """Mutable scratch state for the iteration in flight."""

    result: AgentResult
    signal: bool = False
    reason: str | None = None
    failed: bool = False
    validation: ValidationOutcome | None = None
    committed: bool = False
    commit_sha: str | None = None
    checks: tuple[tuple[str, bool], ...] = ()


class LoopController:
    def __init__(
        self,
        runner: AgentInvoker,
        store: SessionStore,
        gate: ValidationGate | None = None,
        git: GitRepo | None = None,
        judge: CompletionJudge | None = None,
        rate_limiter: RateLimiter | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
        rate_limit_wait_ms: int = RATE_LIMIT_WAIT_MS,
    ) -> None:
        self.runner = runner
        self.store = store
        self.gate = gate or ValidationGate()
        self.git = git
        self.judge = judge
        self.rate_limiter = rate_limiter
        self._sleep = sleep
        self._clock = clock
        self.rate_limit_wait_ms = rate_limit_wait_ms
        self._pause_reason: str | None = None
        self._pause_flag = False

    def request_pause(self, reason: str | None = None) -> None:
        """Ask the loop to pause at the next iteration boundary."""
        self._pause_flag = True
        self._pause_reason = reason

    def run(
        self,
        session: Session,
        pr_body: Callable[[Session], str] | None = None,
    ) -> LoopResult:
        if session.status is SessionStatus.PENDING:
            self.store.mark_running(session)
        elif session.status is not SessionStatus.RUNNING:
            raise InvalidTransitionError(
                f"Session {session.id} is {session.status.value}; resume it first"
            )

        options = session.options
        working_dir = session.working_directory
        breaker = CircuitBreaker(
            options.circuit_breaker, session.circuit_breaker_state, clock=self._clock
        )
        tracker = CostTracker(options.cost_model, session.max_iterations, options.max_cost)
        for outcome in session.history:
            tracker.record_usage(outcome.input_tokens, outcome.output_tokens)
        limiter = self.rate_limiter
        if limiter is None and options.rate_limit:
            limiter = RateLimiter.per_hour(options.rate_limit, sleep=self._sleep)
        commands: list[ValidationCommand] = []
        if options.validate:
            commands = self.gate.detect(working_dir)
            if not commands:
                logger.warning("Validation enabled but no commands were found in %s", working_dir)
        activity = None
        if options.track_progress:
            activity = ActivityLog(Paths(working_dir).activity_path, session.task)

        logger.info(
            "Running session %s (%d/%d iterations done)",
            session.id,
            session.iterations_completed,
            session.max_iterations,
        )
        while (
            session.status is SessionStatus.RUNNING
            and session.iterations_completed < session.max_iterations
        ):
            if self._honour_pause(session):
                self.store.checkpoint(session)
                break
            if breaker.is_tripped():
                self._finish(
                    session, SessionStatus.FAILED, ExitReason.CIRCUIT_BREAKER, breaker.trip_reason()
                )
                self.store.checkpoint(session)
                break
            if tracker.is_over_budget():
                self._finish(
                    session,
                    SessionStatus.FAILED,
                    ExitReason.COST_LIMIT,
                    f"Estimated cost {format_cost(tracker.total_cost)} reached the "
                    f"{format_cost(options.max_cost or 0)} budget",
                )
                self.store.checkpoint(session)
                break
            if limiter is not None:
                if not limiter.can_make_call():
                    logger.warning("Local call-rate limit reached: %s", limiter.format_stats())
                    if not limiter.wait_and_acquire(self.rate_limit_wait_ms):
                        apply_pause(session, "Local call-rate limit reached")
                        session.exit_reason = ExitReason.RATE_LIMIT
                        self.store.checkpoint(session)
                        break
                else:
                    limiter.record_call()

            self._iterate(session, breaker, tracker, commands, activity, pr_body)
            self.store.checkpoint(session)
            if (
                session.status is SessionStatus.RUNNING
                and session.iterations_completed < session.max_iterations
                and options.iteration_delay_s > 0
            ):
                self._sleep(options.iteration_delay_s)

        if session.status is SessionStatus.RUNNING:
            self._finish(
                session,
                SessionStatus.FAILED,
                ExitReason.MAX_ITERATIONS,
                f"Reached max iterations ({session.max_iterations})",
            )
            self.store.checkpoint(session)
        if activity is not None and tracker.iterations:
            activity.append_text(tracker.format_summary())
        logger.debug("Loop stopped\n%s", format_session_summary(session))
        return self._result(session, breaker, tracker)

    def _iterate(
        self,
        session: Session,
        breaker: CircuitBreaker,
        tracker: CostTracker,
        commands: list[ValidationCommand],
        activity: ActivityLog | None,
        pr_body: Callable[[Session], str] | None,
    ) -> None:
        options = session.options
        working_dir = session.working_directory
        index = session.iterations_completed + 1
        started_at = self._clock()
        started = time.monotonic()
        warnings: list[str] = []

        feedback = session.pending_feedback
        prompt = build_prompt(session.task, feedback)
        logger.info("Iteration %d/%d: invoking agent", index, session.max_iterations)
        result = self.runner.invoke(prompt, working_dir)

        if result.rate_limited:
            reason = "Agent provider rate limit reached"
            if result.retry_after_s:
                reason += f" (retry in {result.retry_after_s}s)"
            logger.warning(reason)
            apply_pause(session, reason)
            session.exit_reason = ExitReason.RATE_LIMIT
            return

        usage = tracker.record_iteration(prompt, result.output)
        session.pending_feedback = None
        state = _Iteration(result=result)
        decision = detect_completion(
            result.output,
            completion_promise=options.completion_promise,
            require_exit_signal=options.require_exit_signal,
            min_completion_indicators=options.min_completion_indicators,
        )
        if decision.status == "done":
            state.signal, state.reason = True, decision.reason
        self._check_repository_completion(session, state)

        if result.exit_code != 0:
            state.failed = True
            state.signal = False
            message = result.output.strip() or f"Agent exited with code {result.exit_code}"
            logger.warning("Agent exited with code %d", result.exit_code)
            if breaker.record_failure(message):
                self._finish(
                    session, SessionStatus.FAILED, ExitReason.CIRCUIT_BREAKER, breaker.trip_reason()
                )
        elif decision.status == "blocked":
            state.failed = True
            state.signal = False
            self._finish(
                session, SessionStatus.FAILED, ExitReason.BLOCKED, f"Task blocked: {decision.reason}"
            )
        else:
            self._validate(session, breaker, commands, state)
            if not state.failed:
                self._judge(session, state)
                self._commit(session, result, state, warnings)
                if state.signal:
                    self._open_pull_request(session, pr_body, warnings)

        outcome = IterationOutcome(
            index=index,
            agent_exit_code=result.exit_code,
            agent_output=result.output,
            validation=state.validation,
            committed=state.committed,
            commit_sha=state.commit_sha,
            completion_signal_seen=state.signal,
            completion_reason=state.reason,
            started_at=started_at,
            duration_s=time.monotonic() - started,
            warnings=tuple(warnings),
            input_tokens=usage.tokens.input_tokens,
            output_tokens=usage.tokens.output_tokens,
        )
        session.history.append(outcome)
        session.iterations_completed = index

        if session.status is SessionStatus.RUNNING and state.signal and not state.failed:
            self._finish(session, SessionStatus.COMPLETED, ExitReason.SUCCESS, None)
            logger.info("Task completed (%s)", state.reason)
        if activity is not None:
            self._log_activity(activity, session, outcome, state)
        self._honour_pause(session)

    def _check_repository_completion(self, session: Session, state: _Iteration) -> None:
        options = session.options
        if state.signal:
            return
        if options.check_file_completion:
            found = check_file_based_completion(session.working_directory)
            if found.completed:
                state.signal, state.reason = True, found.reason
                return
        # Exit-code completion: a clean exit only counts when a plan document
        # exists and every item in it is checked off.
        if (
            options.plan_completion
            and not options.require_exit_signal
            and state.result.exit_code == 0
        ):
            plan = parse_plan_tasks(session.working_directory)
            if plan.total > 0 and plan.pending == 0:
                state.signal = True
                state.reason = "exit code 0 with no pending plan items"

    def _validate(
        self,
        session: Session,
        breaker: CircuitBreaker,
        commands: list[ValidationCommand],
        state: _Iteration,
    ) -> None:
        if not commands:
            breaker.record_success()
            return
        results = self.gate.run(session.working_directory, commands)
        passed = all_passed(results)
        state.checks = tuple((r.command, r.success) for r in results)
        state.validation = ValidationOutcome(
            passed=passed,
            diagnostic="" if passed else failure_summary(results),
            commands=tuple(r.command for r in results),
        )
        if passed:
            breaker.record_success()
            return
        logger.warning("Validation failed: %s", state.validation.commands[-1])
        state.failed = True
        state.signal = False
        session.pending_feedback = format_validation_feedback(results)
        if breaker.record_failure(state.validation.diagnostic):
            self._finish(
                session, SessionStatus.FAILED, ExitReason.CIRCUIT_BREAKER, breaker.trip_reason()
            )

    def _judge(self, session: Session, state: _Iteration) -> None:
        if not (state.signal and session.options.judge and self.judge and self.git):
            return
        try:
            diff = self.git.diff()
        except GitError as exc:
            logger.warning("Skipping quality review, diff unavailable: %s", exc)
            return
        verdict = self.judge.evaluate(session.task, diff, session.working_directory)
        if verdict.passed:
            return
        logger.info("Quality review below threshold (%.1f/10)", verdict.overall_score)
        state.signal = False
        state.reason = f"quality review failed ({verdict.overall_score}/10)"
        session.pending_feedback = format_judge_feedback(verdict)

    def _commit(
        self,
        session: Session,
        result: AgentResult,
        state: _Iteration,
        warnings: list[str],
    ) -> None:
        options = session.options
        if not (options.commit and self.git):
            return
        try:
            if not self.git.has_uncommitted_changes():
                return
            message = options.commit_message or f"feat: {summarize_changes(result.output)}"
            state.commit_sha = self.git.commit(message)
            state.committed = True
            session.commits.append(state.commit_sha)
            logger.info("Committed %s", state.commit_sha[:7])
        except GitError as exc:
            logger.warning("Commit failed: %s", exc)
            warnings.append(f"commit failed: {exc}")
            return
        if options.push:
            try:
                self.git.push(options.branch)
            except GitError as exc:
                logger.warning("Push failed: %s", exc)
                warnings.append(f"push failed: {exc}")

    def _open_pull_request(
        self,
        session: Session,
        pr_body: Callable[[Session], str] | None,
        warnings: list[str],
    ) -> None:
        options = session.options
        if not (options.pr and self.git and session.commits) or session.pr_url:
            return
        title = options.pr_title or f"buildloop: {session.task[:50]}"
        try:
            session.pr_url = self.git.create_pull_request(
                title,
                (pr_body or default_pr_body)(session),
                base=options.pr_base,
                labels=options.pr_labels,
            )
            logger.info("Opened pull request %s", session.pr_url)
        except GitError as exc:
            logger.warning("Pull request failed: %s", exc)
            warnings.append(f"pull request failed: {exc}")

    def _honour_pause(self, session: Session) -> bool:
        if session.status is not SessionStatus.RUNNING:
            return False
        reason = None
        if self.store.pause_requested(session):
            reason = self.store.consume_pause_request(session)
        elif self._pause_flag:
            reason = self._pause_reason
        else:
            return False
        self._pause_flag = False
        apply_pause(session, reason or "Paused by operator")
        logger.info("Session %s paused at iteration boundary", session.id)
        return True

    def _finish(
        self,
        session: Session,
        status: SessionStatus,
        reason: ExitReason,
        error: str | None,
    ) -> None:
        session.status = status
        session.exit_reason = reason
        session.error = error
        if error:
            logger.warning("Session %s stopped (%s): %s", session.id, reason.value, error)

    def _log_activity(
        self,
        activity: ActivityLog,
        session: Session,
        outcome: IterationOutcome,
        state: _Iteration,
    ) -> None:
        if session.exit_reason is ExitReason.BLOCKED:
            status, summary = "blocked", session.error or "Task blocked"
        elif state.validation is not None and not state.validation.passed:
            status, summary = "validation_failed", "Validation failed"
        elif state.failed:
            status, summary = "failed", session.error or f"Agent exit code {outcome.agent_exit_code}"
        else:
            status, summary = "completed", summarize_changes(outcome.agent_output)
        activity.append(
            ProgressEntry(
                iteration=outcome.index,
                status=status,
                summary=summary,
                duration_s=outcome.duration_s,
                commit_sha=outcome.commit_sha,
                validation=state.checks,
            )
        )

    def _result(
        self,
        session: Session,
        breaker: CircuitBreaker,
        tracker: CostTracker,
    ) -> LoopResult:
        warnings = tuple(w for outcome in session.history for w in outcome.warnings)
        total_s = sum(outcome.duration_s for outcome in session.history)
        stats = LoopStats(
            total_duration_s=total_s,
            avg_iteration_s=total_s / len(session.history) if session.history else 0.0,
            validation_failures=sum(
                1
                for outcome in session.history
                if outcome.validation is not None and not outcome.validation.passed
            ),
            breaker=breaker.stats(),
            cost=tracker.stats(),
        )
        return LoopResult(
            session_id=session.id,
            success=session.status is SessionStatus.COMPLETED,
            status=session.status,
            exit_reason=session.exit_reason,
            iterations=session.iterations_completed,
            commits=tuple(session.commits),
            pr_url=session.pr_url,
            error=session.error,
            warnings=warnings,
            stats=stats,
        )
