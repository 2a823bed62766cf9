"""Task orchestrator: team formation, dispatch, the review loop, and recovery."""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from taskcrew.config import Settings
from taskcrew.orchestrator.assignment import AgentAssigner
from taskcrew.orchestrator.backend.builtin import register_default_tools, text_of
from taskcrew.orchestrator.budget import BudgetGuard
from taskcrew.orchestrator.checkpoints import CheckpointStore
from taskcrew.orchestrator.errors import (
    BudgetExceeded,
    ExecutionError,
    InvalidTransition,
    NoEligibleAgent,
)
from taskcrew.orchestrator.escalation import EscalationSink, RepositoryEscalationSink
from taskcrew.orchestrator.failure_classifier import ExecutionContext, FailureClassifier
from taskcrew.orchestrator.marginal_return import MarginalReturnAnalyzer
from taskcrew.orchestrator.models import (
    TERMINAL_TEAM_STATUSES,
    AgentView,
    CheckpointView,
    EscalationRequest,
    EscalationResolution,
    EscalationStatus,
    FailureAnalysis,
    FailureCategory,
    PlannedStep,
    ReviewDecision,
    RevisionRecord,
    TaskCreate,
    TaskStatus,
    TaskView,
    TeamCreate,
    TeamStatus,
    TeamView,
)
from taskcrew.orchestrator.planner import (
    GoalDecomposer,
    HeuristicDecomposer,
    TaskTree,
    permitted_tools_by_specialization,
    plan_roster,
)
from taskcrew.orchestrator.recovery import RecoveryDecision, RecoveryEngine, RecoveryVerdict
from taskcrew.orchestrator.repository import OrchestratorRepository
from taskcrew.orchestrator.review import (
    BudgetOutlook,
    CriteriaMatchEvaluator,
    QualityAssessment,
    QualityEvaluator,
    ReviewOutcome,
    ReviewPolicy,
    estimate_cost_to_threshold,
)
from taskcrew.orchestrator.skills import Capability, SkillRegistry
from taskcrew.orchestrator.tools.cache import ResultCache
from taskcrew.orchestrator.tools.circuit import CircuitBreakerRegistry
from taskcrew.orchestrator.tools.executor import (
    ToolExecutionContext,
    ToolExecutionResult,
    ToolExecutor,
)
from taskcrew.orchestrator.tools.registry import ToolDefinition, ToolRegistry, ToolRequirements
from taskcrew.storage.common import utc_now

logger = logging.getLogger(__name__)

# Next status on the way to approval when a manager closes a parent task.
_ROLLUP_PATH: dict[TaskStatus, TaskStatus] = {
    TaskStatus.PENDING: TaskStatus.ASSIGNED,
    TaskStatus.ASSIGNED: TaskStatus.IN_PROGRESS,
    TaskStatus.IN_REVISION: TaskStatus.IN_PROGRESS,
    TaskStatus.IN_PROGRESS: TaskStatus.REVIEW,
    TaskStatus.REVIEW: TaskStatus.APPROVED,
}


@dataclass(slots=True)
class TeamRunSummary:
    """Aggregate counters for one `run` call."""

    team_id: str
    status: TeamStatus
    rounds: int = 0
    dispatched: int = 0
    approved: int = 0
    aborted: int = 0
    escalated: int = 0
    open_tasks: int = 0
    spent: float = 0.0


@dataclass(slots=True)
class PassState:
    """Progress of the current execution pass, persisted in checkpoint snapshots."""

    revision: int
    plan_index: int = 0
    outputs: list[Any] = field(default_factory=list)
    previous_output: Any = None
    feedback: list[str] = field(default_factory=list)
    previous_quality: float | None = None
    pass_start_cost: float = 0.0

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "revision": self.revision,
            "plan_index": self.plan_index,
            "outputs": self.outputs,
            "previous_output": self.previous_output,
            "feedback": self.feedback,
            "previous_quality": self.previous_quality,
            "pass_start_cost": self.pass_start_cost,
        }

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any]) -> PassState:
        return cls(
            revision=int(snapshot.get("revision", 0)),
            plan_index=int(snapshot.get("plan_index", 0)),
            outputs=list(snapshot.get("outputs") or []),
            previous_output=snapshot.get("previous_output"),
            feedback=[str(item) for item in snapshot.get("feedback") or []],
            previous_quality=snapshot.get("previous_quality"),
            pass_start_cost=float(snapshot.get("pass_start_cost", 0.0)),
        )


class StepsOutcome(NamedTuple):
    completed: bool
    result: str


class TaskOrchestrator:
    """Drives a team's task tree to completion on a bounded worker pool.

    Each dispatched task runs as one unit on the pool: it executes its planned
    steps through the tool executor, checkpoints after every completed step,
    and loops through review and revision until it is approved, aborted, or
    handed to a human. Parent tasks are closed by the manager once their
    children are all approved.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        settings: Settings,
        registry: ToolRegistry,
        executor: ToolExecutor,
        decomposer: GoalDecomposer | None = None,
        escalation_sink: EscalationSink | None = None,
        evaluator: QualityEvaluator | None = None,
        recovery: RecoveryEngine | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.registry = registry
        self.executor = executor
        self.decomposer = decomposer or HeuristicDecomposer(settings)
        self.escalation_sink = escalation_sink or RepositoryEscalationSink(repository)
        self.evaluator = evaluator or CriteriaMatchEvaluator()
        self.recovery = recovery or RecoveryEngine(settings.recovery)
        self.classifier = FailureClassifier(settings.recovery)
        self.budget = BudgetGuard(repository)
        self.checkpoints = CheckpointStore(repository, settings.checkpoints)
        self.analyzer = MarginalReturnAnalyzer(settings.revision, repository)
        self.review_policy = ReviewPolicy(settings.revision, self.analyzer)
        self.skills = SkillRegistry(repository, learning_rate=settings.assignment.learning_rate)
        self.assigner = AgentAssigner(
            repository,
            settings.assignment,
            permitted_tools=permitted_tools_by_specialization(registry.all()),
        )

    @classmethod
    def create(
        cls,
        repository: OrchestratorRepository,
        settings: Settings,
        *,
        register_builtin_tools: bool = True,
        decomposer: GoalDecomposer | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> TaskOrchestrator:
        """Wire breakers, registry, cache and executor from settings."""

        breakers = CircuitBreakerRegistry(
            failure_threshold=settings.circuit.failure_threshold,
            cooldown_seconds=settings.circuit.cooldown_seconds,
        )
        registry = ToolRegistry(breakers=breakers, stats=repository.tool_stats)
        if register_builtin_tools:
            register_default_tools(registry, settings)
        executor = ToolExecutor(
            repository=repository,
            registry=registry,
            breakers=breakers,
            cache=ResultCache(
                ttl_seconds=settings.cache.ttl_seconds,
                max_entries=settings.cache.max_entries,
            ),
            settings=settings,
        )
        return cls(
            repository=repository,
            settings=settings,
            registry=registry,
            executor=executor,
            decomposer=decomposer,
            recovery=RecoveryEngine(settings.recovery, sleep=sleep),
        )

    def close(self) -> None:
        self.executor.close()

    # Goals -----------------------------------------------------------------

    def decompose(self, goal: str) -> TaskTree:
        return self.decomposer.decompose(goal)

    def submit_goal(self, goal: str, budget_limit: float | None = None) -> TeamView:
        """Form a team for `goal`: manager, workers, and the decomposed task tree."""

        tree = self.decompose(goal)
        catalog = self.registry.all()
        self.assigner.permitted_tools = permitted_tools_by_specialization(catalog)
        roster = plan_roster(tree, self.settings, catalog)
        team = self.repository.create_team(
            TeamCreate(goal=tree.goal, budget_limit=budget_limit),
            agents=roster,
            tasks=[tree.root],
        )
        logger.info(
            "Formed team %s with %d agents and %d leaf tasks",
            team.team_id,
            len(roster),
            len(tree.leaves()),
        )
        return team

    def raise_budget(self, team_id: str, budget_limit: float | None) -> TeamView:
        return self.repository.update_team_budget(team_id=team_id, budget_limit=budget_limit)

    # Dispatch --------------------------------------------------------------

    def run(self, team_id: str) -> TeamRunSummary:
        """Dispatch ready tasks until nothing more can make progress."""

        team = self.repository.get_team(team_id)
        if team is None:
            raise RuntimeError(f"Team not found: {team_id}")
        if team.status in TERMINAL_TEAM_STATUSES:
            return self._summary(team_id, team.status, rounds=0, dispatched=0)
        if team.status != TeamStatus.ACTIVE:
            self.repository.transition_team(team_id=team_id, status_to=TeamStatus.ACTIVE)

        capacity = sum(
            agent.max_concurrent_tasks for agent in self.repository.list_agents(team_id=team_id)
        )
        in_flight: dict[Future[str], str] = {}
        rounds = 0
        dispatched = 0
        with ThreadPoolExecutor(
            max_workers=max(1, capacity),
            thread_name_prefix="taskcrew-task",
        ) as pool:
            while rounds < self.settings.execution.max_dispatch_rounds:
                self._roll_up_parents(team_id)
                busy = set(in_flight.values())
                for task in self._ready_tasks(team_id, exclude=busy):
                    agent_id = self._claim(task)
                    if agent_id is None:
                        continue
                    future = pool.submit(self._drive_task, task.task_id, agent_id)
                    in_flight[future] = task.task_id
                    dispatched += 1
                if not in_flight:
                    break
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    task_id = in_flight.pop(future)
                    try:
                        logger.debug("Task %s drive finished: %s", task_id, future.result())
                    except Exception:
                        logger.exception("Task %s drive crashed", task_id)
                rounds += 1
            for future in in_flight:
                try:
                    future.result()
                except Exception:
                    logger.exception("Task %s drive crashed", in_flight[future])
        self._roll_up_parents(team_id)
        status = self._finalize_team(team_id)
        return self._summary(team_id, status, rounds=rounds, dispatched=dispatched)

    def _ready_tasks(self, team_id: str, *, exclude: set[str]) -> list[TaskView]:
        tasks = self.repository.list_tasks(team_id=team_id, limit=None)
        by_id = {task.task_id: task for task in tasks}
        parents = {task.parent_task_id for task in tasks if task.parent_task_id}
        escalated = self.repository.open_escalation_task_ids(team_id=team_id)
        ready = []
        for task in tasks:
            if task.is_terminal or task.task_id in parents:
                continue
            if task.task_id in exclude or task.task_id in escalated:
                continue
            if _has_aborted_ancestor(task, by_id):
                continue
            ready.append(task)
        return ready

    def _claim(self, task: TaskView) -> str | None:
        """Reserve a capacity slot for the task's agent; None defers the task."""

        if task.status != TaskStatus.PENDING:
            agent_id = task.assigned_agent_id
            if agent_id is None or not self.repository.acquire_agent_slot(agent_id=agent_id):
                return None
            return agent_id

        try:
            agent = self.assigner.assign(task)
        except NoEligibleAgent as error:
            self._escalate_unassignable(task, error)
            return None
        if agent is None or not self.repository.acquire_agent_slot(agent_id=agent.agent_id):
            return None
        try:
            self.repository.transition_task(
                task_id=task.task_id,
                status_to=TaskStatus.ASSIGNED,
                expected_from=TaskStatus.PENDING,
                agent_id=agent.agent_id,
            )
        except InvalidTransition:
            self.repository.release_agent_slot(agent_id=agent.agent_id)
            logger.warning("Task %s changed state while assigning; skipping", task.task_id)
            return None
        logger.info("Assigned task %s to agent %s", task.task_id, agent.agent_id)
        return agent.agent_id

    def _drive_task(self, task_id: str, agent_id: str) -> str:
        try:
            return self._execute_task(task_id, agent_id)
        except Exception as exc:
            logger.exception("Task %s failed unexpectedly", task_id)
            task = self.repository.get_task(task_id)
            if task is not None and not task.is_terminal:
                error = ExecutionError(code="internal_error", detail=f"{type(exc).__name__}: {exc}")
                analysis = self.classifier.classify(task_id, error)
                analysis_id = self.repository.record_failure_analysis(
                    team_id=task.team_id,
                    task_id=task_id,
                    analysis=analysis,
                )
                self._escalate(
                    task,
                    analysis,
                    analysis_id=analysis_id,
                    decision=RecoveryDecision(
                        verdict=RecoveryVerdict.ESCALATE,
                        reason="unexpected orchestration error",
                        priority=analysis.escalation_priority,
                        intervention=analysis.intervention,
                    ),
                )
            return "escalated"
        finally:
            self.repository.release_agent_slot(agent_id=agent_id)

    # Task execution --------------------------------------------------------

    def _execute_task(self, task_id: str, agent_id: str) -> str:  # noqa: C901
        """Run passes and reviews for one task until it leaves the loop."""

        agent = self.repository.get_agent(agent_id)
        if agent is None:
            raise RuntimeError(f"Agent not found: {agent_id}")
        task = self._require_task(task_id)
        state = self._resume_state(task)

        while not task.is_terminal:
            if task.status in (TaskStatus.ASSIGNED, TaskStatus.IN_REVISION):
                task = self.repository.transition_task(
                    task_id=task_id,
                    status_to=TaskStatus.IN_PROGRESS,
                    expected_from=task.status,
                )

            if task.status == TaskStatus.IN_PROGRESS:
                outcome = self._run_steps(task, agent, state)
                if not outcome.completed:
                    return outcome.result
                assessment = self.evaluator.evaluate(task, state.outputs)
                task = self.repository.transition_task(
                    task_id=task_id,
                    status_to=TaskStatus.REVIEW,
                    expected_from=TaskStatus.IN_PROGRESS,
                    quality_score=assessment.score,
                    output={
                        "result": state.outputs[-1] if state.outputs else None,
                        "steps": state.outputs,
                        "revision": state.revision,
                    },
                )
                if state.revision > 0:
                    pass_cost = self.repository.task_cost(task_id=task_id) - state.pass_start_cost
                    self.repository.record_revision(
                        RevisionRecord(
                            task_id=task_id,
                            revision_no=state.revision,
                            quality_before=state.previous_quality or 0.0,
                            quality_after=assessment.score,
                            cost=max(0.0, pass_cost),
                        ),
                    )
            else:
                assessment = self.evaluator.evaluate(task, (task.output or {}).get("steps"))

            outcome_review = self._review(task, assessment, state)
            if outcome_review.decision == ReviewDecision.APPROVED:
                self.repository.transition_task(
                    task_id=task_id,
                    status_to=TaskStatus.APPROVED,
                    expected_from=TaskStatus.REVIEW,
                    details={"reason": outcome_review.reason},
                )
                self.skills.record_outcome(agent_id, task.required_skills, success=True)
                logger.info("Task %s approved at quality %.2f", task_id, assessment.score)
                return "approved"
            if outcome_review.decision == ReviewDecision.REJECTED:
                self._abort(task, outcome_review.reason, agent_id=agent_id)
                return "aborted"

            task = self.repository.transition_task(
                task_id=task_id,
                status_to=TaskStatus.IN_REVISION,
                expected_from=TaskStatus.REVIEW,
                increment_revision=True,
                details={"reason": outcome_review.reason, "unmet": assessment.unmet},
            )
            state = PassState(
                revision=task.revision_count,
                previous_output=state.outputs[-1] if state.outputs else state.previous_output,
                feedback=list(assessment.unmet),
                previous_quality=assessment.score,
                pass_start_cost=self.repository.task_cost(task_id=task_id),
            )
            logger.info(
                "Task %s sent back for revision %d (quality %.2f)",
                task_id,
                task.revision_count,
                assessment.score,
            )
        return task.status.value

    def _resume_state(self, task: TaskView) -> PassState:
        checkpoint = self.checkpoints.latest(task.task_id)
        if checkpoint is None:
            return PassState(
                revision=task.revision_count,
                previous_quality=task.quality_score,
                pass_start_cost=self.repository.task_cost(task_id=task.task_id),
            )
        saved = PassState.from_snapshot(checkpoint.snapshot)
        if saved.revision == task.revision_count:
            logger.info(
                "Resuming task %s from checkpoint step %d",
                task.task_id,
                checkpoint.step_number,
            )
            return saved
        return PassState(
            revision=task.revision_count,
            previous_output=saved.outputs[-1] if saved.outputs else saved.previous_output,
            previous_quality=task.quality_score,
            pass_start_cost=checkpoint.cumulative_cost,
        )

    def _run_steps(  # noqa: C901, PLR0912
        self,
        task: TaskView,
        agent: AgentView,
        state: PassState,
    ) -> StepsOutcome:
        steps = _planned_steps(task)
        while state.plan_index < len(steps):
            step = steps[state.plan_index]
            excluded: set[str] = set()
            attempt = 0
            while True:
                tool_input = self._step_input(task, step, state)
                requirements = ToolRequirements(
                    capabilities=frozenset(step.capabilities),
                    keywords=frozenset(step.keywords),
                    exclude_tool_ids=frozenset(excluded),
                )
                candidates = self.registry.find_candidates(requirements, agent)
                last_event = self.repository.last_event_at(task_id=task.task_id)
                gap = (utc_now() - last_event).total_seconds() if last_event else None
                if not candidates:
                    error = ExecutionError(
                        code="no_tool_candidates",
                        detail="No healthy permitted tool offers "
                        + ", ".join(capability.value for capability in step.capabilities),
                    )
                else:
                    result = self._invoke(task, agent, candidates[0], tool_input)
                    if result.ok:
                        state.outputs.append(result.output)
                        state.plan_index += 1
                        current = self._require_task(task.task_id)
                        self.checkpoints.save(
                            task.task_id,
                            current.current_step + 1,
                            state.to_snapshot(),
                            self.repository.task_cost(task_id=task.task_id),
                        )
                        break
                    error = result.error or ExecutionError(code="provider_error")

                attempt += 1
                analysis = self.classifier.classify(
                    task.task_id,
                    error,
                    self._execution_context(task, agent, len(candidates), gap),
                )
                analysis_id = self.repository.record_failure_analysis(
                    team_id=task.team_id,
                    task_id=task.task_id,
                    analysis=analysis,
                )
                decision = self.recovery.decide(
                    analysis,
                    attempt=attempt,
                    has_fallback_tool=(
                        analysis.category == FailureCategory.TOOL_FAILURE
                        and self._has_fallback(requirements, agent, error)
                    ),
                    has_alternative_agent=(
                        analysis.category == FailureCategory.CAPABILITY_GAP
                        and self._alternative_agent(task, agent) is not None
                    ),
                    can_decompose=len(steps) - state.plan_index >= 2,  # noqa: PLR2004
                )
                logger.warning(
                    "Task %s step %d failed (%s, %s): %s",
                    task.task_id,
                    state.plan_index + 1,
                    analysis.category.value,
                    decision.verdict.value,
                    error.summary(),
                )
                if decision.verdict == RecoveryVerdict.RETRY:
                    self.recovery.wait(decision)
                    continue
                if decision.verdict == RecoveryVerdict.RESELECT_TOOL:
                    if error.tool_id:
                        excluded.add(error.tool_id)
                    continue
                if decision.verdict == RecoveryVerdict.REASSIGN:
                    alternative = self._alternative_agent(task, agent)
                    if alternative is not None:
                        self.repository.reassign_task(
                            task_id=task.task_id,
                            agent_id=alternative.agent_id,
                            reason=decision.reason,
                        )
                        return StepsOutcome(completed=False, result="reassigned")
                elif decision.verdict == RecoveryVerdict.DECOMPOSE:
                    self._decompose_remaining(task, steps[state.plan_index :], state)
                    return StepsOutcome(completed=False, result="decomposed")
                elif decision.verdict == RecoveryVerdict.ABORT:
                    self._escalate(task, analysis, analysis_id=analysis_id, decision=decision)
                    self._abort(task, decision.reason, agent_id=agent.agent_id)
                    return StepsOutcome(completed=False, result="aborted")
                self._escalate(task, analysis, analysis_id=analysis_id, decision=decision)
                return StepsOutcome(completed=False, result="escalated")
        return StepsOutcome(completed=True, result="completed")

    def _invoke(
        self,
        task: TaskView,
        agent: AgentView,
        tool: ToolDefinition,
        tool_input: dict[str, Any],
    ) -> ToolExecutionResult:
        try:
            reservation_id = self.budget.reserve(task.team_id, self._reservation_amount(tool))
        except BudgetExceeded as error:
            return ToolExecutionResult(
                ok=False,
                error=ExecutionError(
                    code="budget_exceeded",
                    detail=str(error),
                    tool_id=tool.tool_id,
                ),
            )
        try:
            return self.executor.execute(
                tool,
                tool_input,
                ToolExecutionContext(
                    team_id=task.team_id,
                    task_id=task.task_id,
                    agent_id=agent.agent_id,
                    settle=functools.partial(self.budget.settle, task.team_id, reservation_id),
                ),
            )
        finally:
            self.budget.release(task.team_id, reservation_id)

    def _reservation_amount(self, tool: ToolDefinition) -> float:
        """Hold the larger of the declared estimate and the costliest call seen so far."""

        stats = self.repository.tool_stats([tool.tool_id]).get(tool.tool_id)
        return max(tool.cost_estimate, stats.max_cost if stats else 0.0)

    def _step_input(self, task: TaskView, step: PlannedStep, state: PassState) -> dict[str, Any]:
        return {
            "task": task.title,
            "description": step.description,
            "prompt": f"{task.description}\n\n{step.description}",
            "keywords": list(step.keywords or task.keywords),
            "previous_step": state.outputs[-1] if state.outputs else None,
            "previous_output": state.previous_output,
            "feedback": list(state.feedback),
        }

    def _execution_context(
        self,
        task: TaskView,
        agent: AgentView,
        candidate_tools: int,
        message_gap_seconds: float | None,
    ) -> ExecutionContext:
        team = self.repository.get_team(task.team_id)
        return ExecutionContext(
            tools_used=tuple(
                dict.fromkeys(
                    record.tool_id
                    for record in self.repository.list_tool_executions(task_id=task.task_id)
                ),
            ),
            message_gap_seconds=message_gap_seconds,
            required_skills=dict(task.required_skills),
            held_skills=dict(agent.skills),
            budget_limit=team.budget_limit if team else None,
            budget_spent=self.repository.team_spent(team_id=task.team_id),
            candidate_tools=candidate_tools,
        )

    def _has_fallback(
        self,
        requirements: ToolRequirements,
        agent: AgentView,
        error: ExecutionError,
    ) -> bool:
        if error.tool_id is None:
            return False
        fallback = ToolRequirements(
            capabilities=requirements.capabilities,
            keywords=requirements.keywords,
            exclude_tool_ids=requirements.exclude_tool_ids | {error.tool_id},
        )
        return bool(self.registry.find_candidates(fallback, agent))

    def _alternative_agent(self, task: TaskView, agent: AgentView) -> AgentView | None:
        return self.assigner.find_alternative(task, exclude=[agent.agent_id])

    def _decompose_remaining(
        self,
        task: TaskView,
        remaining: tuple[PlannedStep, ...],
        state: PassState,
    ) -> None:
        """Turn the remaining steps into subtasks; the task becomes their parent."""

        context = text_of(state.outputs[-1]) if state.outputs else ""
        children = [
            TaskCreate(
                title=f"{task.title} ({index}/{len(remaining)})",
                description=f"{step.description}\n\n{context}".strip(),
                acceptance_criteria=(step.description,),
                required_skills=dict(task.required_skills),
                required_capabilities=step.capabilities,
                keywords=step.keywords,
                steps=(step,),
                max_revisions=task.max_revisions,
                acceptance_threshold=task.acceptance_threshold,
            )
            for index, step in enumerate(remaining, start=1)
        ]
        created = self.repository.add_subtasks(parent_task_id=task.task_id, tasks=children)
        logger.info("Task %s decomposed into %d subtasks", task.task_id, len(created))

    def _review(
        self,
        task: TaskView,
        assessment: QualityAssessment,
        state: PassState,
    ) -> ReviewOutcome:
        history = self.repository.list_revisions(task_id=task.task_id)
        cumulative_cost = self.repository.task_cost(task_id=task.task_id)
        estimate = estimate_cost_to_threshold(
            quality=assessment.score,
            threshold=task.acceptance_threshold,
            history=history,
            fallback_revision_cost=cumulative_cost - state.pass_start_cost,
        )
        return self.review_policy.decide(
            task=task,
            quality=assessment.score,
            history=history,
            budget=BudgetOutlook(
                remaining=self.budget.remaining(task.team_id),
                estimated_cost_to_threshold=estimate,
            ),
            cumulative_cost=cumulative_cost,
        )

    def _abort(self, task: TaskView, reason: str, *, agent_id: str | None) -> None:
        sunk_cost = self.repository.task_cost(task_id=task.task_id)
        current = self._require_task(task.task_id)
        if current.is_terminal:
            return
        self.repository.transition_task(
            task_id=task.task_id,
            status_to=TaskStatus.ABORTED,
            expected_from=current.status,
            abort_reason=f"{reason} (sunk cost {sunk_cost:.4f})",
            details={"sunk_cost": sunk_cost},
        )
        if agent_id is not None:
            self.skills.record_outcome(agent_id, task.required_skills, success=False)
        logger.warning("Task %s aborted: %s (sunk cost %.4f)", task.task_id, reason, sunk_cost)

    def _escalate(
        self,
        task: TaskView,
        analysis: FailureAnalysis,
        *,
        analysis_id: str | None,
        decision: RecoveryDecision,
    ) -> str:
        sunk_cost = self.repository.task_cost(task_id=task.task_id)
        return self.escalation_sink.open(
            EscalationRequest(
                team_id=task.team_id,
                task_id=task.task_id,
                category=analysis.category,
                priority=decision.priority,
                recommended_action=analysis.recommended_action,
                intervention=decision.intervention or analysis.intervention,
                evidence={
                    **analysis.evidence,
                    "root_cause": analysis.root_cause,
                    "confidence": analysis.confidence,
                    "reason": decision.reason,
                    "sunk_cost": sunk_cost,
                },
                analysis_id=analysis_id,
            ),
        )

    def _escalate_unassignable(self, task: TaskView, error: NoEligibleAgent) -> None:
        analysis = self.classifier.classify(
            task.task_id,
            ExecutionError(code="no_eligible_agent", detail=str(error)),
            ExecutionContext(required_skills=dict(task.required_skills)),
        )
        analysis_id = self.repository.record_failure_analysis(
            team_id=task.team_id,
            task_id=task.task_id,
            analysis=analysis,
        )
        self._escalate(
            task,
            analysis,
            analysis_id=analysis_id,
            decision=RecoveryDecision(
                verdict=RecoveryVerdict.ESCALATE,
                reason=str(error),
                priority=analysis.escalation_priority,
                intervention=analysis.intervention,
            ),
        )

    # Parents & team completion --------------------------------------------

    def _roll_up_parents(self, team_id: str) -> None:
        """Close parents whose children all finished; deepest parents first."""

        tasks = self.repository.list_tasks(team_id=team_id, limit=None)
        by_id = {task.task_id: task for task in tasks}
        children: dict[str, list[str]] = {}
        for task in tasks:
            if task.parent_task_id:
                children.setdefault(task.parent_task_id, []).append(task.task_id)
        team = self.repository.get_team(team_id)
        manager_id = team.manager_agent_id if team else None

        for parent_id in sorted(children, key=lambda item: -_depth(by_id[item], by_id)):
            parent = by_id[parent_id]
            if parent.is_terminal:
                continue
            kids = [by_id[child_id] for child_id in children[parent_id]]
            aborted = [kid for kid in kids if kid.status == TaskStatus.ABORTED]
            try:
                if aborted:
                    by_id[parent_id] = self.repository.transition_task(
                        task_id=parent_id,
                        status_to=TaskStatus.ABORTED,
                        expected_from=parent.status,
                        abort_reason=(
                            f"subtask {aborted[0].task_id} aborted: {aborted[0].abort_reason} "
                            f"(sunk cost {self._subtree_cost(parent_id, children):.4f})"
                        ),
                    )
                elif all(kid.status == TaskStatus.APPROVED for kid in kids):
                    by_id[parent_id] = self._approve_parent(parent, kids, manager_id)
            except InvalidTransition as error:
                logger.warning("Could not roll up parent task %s: %s", parent_id, error)

    def _approve_parent(
        self,
        parent: TaskView,
        kids: list[TaskView],
        manager_id: str | None,
    ) -> TaskView:
        quality = sum(kid.quality_score or 0.0 for kid in kids) / len(kids)
        current = parent
        while current.status != TaskStatus.APPROVED:
            status_to = _ROLLUP_PATH[current.status]
            current = self.repository.transition_task(
                task_id=parent.task_id,
                status_to=status_to,
                expected_from=current.status,
                agent_id=manager_id if status_to == TaskStatus.ASSIGNED else None,
                quality_score=round(quality, 4) if status_to == TaskStatus.REVIEW else None,
                output=(
                    {"children": {kid.task_id: kid.output for kid in kids}}
                    if status_to == TaskStatus.REVIEW
                    else None
                ),
                details={"rollup": True},
            )
        logger.info("Parent task %s approved with mean quality %.2f", parent.task_id, quality)
        return current

    def _subtree_cost(self, task_id: str, children: dict[str, list[str]]) -> float:
        total = self.repository.task_cost(task_id=task_id)
        for child_id in children.get(task_id, []):
            total += self._subtree_cost(child_id, children)
        return total

    def _finalize_team(self, team_id: str) -> TeamStatus:
        tasks = self.repository.list_tasks(team_id=team_id, limit=None)
        roots = [task for task in tasks if task.parent_task_id is None]
        if roots and all(task.status == TaskStatus.APPROVED for task in roots):
            self.repository.transition_team(team_id=team_id, status_to=TeamStatus.COMPLETED)
            logger.info("Team %s completed", team_id)
            return TeamStatus.COMPLETED
        aborted_root = next((task for task in roots if task.status == TaskStatus.ABORTED), None)
        if aborted_root is not None:
            for task in tasks:
                if not task.is_terminal:
                    self._abort(task, "team aborted", agent_id=None)
            reason = aborted_root.abort_reason or "root task aborted"
            self.repository.transition_team(
                team_id=team_id,
                status_to=TeamStatus.ABORTED,
                reason=reason,
            )
            logger.warning("Team %s aborted: %s", team_id, reason)
            return TeamStatus.ABORTED
        self.repository.transition_team(
            team_id=team_id,
            status_to=TeamStatus.PAUSED,
            reason="waiting on escalations or capacity",
        )
        logger.info("Team %s paused with open work", team_id)
        return TeamStatus.PAUSED

    def _summary(
        self,
        team_id: str,
        status: TeamStatus,
        *,
        rounds: int,
        dispatched: int,
    ) -> TeamRunSummary:
        tasks = self.repository.list_tasks(team_id=team_id, limit=None)
        return TeamRunSummary(
            team_id=team_id,
            status=status,
            rounds=rounds,
            dispatched=dispatched,
            approved=sum(1 for task in tasks if task.status == TaskStatus.APPROVED),
            aborted=sum(1 for task in tasks if task.status == TaskStatus.ABORTED),
            escalated=len(self.repository.open_escalation_task_ids(team_id=team_id)),
            open_tasks=sum(1 for task in tasks if not task.is_terminal),
            spent=self.repository.team_spent(team_id=team_id),
        )

    # Escalations -----------------------------------------------------------

    def resolve_escalation(
        self,
        escalation_id: str,
        resolution: EscalationResolution,
        note: str | None = None,
        *,
        agent_id: str | None = None,
    ) -> CheckpointView | None:
        """Apply a human resolution; the task resumes from its last checkpoint on the next run.

        `clarify` appends the note to the task description, `reassign` moves
        the task to `agent_id` (or the best alternative worker), and `approve`
        lets the task retry as is.
        """

        escalation = self.repository.get_escalation(escalation_id)
        if escalation is None:
            raise RuntimeError(f"Escalation not found: {escalation_id}")
        if escalation.status != EscalationStatus.OPEN:
            raise RuntimeError(f"Escalation already resolved: {escalation_id}")
        task = self._require_task(escalation.task_id)
        if task.is_terminal:
            # Aborted work can only be acknowledged; there is nothing left to resume.
            if resolution != EscalationResolution.APPROVE:
                raise InvalidTransition(
                    task.task_id,
                    task.status.value,
                    task.status.value,
                    "task is terminal",
                )
            self.repository.resolve_escalation(
                escalation_id=escalation_id,
                resolution=resolution,
                note=note,
            )
            logger.info(
                "Escalation %s acknowledged for terminal task %s",
                escalation_id,
                task.task_id,
            )
            return None

        if resolution == EscalationResolution.CLARIFY:
            if not note or not note.strip():
                raise ValueError("A clarification note is required to resolve with clarify.")
            self.repository.append_task_clarification(task_id=task.task_id, note=note)
        elif resolution == EscalationResolution.REASSIGN:
            self._reassign_for_resolution(task, agent_id=agent_id, note=note)

        self.repository.resolve_escalation(
            escalation_id=escalation_id,
            resolution=resolution,
            note=note,
        )
        logger.info("Escalation %s resolved with %s", escalation_id, resolution.value)
        return self.checkpoints.latest(task.task_id)

    def _reassign_for_resolution(
        self,
        task: TaskView,
        *,
        agent_id: str | None,
        note: str | None,
    ) -> None:
        if agent_id is not None:
            target = self.repository.get_agent(agent_id)
            if target is None or target.team_id != task.team_id or not target.active:
                raise ValueError(
                    f"Agent {agent_id} is not an active member of team {task.team_id}.",
                )
        else:
            exclude = [task.assigned_agent_id] if task.assigned_agent_id else []
            target = self.assigner.find_alternative(task, exclude=exclude)
            if target is None:
                target = self.assigner.spawn_for(task)
            if target is None:
                raise NoEligibleAgent(
                    task.task_id,
                    {skill.value: level for skill, level in task.required_skills.items()},
                )
        reason = note or "escalation resolved with reassign"
        if task.status == TaskStatus.PENDING:
            self.repository.transition_task(
                task_id=task.task_id,
                status_to=TaskStatus.ASSIGNED,
                expected_from=TaskStatus.PENDING,
                agent_id=target.agent_id,
                details={"reason": reason},
            )
        else:
            self.repository.reassign_task(
                task_id=task.task_id,
                agent_id=target.agent_id,
                reason=reason,
            )

    def _require_task(self, task_id: str) -> TaskView:
        task = self.repository.get_task(task_id)
        if task is None:
            raise RuntimeError(f"Task not found: {task_id}")
        return task


def _planned_steps(task: TaskView) -> tuple[PlannedStep, ...]:
    if task.steps:
        return task.steps
    return (
        PlannedStep(
            description=task.description,
            capabilities=task.required_capabilities or (Capability.TEXT_GENERATION,),
            keywords=task.keywords,
        ),
    )


def _depth(task: TaskView, by_id: dict[str, TaskView]) -> int:
    depth = 0
    current = task
    while current.parent_task_id and current.parent_task_id in by_id:
        depth += 1
        current = by_id[current.parent_task_id]
    return depth


def _has_aborted_ancestor(task: TaskView, by_id: dict[str, TaskView]) -> bool:
    current = task
    while current.parent_task_id and current.parent_task_id in by_id:
        current = by_id[current.parent_task_id]
        if current.status == TaskStatus.ABORTED:
            return True
    return False
