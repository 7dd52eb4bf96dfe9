"""Declarative stage pipeline shared by the install and uninstall flows.

A pipeline is an ordered list of :class:`Stage` descriptors. Each stage has
an action returning a :class:`StepResult`, an optional ``run_if`` predicate
and a criticality: a failed *fatal* stage stops the run, a failed *warning*
stage is recorded and the run continues. Progress is pushed to an observer
callback synchronously from the pipeline thread before and after every stage.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

from .logging import OperationScope

LOGGER = logging.getLogger(__name__)

ContextT = TypeVar("ContextT")


class Criticality(str, Enum):
    """How a stage failure affects the rest of the pipeline."""

    FATAL = "fatal"
    WARNING = "warning"


class StageStatus(str, Enum):
    """Recorded outcome of a single stage."""

    SUCCESS = "success"
    WARNING = "warning"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class StepResult:
    """Uniform ``(success, message, error_message)`` triple returned by every step."""

    success: bool
    message: str = ""
    error_message: str = ""
    warnings: tuple[str, ...] = ()

    @classmethod
    def ok(cls, message: str = "", *, warnings: Sequence[str] = ()) -> StepResult:
        """Return a successful result."""
        return cls(success=True, message=message, warnings=tuple(warnings))

    @classmethod
    def fail(cls, error_message: str, *, message: str = "") -> StepResult:
        """Return a failed result."""
        return cls(success=False, message=message, error_message=error_message)


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Progress notification delivered to observers."""

    step: int
    total: int
    stage: str
    percentage: int
    message: str
    completed: bool = False


ProgressObserver = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class Stage(Generic[ContextT]):
    """Declarative description of one pipeline stage."""

    name: str
    action: Callable[[ContextT], StepResult]
    start_percent: int
    end_percent: int
    start_message: str
    done_message: str
    criticality: Criticality = Criticality.FATAL
    run_if: Callable[[ContextT], bool] | None = None
    skip_message: str | None = None

    def should_run(self, context: ContextT) -> bool:
        """Return ``True`` when the stage predicate allows it to run."""
        return self.run_if is None or bool(self.run_if(context))


@dataclass(slots=True)
class StageOutcome:
    """Result of one stage as recorded by the runner."""

    name: str
    status: StageStatus
    result: StepResult | None = None

    @property
    def detail(self) -> str:
        """Return the message most relevant to the recorded status."""
        if self.result is None:
            return ""
        if self.status in (StageStatus.FAILED, StageStatus.WARNING):
            return self.result.error_message or self.result.message
        return self.result.message


@dataclass(slots=True)
class PipelineOutcome:
    """Aggregate outcome of a pipeline run."""

    success: bool
    stages: list[StageOutcome] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    failed_stage: str | None = None
    error_message: str = ""
    percentage: int = 0

    def status_of(self, name: str) -> StageStatus | None:
        """Return the recorded status of stage *name*."""
        for outcome in self.stages:
            if outcome.name == name:
                return outcome.status
        return None


class PipelineRunner(Generic[ContextT]):
    """Execute stages sequentially, classifying failures by criticality."""

    def __init__(
        self,
        stages: Sequence[Stage[ContextT]],
        *,
        observer: ProgressObserver | None = None,
        recorder: Callable[[StageOutcome], None] | None = None,
    ) -> None:
        """Store the stage list and the optional progress/outcome callbacks."""
        if not stages:
            raise ValueError("A pipeline needs at least one stage.")
        self._stages = list(stages)
        self._observer = observer
        self._recorder = recorder
        self._current_index = 0
        self._percentage = 0

    @property
    def stages(self) -> list[Stage[ContextT]]:
        """Return the configured stages."""
        return list(self._stages)

    def report(self, percentage: int, message: str, *, completed: bool = False) -> None:
        """Emit intermediate progress for the stage currently running."""
        stage = self._stages[min(self._current_index, len(self._stages) - 1)]
        self._emit(self._current_index, stage.name, percentage, message, completed)

    def run(self, context: ContextT) -> PipelineOutcome:
        """Run every stage against *context* and return the aggregate outcome."""
        outcome = PipelineOutcome(success=True)
        for index, stage in enumerate(self._stages):
            self._current_index = index
            if not stage.should_run(context):
                if stage.skip_message:
                    self._emit(index, stage.name, stage.end_percent, stage.skip_message, True)
                self._record(outcome, StageOutcome(stage.name, StageStatus.SKIPPED))
                continue

            self._emit(index, stage.name, stage.start_percent, stage.start_message, False)
            result = self._execute(stage, context)
            outcome.warnings.extend(result.warnings)

            if result.success:
                status = StageStatus.WARNING if result.warnings else StageStatus.SUCCESS
                self._record(outcome, StageOutcome(stage.name, status, result))
                self._emit(index, stage.name, stage.end_percent, stage.done_message, True)
                continue

            detail = result.error_message or result.message or f"{stage.name} failed"
            if stage.criticality is Criticality.WARNING:
                LOGGER.warning("Stage %s failed (continuing): %s", stage.name, detail)
                outcome.warnings.append(detail)
                self._record(outcome, StageOutcome(stage.name, StageStatus.WARNING, result))
                self._emit(index, stage.name, stage.end_percent, f"Warning: {detail}", True)
                continue

            LOGGER.error("Stage %s failed: %s", stage.name, detail)
            self._record(outcome, StageOutcome(stage.name, StageStatus.FAILED, result))
            outcome.success = False
            outcome.failed_stage = stage.name
            outcome.error_message = detail
            break

        outcome.percentage = self._percentage
        return outcome

    def simulate(
        self,
        *,
        delay: float,
        sleep: Callable[[float], None] = time.sleep,
        label: str = "DEMO",
    ) -> PipelineOutcome:
        """Replay the progress sequence without running any action."""
        outcome = PipelineOutcome(success=True)
        for index, stage in enumerate(self._stages):
            self._current_index = index
            self._emit(index, stage.name, stage.start_percent, f"{label}: {stage.start_message}", False)
            sleep(delay)
            self._emit(index, stage.name, stage.end_percent, f"{label}: {stage.done_message}", True)
            outcome.stages.append(
                StageOutcome(stage.name, StageStatus.SUCCESS, StepResult.ok("simulated"))
            )
        outcome.percentage = self._percentage
        return outcome

    # ------------------------------------------------------------------
    def _execute(self, stage: Stage[ContextT], context: ContextT) -> StepResult:
        try:
            return stage.action(context)
        except Exception as exc:  # noqa: BLE001 - stage failures are classified, not raised
            LOGGER.exception("Stage %s raised an unexpected error", stage.name)
            return StepResult.fail(f"Unexpected error during {stage.name}: {exc}")

    def _record(self, outcome: PipelineOutcome, stage_outcome: StageOutcome) -> None:
        outcome.stages.append(stage_outcome)
        if self._recorder is not None:
            self._recorder(stage_outcome)

    def _emit(self, index: int, name: str, percentage: int, message: str, completed: bool) -> None:
        self._percentage = max(self._percentage, int(percentage))
        if self._observer is None:
            return
        self._observer(
            ProgressEvent(
                step=index + 1,
                total=len(self._stages),
                stage=name,
                percentage=int(percentage),
                message=message,
                completed=completed,
            )
        )


def step_recorder(
    op: OperationScope | None,
    prefix: str,
) -> Callable[[StageOutcome], None] | None:
    """Return a callback adding each stage outcome to *op* as a step."""
    if op is None:
        return None

    def record(outcome: StageOutcome) -> None:
        op.add_step(
            f"{prefix}.{outcome.name}",
            status=outcome.status.value,
            detail=outcome.detail or None,
        )

    return record


__all__ = [
    "Criticality",
    "PipelineOutcome",
    "PipelineRunner",
    "ProgressEvent",
    "ProgressObserver",
    "Stage",
    "StageOutcome",
    "StageStatus",
    "StepResult",
    "step_recorder",
]
