from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from pydantic import BaseModel

from formal_studio.config import PipelineSettings, load_pipeline_settings
from formal_studio.schemas import (
    AttemptRecord,
    GenderMode,
    PipelineResult,
    PipelineStatus,
    RetryAdjustment,
    StudioType,
    ValidationResult,
)
from formal_studio.services.backends import GenerationService
from formal_studio.services.perception import GenerationError, PerceptionError, PerceptionService
from formal_studio.services.validation import RetryContext, compute_retry_decision, select_best_attempt
from formal_studio.studios.base import StudioController
from formal_studio.studios.registry import STUDIO_CONTROLLERS

LOG = logging.getLogger("formal_studio.pipeline")

T = TypeVar("T")


class StepTimeout(Exception):
    def __init__(self, step: str, timeout_s: float) -> None:
        super().__init__(f"step {step} exceeded {timeout_s:.1f}s")
        self.step = step


class RunCancelled(Exception):
    pass


@dataclass
class _RunState:
    run_id: str
    studio_type: StudioType
    max_retries: int
    started: float
    deadline: float
    step_timings: dict[str, float] = field(default_factory=dict)
    status_history: list[PipelineStatus] = field(default_factory=list)
    attempts: list[AttemptRecord] = field(default_factory=list)

    def set_status(self, status: PipelineStatus) -> None:
        self.status_history.append(status)

    def elapsed_ms(self) -> float:
        return round((time.monotonic() - self.started) * 1000.0, 2)


class StudioPipeline:
    """End-to-end edit run: perceive, constrain, generate, evaluate, retry.

    Each step runs under the per-step timeout, bounded by whatever remains of the
    total run budget. Cancellation is checked between steps only.
    """

    def __init__(
        self,
        perception_service: PerceptionService,
        generation_service: GenerationService,
        settings: PipelineSettings | None = None,
        controllers: Mapping[StudioType, StudioController] | None = None,
    ) -> None:
        self.perception = perception_service
        self.generation = generation_service
        self.settings = settings or load_pipeline_settings()
        self.controllers = dict(controllers or STUDIO_CONTROLLERS)

    async def _step(
        self,
        state: _RunState,
        name: str,
        cancel_event: asyncio.Event | None,
        func: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelled(f"cancelled before {name}")
        remaining = state.deadline - time.monotonic()
        if remaining <= 0:
            raise StepTimeout(name, 0.0)
        timeout_s = min(self.settings.step_timeout_s, remaining)
        started = time.monotonic()
        try:
            return await asyncio.wait_for(func(*args), timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            raise StepTimeout(name, timeout_s) from exc
        finally:
            state.step_timings[name] = round((time.monotonic() - started) * 1000.0, 2)

    def _result(
        self,
        state: _RunState,
        status: PipelineStatus,
        *,
        accepted: bool = False,
        record: AttemptRecord | None = None,
        error: str | None = None,
        rejection_reason: str | None = None,
        user_guidance: str | None = None,
    ) -> PipelineResult:
        if not state.status_history or state.status_history[-1] != status:
            state.set_status(status)
        return PipelineResult(
            run_id=state.run_id,
            studio_type=state.studio_type,
            status=status,
            accepted=accepted,
            output_image_ref=record.output_image_ref if record else None,
            validation=record.validation if record else None,
            retry_attempts=max(0, len(state.attempts) - 1),
            max_retries=state.max_retries,
            execution_time_ms=state.elapsed_ms(),
            step_timings=dict(state.step_timings),
            error=error,
            rejection_reason=rejection_reason,
            user_guidance=user_guidance,
            attempts=list(state.attempts),
            status_history=list(state.status_history),
        )

    def _failed(self, state: _RunState, error: str) -> PipelineResult:
        best = select_best_attempt(state.attempts)
        LOG.warning(
            "run_failed run=%s studio=%s attempts=%d error=%s",
            state.run_id,
            state.studio_type.value,
            len(state.attempts),
            error,
        )
        return self._result(state, "failed", record=best, error=error)

    async def run(
        self,
        input_image_ref: str,
        studio_type: StudioType | str,
        params: BaseModel | Mapping[str, Any] | None = None,
        gender_mode: GenderMode = "Gentlemen",
        cancel_event: asyncio.Event | None = None,
    ) -> PipelineResult:
        studio = StudioType(studio_type)
        controller = self.controllers[studio]
        parsed = controller.parse_params(params)

        started = time.monotonic()
        state = _RunState(
            run_id=uuid.uuid4().hex,
            studio_type=studio,
            max_retries=self.settings.max_retries,
            started=started,
            deadline=started + self.settings.total_timeout_s,
        )
        state.set_status("idle")
        LOG.info("run_started run=%s studio=%s image=%s", state.run_id, studio.value, input_image_ref)

        rejection = controller.check_safety(parsed)
        if rejection is not None:
            LOG.warning("run_blocked run=%s studio=%s", state.run_id, studio.value)
            return self._result(state, "blocked", rejection_reason=rejection)

        try:
            state.set_status("perceiving")
            try:
                original = await self._step(state, "perception", cancel_event, self.perception.run, input_image_ref)
            except PerceptionError as exc:
                return self._failed(state, f"perception failed ({exc.module}/{exc.code}): {exc.message}")

            adjustments: list[RetryAdjustment] = []
            for attempt in range(state.max_retries + 1):
                if attempt > 0:
                    state.set_status("retrying")

                state.set_status("constraining")
                constrain_started = time.monotonic()
                request = controller.build_generation_request(
                    input_image_ref,
                    parsed,
                    original,
                    gender_mode,
                    retry_attempt=attempt,
                    adjustments=adjustments,
                    auto_tighten=self.settings.auto_tighten,
                )
                state.step_timings[f"constraint_{attempt}"] = round((time.monotonic() - constrain_started) * 1000.0, 2)

                state.set_status("generating")
                output_ref = await self._step(state, f"generation_{attempt}", cancel_event, self.generation.generate, request)

                if not self.settings.enable_output_perception:
                    record = AttemptRecord(
                        attempt=attempt,
                        output_image_ref=output_ref,
                        identity_weight=request.identity_weight,
                        creativity_level=request.creativity_level,
                    )
                    state.attempts.append(record)
                    return self._result(state, "complete", accepted=True, record=record)

                state.set_status("evaluating")
                try:
                    output_perception = await self._step(
                        state, f"output_perception_{attempt}", cancel_event, self.perception.run, output_ref
                    )
                except PerceptionError as exc:
                    return self._failed(state, f"output perception failed ({exc.module}/{exc.code}): {exc.message}")

                state.set_status("validating")
                validation: ValidationResult = await self._step(
                    state,
                    f"validation_{attempt}",
                    cancel_event,
                    asyncio.to_thread,
                    controller.validate_output,
                    output_perception,
                    original,
                    parsed,
                )
                record = AttemptRecord(
                    attempt=attempt,
                    output_image_ref=output_ref,
                    validation=validation,
                    identity_weight=request.identity_weight,
                    creativity_level=request.creativity_level,
                )
                previous = [r.validation.quality for r in state.attempts if r.validation is not None]
                state.attempts.append(record)
                LOG.info(
                    "attempt_evaluated run=%s attempt=%d composite=%.3f passed=%s failures=%d",
                    state.run_id,
                    attempt,
                    validation.quality.composite_score,
                    validation.passed,
                    len(validation.failures),
                )

                if validation.passed:
                    LOG.info("run_complete run=%s attempts=%d", state.run_id, len(state.attempts))
                    return self._result(state, "complete", accepted=True, record=record)

                best = select_best_attempt(state.attempts)
                decision = compute_retry_decision(
                    validation,
                    RetryContext(
                        attempt=attempt,
                        max_retries=state.max_retries,
                        previous_evaluations=previous,
                        best_score=best.composite_score if best else 0.0,
                        best_output_ref=best.output_image_ref if best else None,
                        accumulated_adjustments=adjustments,
                    ),
                )
                if not decision.should_retry:
                    LOG.warning(
                        "retries_exhausted run=%s attempts=%d best_composite=%.3f",
                        state.run_id,
                        len(state.attempts),
                        best.composite_score if best else 0.0,
                    )
                    return self._result(
                        state,
                        "failed",
                        record=best,
                        error="quality gate not met after all retries",
                        user_guidance=decision.user_guidance,
                    )
                adjustments = decision.adjustments

        except GenerationError as exc:
            return self._failed(state, f"generation failed: {exc}")
        except StepTimeout as exc:
            return self._failed(state, f"timeout: {exc}")
        except RunCancelled as exc:
            return self._failed(state, str(exc))

        return self._failed(state, "retry loop ended without a decision")
