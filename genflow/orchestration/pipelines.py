"""
Linear generation pipelines.

Fixed, hand-written step sequences that reuse the engine's state store,
control surface and retry policy without a node graph:

- SingleVideoPipeline: character image -> video -> optional enhancement
- SeriesVideoPipeline: one character image, then one video per scenario
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..exceptions import (
    OutputAssemblyError,
    TerminalStepError,
    UnresolvedInputError,
    WorkflowCancelledError,
)
from ..utils.retry import RetryPolicy, SleepFn
from .workflow_engine.core import BaseRun, StepInvoker
from .workflow_engine.executors import StepExecutor
from .workflow_engine.steps import FailureKind, NodeDef, StepResult, WorkflowResult

logger = logging.getLogger(__name__)

CHARACTER_IMAGE = "generate_character_image"
VIDEO = "generate_video"
ENHANCE = "enhance_video"

StepOutputs = Dict[str, Dict[str, Any]]


@dataclass
class LinearStep:
    """One step of a linear pipeline.

    Attributes:
        id: Step identifier, also the node id passed to the executor
        node_type: Executor dispatch key
        build_inputs: Builds the step's inputs from earlier steps' outputs
        continue_on_failure: Record a failure and move on instead of ending the run
        config: Opaque per-step configuration handed to the executor
    """

    id: str
    node_type: str
    build_inputs: Callable[[StepOutputs], Dict[str, Any]]
    continue_on_failure: bool = False
    config: Dict[str, Any] = field(default_factory=dict)


def upstream(outputs: StepOutputs, consumer: str, step_id: str, slot: str) -> Any:
    """Read ``slot`` from a completed step's outputs.

    Raises:
        UnresolvedInputError: If the step did not produce the slot
    """
    produced = outputs.get(step_id)
    if produced is None or slot not in produced:
        raise UnresolvedInputError(consumer, slot, step_id, slot)
    return produced[slot]


class LinearRun(BaseRun):
    """One execution of a fixed step list."""

    def __init__(
        self,
        name: str,
        steps: Sequence[LinearStep],
        invoker: StepInvoker,
        assemble: Callable[[StepOutputs, Dict[str, StepResult]], Dict[str, Any]],
        run_id: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        super().__init__(run_id or str(uuid.uuid4()), len(steps), invoker, clock=clock)
        self.name = name
        self.steps = list(steps)
        self._assemble = assemble
        self._outputs: StepOutputs = {}

    async def execute(self) -> WorkflowResult:
        self.control.bind()
        self.store.mark_executing()
        total = len(self.steps)
        logger.info(f"Starting {self.name} run {self.run_id} ({total} steps)")

        try:
            for index, step in enumerate(self.steps):
                await self._suspension_point()

                self.store.record_step_start(step.id, index)
                logger.info(f"Executing step {index + 1}/{total}: {step.id}")

                try:
                    inputs = step.build_inputs(self._outputs)
                except UnresolvedInputError as e:
                    now = self._clock()
                    self.store.record_step_result(
                        StepResult(
                            node_id=step.id,
                            success=False,
                            error=str(e),
                            attempts=0,
                            started_at=now,
                            finished_at=now,
                        )
                    )
                    raise

                node = NodeDef(id=step.id, type=step.node_type, inputs=list(inputs), config=step.config)
                result = await self.invoker.invoke(node, inputs)
                self.store.record_step_result(result)

                if not result.success:
                    if step.continue_on_failure:
                        logger.warning(f"Step {step.id} failed, continuing: {result.error}")
                        continue
                    raise TerminalStepError(f"Node {step.id} failed: {result.error}", step.id)

                self._outputs[step.id] = copy.deepcopy(result.outputs)
                logger.info(f"Step {step.id} completed: cost ${result.cost:.4f}")

            outputs = self._assemble(self._outputs, self.store.snapshot().results)

        except WorkflowCancelledError as e:
            return self._fail(str(e), FailureKind.CANCELLED)
        except UnresolvedInputError as e:
            return self._fail(str(e), FailureKind.DEFINITION)
        except TerminalStepError as e:
            return self._fail(str(e), FailureKind.STEP)
        except OutputAssemblyError as e:
            return self._fail(str(e), FailureKind.OUTPUT)

        return self._complete(outputs)


class _Pipeline:
    """Holds the step invoker shared by the runs a pipeline prepares."""

    name = "pipeline"

    def __init__(
        self,
        executor: StepExecutor,
        retry_policy: Optional[RetryPolicy] = None,
        step_timeout: Optional[float] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.invoker = StepInvoker(
            executor, retry_policy=retry_policy, step_timeout=step_timeout, sleep=sleep, clock=clock
        )
        self._clock = clock

    def _run(self, steps, assemble, run_id) -> LinearRun:
        return LinearRun(self.name, steps, self.invoker, assemble, run_id=run_id, clock=self._clock)


def _character_step(prompt: str, temperature: float) -> LinearStep:
    return LinearStep(
        id="character_image",
        node_type=CHARACTER_IMAGE,
        build_inputs=lambda _: {"prompt": prompt, "temperature": temperature, "num_images": 1},
    )


class SingleVideoPipeline(_Pipeline):
    """Character image, then a video from it, then an optional enhancement pass."""

    name = "single-video"

    def prepare(
        self,
        character_prompt: str,
        video_prompt: str,
        temperature: float = 0.3,
        duration: int = 8,
        aspect_ratio: str = "16:9",
        model: str = "fast",
        enhance: bool = False,
        run_id: Optional[str] = None,
    ) -> LinearRun:
        """Build a run; any step failure ends it."""
        steps = [
            _character_step(character_prompt, temperature),
            LinearStep(
                id="video",
                node_type=VIDEO,
                build_inputs=lambda out: {
                    "prompt": video_prompt,
                    "duration": duration,
                    "aspect_ratio": aspect_ratio,
                    "model": model,
                    "first_frame": upstream(out, "video", "character_image", "image_path"),
                },
            ),
        ]
        if enhance:
            steps.append(
                LinearStep(
                    id="enhance",
                    node_type=ENHANCE,
                    build_inputs=lambda out: {
                        "video_path": upstream(out, "enhance", "video", "video_path"),
                    },
                )
            )

        def assemble(outputs: StepOutputs, results: Dict[str, StepResult]) -> Dict[str, Any]:
            return {
                "character_image_path": _required(outputs, "character_image_path", "character_image", "image_path"),
                "video_path": _required(outputs, "video_path", "video", "video_path"),
                "enhanced_video_path": (
                    _required(outputs, "enhanced_video_path", "enhance", "video_path") if enhance else None
                ),
                "stages": _stages(
                    results,
                    character_generation=["character_image"],
                    video_generation=["video"],
                    **({"enhancement": ["enhance"]} if enhance else {}),
                ),
            }

        return self._run(steps, assemble, run_id)

    async def run(self, character_prompt: str, video_prompt: str, **kwargs) -> WorkflowResult:
        return await self.prepare(character_prompt, video_prompt, **kwargs).execute()


class VideoScenario(BaseModel):
    """One video of a series."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    video_prompt: str
    duration: Literal[4, 6, 8] = 8
    aspect_ratio: Literal["16:9", "9:16", "1:1"] = "16:9"
    model: Literal["fast", "standard"] = "fast"


class SeriesVideoPipeline(_Pipeline):
    """One character image reused as the first frame of every scenario video.

    A failed scenario is recorded and the series moves on; the run succeeds
    when at least one video was produced.
    """

    name = "series-video"

    def prepare(
        self,
        character_prompt: str,
        scenarios: Sequence[VideoScenario | Dict[str, Any]],
        temperature: float = 0.3,
        run_id: Optional[str] = None,
    ) -> LinearRun:
        """Build a run.

        Raises:
            ValueError: If no scenarios are given
        """
        parsed = [s if isinstance(s, VideoScenario) else VideoScenario.model_validate(s) for s in scenarios]
        if not parsed:
            raise ValueError("series needs at least one scenario")

        steps = [_character_step(character_prompt, temperature)]
        for index, scenario in enumerate(parsed):
            steps.append(
                LinearStep(
                    id=f"video_{index}",
                    node_type=VIDEO,
                    build_inputs=_scenario_inputs(f"video_{index}", scenario),
                    continue_on_failure=True,
                    config={"scenario_index": index},
                )
            )

        def assemble(outputs: StepOutputs, results: Dict[str, StepResult]) -> Dict[str, Any]:
            videos = []
            for index in range(len(parsed)):
                result = results.get(f"video_{index}")
                videos.append(
                    {
                        "scenario_index": index,
                        "video_path": result.outputs.get("video_path") if result and result.success else None,
                        "cost": result.cost if result and result.success else 0.0,
                        "success": bool(result and result.success),
                        "error": result.error if result else None,
                    }
                )

            succeeded = sum(1 for video in videos if video["success"])
            logger.info(f"Generated {succeeded}/{len(videos)} videos successfully")
            if not succeeded:
                raise TerminalStepError(f"all {len(videos)} scenario videos failed")

            return {
                "character_image_path": _required(outputs, "character_image_path", "character_image", "image_path"),
                "videos": videos,
                "stages": _stages(
                    results,
                    character_generation=["character_image"],
                    video_generation=[f"video_{index}" for index in range(len(parsed))],
                ),
            }

        return self._run(steps, assemble, run_id)

    async def run(self, character_prompt: str, scenarios, **kwargs) -> WorkflowResult:
        return await self.prepare(character_prompt, scenarios, **kwargs).execute()


def _scenario_inputs(step_id: str, scenario: VideoScenario) -> Callable[[StepOutputs], Dict[str, Any]]:
    def build(outputs: StepOutputs) -> Dict[str, Any]:
        return {
            "prompt": scenario.video_prompt,
            "duration": scenario.duration,
            "aspect_ratio": scenario.aspect_ratio,
            "model": scenario.model,
            "first_frame": upstream(outputs, step_id, "character_image", "image_path"),
        }

    return build


def _required(outputs: StepOutputs, name: str, step_id: str, slot: str) -> Any:
    produced = outputs.get(step_id)
    if produced is None or slot not in produced:
        raise OutputAssemblyError(name, step_id, slot)
    return produced[slot]


def _stages(results: Dict[str, StepResult], **groups: List[str]) -> Dict[str, Dict[str, float]]:
    """Per-stage time and cost; only successful steps count toward cost."""
    stages = {}
    for stage, step_ids in groups.items():
        recorded = [results[step_id] for step_id in step_ids if step_id in results]
        stages[stage] = {
            "time_ms": sum(r.execution_time_ms for r in recorded),
            "cost": sum(r.cost for r in recorded if r.success),
        }
    return stages
