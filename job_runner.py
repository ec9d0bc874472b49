"""
Job runner: executes the six pipeline steps for one job, in order.

Step inputs:
    1 <- job input (topic / seed text)
    2 <- step 1    3 <- step 2
    4, 5, 6 <- step 3
"""
import inspect
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from batch_optimizer import ScheduleConfig
from config import STEP_NAMES
from script_steps import (
    CancelToken,
    JobCancelledError,
    StageSettings,
    StepExecutor,
    call_model,
)

PIPELINE_STEPS = (1, 2, 3, 4, 5, 6)
STEP_INPUTS = {2: 1, 3: 2, 4: 3, 5: 3, 6: 3}


def _log(msg: str) -> None:
    print(f"[JOB] {msg}")


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    id: str
    input: str
    status: JobStatus = JobStatus.PENDING
    outputs: dict[int, str] = field(default_factory=dict)
    error: str | None = None
    failed_step: int | None = None
    warnings: list[dict] = field(default_factory=list)
    quality_score: dict | None = None
    created_at: float = field(default_factory=time.time)
    # Resume checkpoint for the chunked outline/script steps
    current_step: int | None = None
    completed_batches: int = 0
    partial_output: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "input": self.input,
            "status": self.status.value,
            "outputs": {str(k): v for k, v in self.outputs.items()},
            "error": self.error,
            "failed_step": self.failed_step,
            "warnings": list(self.warnings),
            "quality_score": self.quality_score,
            "created_at": self.created_at,
            "current_step": self.current_step,
            "completed_batches": self.completed_batches,
            "partial_output": self.partial_output,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        return cls(
            id=data["id"],
            input=data["input"],
            status=JobStatus(data.get("status", "pending")),
            outputs={int(k): v for k, v in (data.get("outputs") or {}).items()},
            error=data.get("error"),
            failed_step=data.get("failed_step"),
            warnings=list(data.get("warnings") or []),
            quality_score=data.get("quality_score"),
            created_at=data.get("created_at") or time.time(),
            current_step=data.get("current_step"),
            completed_batches=data.get("completed_batches", 0),
            partial_output=data.get("partial_output", ""),
        )


@dataclass
class ProgressEvent:
    current_index: int
    total_count: int
    message: str
    job_id: str | None = None
    step: int | None = None


class JobFailedError(RuntimeError):
    """A step failed; the message keeps the step's original error text."""

    def __init__(self, job_index: int, step: int, cause: Exception):
        super().__init__(f"Job {job_index} failed at step {step} ({STEP_NAMES[step]}): {cause}")
        self.step = step
        self.cause = cause


def quality_score(scene_count: int, warnings: list[dict]) -> dict:
    """Share of scenes whose voice-over landed inside the requested word range."""
    total = max(1, scene_count)
    out_of_range = min(len(warnings), total)
    return {
        "total_scenes": total,
        "within_target": total - out_of_range,
        "out_of_tolerance": out_of_range,
        "score": round((total - out_of_range) / total * 100),
    }


class JobRunner:
    def __init__(
        self,
        api_key: str,
        prompts: dict[int, str],
        settings: StageSettings,
        schedule: ScheduleConfig,
        generate: Callable[[str, str, str, dict], str] = call_model,
        emit: Callable[[ProgressEvent], None] | None = None,
        cancel_token: CancelToken | None = None,
        skip_discovery: bool = False,
        on_checkpoint: Callable[[Job], object] | None = None,
    ):
        self.api_key = api_key
        self.prompts = prompts
        self.settings = settings
        self.schedule = schedule
        self.generate = generate
        self.emit = emit
        self.cancel_token = cancel_token or CancelToken()
        self.skip_discovery = skip_discovery
        self.on_checkpoint = on_checkpoint

    async def run(self, job: Job, job_index: int = 1, total_jobs: int = 1) -> dict[int, str]:
        """
        Run steps 1-6 for job, writing each result into job.outputs as it completes.

        Steps that already have an output are skipped. On failure the outputs of the
        finished steps stay on the job.

        Raises:
            JobCancelledError: Cancellation was requested at a step or batch boundary.
            JobFailedError: Any step failed; wraps the original exception.
        """
        prefix = f"[Job {job_index}/{total_jobs}]"

        def on_progress(step, current, total, message):
            self._emit(ProgressEvent(step, len(PIPELINE_STEPS), f"{prefix} {message}", job.id, step))

        async def on_batch_checkpoint(step, completed_batches, partial):
            job.current_step = step
            job.completed_batches = completed_batches
            job.partial_output = partial
            await self._checkpoint(job)

        executor = StepExecutor(
            self.api_key,
            self.prompts,
            self.settings,
            self.schedule,
            generate=self.generate,
            on_progress=on_progress,
            on_checkpoint=on_batch_checkpoint,
            cancel_token=self.cancel_token,
        )

        remaining = [s for s in PIPELINE_STEPS if s not in job.outputs]
        _log(f"{prefix} {job.id}: running steps {remaining}")
        for position, step in enumerate(remaining):
            self.cancel_token.check()
            self._emit(ProgressEvent(step, len(PIPELINE_STEPS), f"{prefix} Step {step}: {STEP_NAMES[step]}", job.id, step))
            try:
                result = await self._run_step(executor, job, step)
            except JobCancelledError:
                raise
            except Exception as e:
                _log(f"{prefix} ERROR at step {step} ({STEP_NAMES[step]}): {e}")
                raise JobFailedError(job_index, step, e) from e

            job.outputs[step] = result
            job.current_step = None
            job.completed_batches = 0
            job.partial_output = ""
            await self._checkpoint(job)

            if position < len(remaining) - 1:
                await self.cancel_token.sleep(self.schedule.delay_between_batches_ms)

        job.quality_score = quality_score(self.settings.scene_count, job.warnings)
        return job.outputs

    def _emit(self, event: ProgressEvent) -> None:
        if self.emit:
            self.emit(event)

    async def _checkpoint(self, job: Job) -> None:
        if not self.on_checkpoint:
            return
        saved = self.on_checkpoint(job)
        if inspect.isawaitable(saved):
            await saved

    def _step_input(self, job: Job, step: int) -> str:
        source = STEP_INPUTS[step]
        value = job.outputs.get(source, "")
        if not value.strip():
            raise ValueError(f"Missing input for step {step}: step {source} produced no output")
        return value

    def _resume_point(self, job: Job, step: int) -> tuple[int, str]:
        if job.current_step == step and job.completed_batches and job.partial_output:
            _log(f"Resuming {job.id} step {step} from batch {job.completed_batches}")
            return job.completed_batches, job.partial_output
        return 0, ""

    async def _run_step(self, executor: StepExecutor, job: Job, step: int) -> str:
        if step == 1:
            if self.skip_discovery:
                return job.input
            return await executor.run_news(job.input)
        source = self._step_input(job, step)
        if step == 2:
            start_batch, seed = self._resume_point(job, step)
            outline, warnings = await executor.run_outline(source, start_batch, seed)
            job.warnings.extend(warnings)
            return outline
        if step == 3:
            start_batch, seed = self._resume_point(job, step)
            return await executor.run_script(source, start_batch, seed)
        if step == 4:
            return await executor.run_prompts(source)
        if step == 5:
            return await executor.run_voice_over(source)
        return await executor.run_metadata(source)
