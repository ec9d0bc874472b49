"""
Batch optimizer: scheduling settings derived from workload size.

Calculates batch size, pacing and retry budget from:
- Scene count per script (typically 40-300)
- Number of usable API keys (capacity units)
"""
import math
from dataclasses import dataclass, field

AVG_CALL_TIME_MS = 4000  # Assumed average latency of one remote generation call


@dataclass(frozen=True)
class ScheduleConfig:
    """Scheduling settings for one run. Never mutated after creation."""

    scenes_per_batch: int
    parallel_jobs: int  # Advisory: how many jobs could run at once
    delay_between_batches_ms: int
    delay_between_jobs_ms: int
    max_retries: int
    context_window_size: int
    tolerance: int


@dataclass
class ProcessingEstimate:
    total_minutes: int
    formatted_time: str


@dataclass
class WorkloadCheck:
    can_proceed: bool
    warnings: list[str] = field(default_factory=list)


def calculate_optimal_config(scene_count: int, available_key_count: int = 1) -> ScheduleConfig:
    """
    Calculate scheduling settings for a workload.

    Args:
        scene_count: Scenes per script; values below 1 are treated as 1.
        available_key_count: Usable API keys; values below 1 are treated as 1.

    Returns:
        ScheduleConfig
    """
    scene_count = max(1, int(scene_count or 0))
    keys = max(1, int(available_key_count or 0))

    # Larger scripts get larger batches
    if scene_count >= 200:
        scenes_per_batch = 5
    elif scene_count >= 100:
        scenes_per_batch = 4
    else:
        scenes_per_batch = 3

    # Hard ceiling of 3 regardless of key count, to keep load on the API low
    parallel_jobs = min(keys, 5, 3)

    # More keys = less pacing needed
    if keys >= 5:
        delay_between_batches_ms = 300
    elif keys >= 3:
        delay_between_batches_ms = 500
    else:
        delay_between_batches_ms = 1000
    delay_between_jobs_ms = 2000 if keys >= 5 else 5000

    if scene_count >= 200:
        max_retries = 7
    elif scene_count >= 100:
        max_retries = 6
    else:
        max_retries = 5

    context_window_size = min(4000, max(2000, scene_count * 10))
    tolerance = 4 if scene_count >= 200 else 3

    return ScheduleConfig(
        scenes_per_batch=scenes_per_batch,
        parallel_jobs=parallel_jobs,
        delay_between_batches_ms=delay_between_batches_ms,
        delay_between_jobs_ms=delay_between_jobs_ms,
        max_retries=max_retries,
        context_window_size=context_window_size,
        tolerance=tolerance,
    )


def estimate_api_calls(scene_count: int, scenes_per_batch: int) -> int:
    """Outline, script and prompt stages are chunked; voice-over and metadata are one call each."""
    batches = math.ceil(max(1, scene_count) / max(1, scenes_per_batch))
    outline_calls = batches
    script_calls = batches
    prompt_calls = batches  # Approximate: prompt chunks follow the script's scene blocks
    return outline_calls + script_calls + prompt_calls + 1 + 1


def _format_minutes(total_minutes: int) -> str:
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h {minutes}m" if hours > 0 else f"{minutes}m"


def estimate_processing_time(
    job_count: int,
    scene_count_per_job: int,
    available_key_count: int = 1,
) -> ProcessingEstimate:
    """Estimate wall-clock time for a queue of identical jobs."""
    config = calculate_optimal_config(scene_count_per_job, available_key_count)
    calls_per_job = estimate_api_calls(scene_count_per_job, config.scenes_per_batch)
    total_call_ms = calls_per_job * job_count * AVG_CALL_TIME_MS

    batches = math.ceil(max(1, scene_count_per_job) / config.scenes_per_batch)
    total_delay_ms = job_count * (
        config.delay_between_jobs_ms + batches * config.delay_between_batches_ms
    )

    parallel_factor = min(config.parallel_jobs, max(1, available_key_count))
    adjusted_ms = (total_call_ms + total_delay_ms) / parallel_factor
    total_minutes = math.ceil(adjusted_ms / 60000)
    return ProcessingEstimate(total_minutes=total_minutes, formatted_time=_format_minutes(total_minutes))


def validate_workload(job_count: int, scene_count_per_job: int, available_key_count: int) -> WorkloadCheck:
    """Advisory checks only; never blocks a run that has at least one key."""
    warnings = []
    total_scenes = job_count * scene_count_per_job
    total_calls = estimate_api_calls(scene_count_per_job, 3) * job_count

    if available_key_count < 3 and total_calls > 500:
        warnings.append(f"Recommend at least 3 API keys for {total_calls} calls")
    if available_key_count < 5 and total_calls > 1000:
        warnings.append(f"Recommend at least 5 API keys for {total_calls} calls")
    if total_scenes > 3000:
        warnings.append(f"{total_scenes} scenes may put pressure on memory. Recommend 8GB+ RAM")

    estimate = estimate_processing_time(job_count, scene_count_per_job, max(1, available_key_count))
    if estimate.total_minutes >= 60:
        warnings.append(f"Estimated time: {estimate.formatted_time}. Make sure the connection is stable.")

    return WorkloadCheck(can_proceed=available_key_count > 0, warnings=warnings)
