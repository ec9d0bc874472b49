"""
Step executor: drives one pipeline step for one job.

Chunked steps (2 outline, 3 script, 4 prompt extraction) loop over sub-batches,
each a single generation call covering a slice of the scenes, and stop early on
an end marker. Flat steps (1 news/topics, 5 voice-over, 6 metadata) make
exactly one call.

Generation call contract:
    generate(api_key, system_prompt, user_message, params) -> str
where params always carries "step" and may carry "batch_index", "scene_range",
"word_min", "word_max" and "use_search".
"""
import asyncio
import inspect
import math
import os
from dataclasses import dataclass
from typing import Callable

import llm_utils
from batch_optimizer import ScheduleConfig
from build_scripts_utils import merge_prompt_jsons, split_script_into_chunks
from config import STEP_KEYS
from llm_utils import GenerationError
from prompt_builders import (
    END_OF_OUTLINE,
    END_OF_SCRIPT,
    build_metadata_message,
    build_news_message,
    build_outline_batch_message,
    build_prompts_batch_message,
    build_script_batch_message,
    build_voice_over_message,
)
from word_counter import correct_voiceover_annotation, parse_scenes

STEPS_DEBUG = os.getenv("DEBUG", "").lower() in ("1", "true", "yes")
STEP_TAGS = {1: "NEWS", 2: "OUTLINE", 3: "SCRIPT", 4: "PROMPTS", 5: "VOICE", 6: "METADATA"}


def _log(step: int, msg: str, verbose_only: bool = False) -> None:
    if verbose_only and not STEPS_DEBUG:
        return
    print(f"[{STEP_TAGS.get(step, 'STEP')}] {msg}")


class JobCancelledError(Exception):
    """Raised at a step or batch boundary once cancellation was requested."""

    def __init__(self, message: str = "cancelled"):
        super().__init__(message)


class OutlineValidationError(GenerationError):
    """An outline batch kept failing word-count validation after every attempt."""


class CancelToken:
    """Cooperative cancellation shared by the scheduler, job runner and step executor."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def check(self) -> None:
        if self._event.is_set():
            raise JobCancelledError()

    async def sleep(self, delay_ms: int) -> None:
        """Wait delay_ms; returns early with JobCancelledError if cancelled meanwhile."""
        self.check()
        if delay_ms <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay_ms / 1000)
        except asyncio.TimeoutError:
            return
        raise JobCancelledError()


@dataclass
class StageSettings:
    """Per-job generation settings shared by every step."""

    scene_count: int
    word_min: int
    word_max: int
    language: str = "vi"
    strict_prompt_merge: bool = False


def call_model(api_key: str, system_prompt: str, user_message: str, params: dict) -> str:
    """Default generation call: one chat turn through llm_utils with the step's provider."""
    step = params["step"]
    return llm_utils.generate_text(
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ],
        api_key=api_key,
        provider=llm_utils.get_provider_for_step(STEP_KEYS[step]),
        use_search=params.get("use_search", False),
    )


def accumulate_chunk(buffer: str, chunk: str, end_marker: str) -> tuple[bool, str]:
    """
    Append one batch result to the running buffer.

    Returns:
        (done, new_buffer). done is True when the chunk carried the end marker;
        a chunk that is only the marker adds nothing.
    """
    if chunk.strip() == end_marker:
        return True, buffer
    if end_marker in chunk:
        return True, buffer + "\n" + chunk.replace(end_marker, "").strip()
    return False, buffer + "\n" + chunk


class StepExecutor:
    def __init__(
        self,
        api_key: str,
        prompts: dict[int, str],
        settings: StageSettings,
        schedule: ScheduleConfig,
        generate: Callable[[str, str, str, dict], str] = call_model,
        on_progress: Callable[[int, int, int, str], None] | None = None,
        on_checkpoint: Callable[[int, int, str], None] | None = None,
        cancel_token: CancelToken | None = None,
    ):
        """
        Args:
            api_key: Credential passed to every generation call.
            prompts: Resolved instruction text per step (1-6).
            on_progress: Called with (step, current, total, message) before each call.
            on_checkpoint: Called with (step, completed_batches, partial_text) after each
                outline/script batch so the caller can persist resumable state. May be a
                coroutine function; it is awaited before the next batch starts.
        """
        self.api_key = api_key
        self.prompts = prompts
        self.settings = settings
        self.schedule = schedule
        self.generate = generate
        self.on_progress = on_progress
        self.on_checkpoint = on_checkpoint
        self.cancel_token = cancel_token or CancelToken()

    @property
    def total_batches(self) -> int:
        return math.ceil(max(1, self.settings.scene_count) / self.schedule.scenes_per_batch)

    def _progress(self, step: int, current: int, total: int, message: str) -> None:
        _log(step, message, verbose_only=True)
        if self.on_progress:
            self.on_progress(step, current, total, message)

    def _scene_range(self, batch_index: int) -> tuple[int, int]:
        start = batch_index * self.schedule.scenes_per_batch + 1
        end = min(start + self.schedule.scenes_per_batch - 1, self.settings.scene_count)
        return start, end

    def _context(self, text: str) -> str:
        return text[-self.schedule.context_window_size:]

    async def _call(self, step: int, user_message: str, **params) -> str:
        """One generation call. Only errors flagged retryable are retried, with exponential backoff."""
        attempt = 1
        while True:
            self.cancel_token.check()
            try:
                return await asyncio.to_thread(
                    self.generate, self.api_key, self.prompts[step], user_message, {"step": step, **params}
                )
            except GenerationError as e:
                if not e.retryable or attempt >= self.schedule.max_retries:
                    raise
                backoff_ms = self.schedule.delay_between_batches_ms * (2 ** attempt)
                _log(step, f"Transient error ({e}). Retry {attempt}/{self.schedule.max_retries - 1} in {backoff_ms}ms...")
                await self.cancel_token.sleep(backoff_ms)
                attempt += 1

    # ---- Flat steps ----

    async def run_news(self, keyword: str) -> str:
        if not keyword or not keyword.strip():
            raise ValueError("Missing input for step 1: enter a topic or keyword")
        self._progress(1, 1, 1, "Researching topic...")
        return await self._call(1, build_news_message(keyword.strip()), use_search=True)

    async def run_voice_over(self, script: str) -> str:
        self._progress(5, 1, 1, "Extracting voice over...")
        message = build_voice_over_message(script, self.settings.word_min, self.settings.word_max)
        return await self._call(5, message, word_min=self.settings.word_min, word_max=self.settings.word_max)

    async def run_metadata(self, script: str) -> str:
        self._progress(6, 1, 1, "Creating metadata...")
        return await self._call(6, build_metadata_message(script))

    # ---- Chunked steps ----

    async def _run_batches(self, step: int, label: str, end_marker: str, make_batch, start_batch: int, seed: str):
        total = self.total_batches
        buffer = seed
        for b in range(start_batch, total):
            self.cancel_token.check()
            self._progress(step, b + 1, total, f"{label} batch {b + 1}/{total}")
            chunk = await make_batch(b, buffer)
            done, buffer = accumulate_chunk(buffer, chunk, end_marker)
            if self.on_checkpoint:
                saved = self.on_checkpoint(step, b + 1, buffer)
                if inspect.isawaitable(saved):
                    await saved
            if done:
                _log(step, f"End marker after batch {b + 1}/{total}", verbose_only=True)
                break
            if b < total - 1:
                await self.cancel_token.sleep(self.schedule.delay_between_batches_ms)
        return buffer.strip()

    async def run_outline(self, news_data: str, start_batch: int = 0, seed: str = "") -> tuple[str, list[dict]]:
        """
        Build the outline batch by batch.

        Returns:
            (outline_text, warnings) where warnings lists scenes accepted within tolerance.
        """
        warnings: list[dict] = []

        async def make_batch(b, buffer):
            chunk, batch_warnings = await self._outline_batch(news_data, buffer, b)
            warnings.extend(batch_warnings)
            return chunk

        outline = await self._run_batches(2, "Outline", END_OF_OUTLINE, make_batch, start_batch, seed)
        return outline, warnings

    async def run_script(self, outline: str, start_batch: int = 0, seed: str = "") -> str:
        async def make_batch(b, buffer):
            start, end = self._scene_range(b)
            if start > self.settings.scene_count:
                return END_OF_SCRIPT
            message = build_script_batch_message(
                outline, self._context(buffer), start, end, self.settings.scene_count
            )
            return await self._call(3, message, batch_index=b, scene_range=(start, end))

        return await self._run_batches(3, "Script", END_OF_SCRIPT, make_batch, start_batch, seed)

    async def run_prompts(self, script: str) -> str:
        chunks = split_script_into_chunks(script, self.schedule.scenes_per_batch)
        results = []
        for i, chunk in enumerate(chunks):
            self.cancel_token.check()
            self._progress(4, i + 1, len(chunks), f"Prompt batch {i + 1}/{len(chunks)}")
            results.append(await self._call(4, build_prompts_batch_message(chunk), batch_index=i))
            if i < len(chunks) - 1:
                await self.cancel_token.sleep(self.schedule.delay_between_batches_ms)
        return merge_prompt_jsons(results, strict=self.settings.strict_prompt_merge)

    # ---- Outline validation ----

    def _validate_outline(self, response: str, start: int, end: int) -> tuple[list[str], list[str], list[dict]]:
        """
        Rewrite voice-over annotations with real counts and collect problems.

        Returns:
            (corrected_blocks, errors, violations); violations are word-count problems only.
        """
        s = self.settings
        corrected, errors, violations = [], [], []
        for idx, block in enumerate(parse_scenes(response)):
            scene_num = start + idx
            if scene_num > end:
                break  # Ignore scenes the model wrote beyond the requested range
            text, words, content = correct_voiceover_annotation(block, s.language)
            corrected.append(text)
            if content is None:
                errors.append(f"Scene {scene_num}: missing voice-over section")
            elif words < s.word_min or words > s.word_max:
                errors.append(f"Scene {scene_num}: {words} words (need {s.word_min}-{s.word_max})")
                violations.append({"scene": scene_num, "words": words, "min": s.word_min, "max": s.word_max})
        expected = end - start + 1
        if len(corrected) < expected:
            errors.append(f"Missing {expected - len(corrected)} scene(s)")
        return corrected, errors, violations

    def _within_tolerance(self, errors: list[str], violations: list[dict]) -> bool:
        if len(errors) != len(violations):
            return False  # Missing scenes or voice-overs are never accepted
        tol = self.schedule.tolerance
        return all(v["min"] - tol <= v["words"] <= v["max"] + tol for v in violations)

    async def _outline_batch(self, news_data: str, current: str, batch_index: int) -> tuple[str, list[dict]]:
        start, end = self._scene_range(batch_index)
        if start > self.settings.scene_count:
            return END_OF_OUTLINE, []

        max_attempts = self.schedule.max_retries
        feedback = ""
        for attempt in range(1, max_attempts + 1):
            message = build_outline_batch_message(
                news_data,
                self._context(current),
                start,
                end,
                self.settings.scene_count,
                self.settings.word_min,
                self.settings.word_max,
                language=self.settings.language,
                feedback=feedback,
                attempt=attempt,
                max_attempts=max_attempts,
            )
            raw = await self._call(
                2, message,
                batch_index=batch_index,
                scene_range=(start, end),
                word_min=self.settings.word_min,
                word_max=self.settings.word_max,
            )
            if raw.strip() == END_OF_OUTLINE:
                return END_OF_OUTLINE, []
            has_marker = END_OF_OUTLINE in raw
            corrected, errors, violations = self._validate_outline(raw.replace(END_OF_OUTLINE, ""), start, end)
            result = "\n\n".join(corrected) + (f"\n{END_OF_OUTLINE}" if has_marker else "")

            if not errors:
                _log(2, f"Batch {batch_index + 1} passed validation on attempt {attempt}", verbose_only=True)
                return result, []

            _log(2, f"WARNING: Batch {batch_index + 1} attempt {attempt}/{max_attempts} rejected: {'; '.join(errors)}")
            feedback = "\n".join(errors)
            if attempt == max_attempts and self._within_tolerance(errors, violations):
                _log(2, f"Batch {batch_index + 1} accepted with tolerance (±{self.schedule.tolerance} words)")
                return result, violations

        raise OutlineValidationError(
            f"Failed to generate valid scenes {start}-{end} after {max_attempts} attempts.\nLast errors:\n{feedback}"
        )
