"""
Tests for script_steps: batching, end markers, outline validation, retries and cancellation.
Generation calls are replaced by plain functions; schedules use zero delays.
"""

import asyncio
import json
import unittest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from batch_optimizer import ScheduleConfig
from llm_utils import GenerationError
from prompt_builders import END_OF_OUTLINE, END_OF_SCRIPT
from script_steps import (
    CancelToken,
    JobCancelledError,
    OutlineValidationError,
    StageSettings,
    StepExecutor,
    accumulate_chunk,
)

PROMPTS = {step: f"SYSTEM {step}" for step in range(1, 7)}


def fast_schedule(**overrides) -> ScheduleConfig:
    values = dict(
        scenes_per_batch=3,
        parallel_jobs=1,
        delay_between_batches_ms=0,
        delay_between_jobs_ms=0,
        max_retries=3,
        context_window_size=2000,
        tolerance=2,
    )
    values.update(overrides)
    return ScheduleConfig(**values)


def outline_scenes(start: int, end: int, words: int = 4) -> str:
    voice = " ".join(["word"] * words)
    return "\n\n".join(
        f"Scene {n}: Title {n}\nImage: frame {n}\nVoice-over: {voice} (99 words)" for n in range(start, end + 1)
    )


class RecordingModel:
    """Callable generation stub that records every call and answers through a handler."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def __call__(self, api_key, system_prompt, user_message, params):
        self.calls.append({"api_key": api_key, "system": system_prompt, "message": user_message, "params": params})
        return self.handler(params, len(self.calls))


def make_executor(model, scene_count=6, cancel_token=None, schedule=None, **kwargs) -> StepExecutor:
    settings = StageSettings(scene_count=scene_count, word_min=3, word_max=6, language="en")
    return StepExecutor(
        "test-key",
        PROMPTS,
        settings,
        schedule or fast_schedule(),
        generate=model,
        cancel_token=cancel_token,
        **kwargs,
    )


class TestAccumulateChunk(unittest.TestCase):

    def test_plain_chunk_appended(self):
        self.assertEqual(accumulate_chunk("A", "B", END_OF_SCRIPT), (False, "A\nB"))

    def test_marker_only_adds_nothing(self):
        self.assertEqual(accumulate_chunk("A", f"  {END_OF_SCRIPT}\n", END_OF_SCRIPT), (True, "A"))

    def test_marker_stripped_from_content(self):
        done, buffer = accumulate_chunk("A", f"Scene 9: end\n{END_OF_SCRIPT}", END_OF_SCRIPT)
        self.assertTrue(done)
        self.assertEqual(buffer, "A\nScene 9: end")
        self.assertNotIn(END_OF_SCRIPT, buffer)


class TestFlatSteps(unittest.IsolatedAsyncioTestCase):

    async def test_news_uses_search_and_system_prompt(self):
        model = RecordingModel(lambda params, n: "Research notes")
        result = await make_executor(model).run_news("  Topic A  ")
        self.assertEqual(result, "Research notes")
        call = model.calls[0]
        self.assertEqual(call["system"], "SYSTEM 1")
        self.assertEqual(call["api_key"], "test-key")
        self.assertTrue(call["params"]["use_search"])
        self.assertIn('"Topic A"', call["message"])

    async def test_news_rejects_empty_input(self):
        model = RecordingModel(lambda params, n: "unused")
        with self.assertRaises(ValueError):
            await make_executor(model).run_news("   ")
        self.assertEqual(model.calls, [])

    async def test_voice_over_and_metadata_single_call(self):
        model = RecordingModel(lambda params, n: f"step {params['step']}")
        executor = make_executor(model)
        self.assertEqual(await executor.run_voice_over("SCRIPT"), "step 5")
        self.assertEqual(await executor.run_metadata("SCRIPT"), "step 6")
        self.assertEqual(len(model.calls), 2)
        self.assertEqual(model.calls[0]["params"]["word_min"], 3)


class TestOutline(unittest.IsolatedAsyncioTestCase):

    async def test_batches_cover_all_scenes(self):
        model = RecordingModel(lambda params, n: outline_scenes(*params["scene_range"]))
        checkpoints = []
        executor = make_executor(model, on_checkpoint=lambda step, done, text: checkpoints.append((step, done)))
        outline, warnings = await executor.run_outline("NEWS")
        self.assertEqual(len(model.calls), 2)
        self.assertEqual([c["params"]["scene_range"] for c in model.calls], [(1, 3), (4, 6)])
        self.assertIn("Scene 6: Title 6", outline)
        # Annotations are rewritten with the real count
        self.assertIn("Voice-over: word word word word (4 words)", outline)
        self.assertNotIn("(99 words)", outline)
        self.assertEqual(warnings, [])
        self.assertEqual(checkpoints, [(2, 1), (2, 2)])

    async def test_end_marker_stops_early(self):
        model = RecordingModel(lambda params, n: outline_scenes(1, 3) + f"\n{END_OF_OUTLINE}")
        outline, _ = await make_executor(model, scene_count=9).run_outline("NEWS")
        self.assertEqual(len(model.calls), 1)
        self.assertNotIn(END_OF_OUTLINE, outline)
        self.assertIn("Scene 3:", outline)

    async def test_rejected_batch_retried_with_feedback(self):
        def handler(params, n):
            start, end = params["scene_range"]
            return outline_scenes(start, end, words=12 if n == 1 else 4)

        model = RecordingModel(handler)
        outline, warnings = await make_executor(model, scene_count=3).run_outline("NEWS")
        self.assertEqual(len(model.calls), 2)
        self.assertNotIn("REJECTED", model.calls[0]["message"])
        self.assertIn("REJECTED", model.calls[1]["message"])
        self.assertIn("Scene 1: 12 words", model.calls[1]["message"])
        self.assertEqual(warnings, [])

    async def test_accepted_within_tolerance_after_last_attempt(self):
        # 7 words: above max 6 but inside the +/-2 tolerance
        model = RecordingModel(lambda params, n: outline_scenes(*params["scene_range"], words=7))
        outline, warnings = await make_executor(model, scene_count=3).run_outline("NEWS")
        self.assertEqual(len(model.calls), 3)
        self.assertEqual([w["scene"] for w in warnings], [1, 2, 3])
        self.assertEqual(warnings[0]["words"], 7)
        self.assertIn("(7 words)", outline)

    async def test_fails_outside_tolerance(self):
        model = RecordingModel(lambda params, n: outline_scenes(*params["scene_range"], words=15))
        with self.assertRaises(OutlineValidationError) as ctx:
            await make_executor(model, scene_count=3).run_outline("NEWS")
        self.assertIn("scenes 1-3", str(ctx.exception))
        self.assertEqual(len(model.calls), 3)

    async def test_missing_scenes_never_accepted(self):
        model = RecordingModel(lambda params, n: outline_scenes(1, 2))
        with self.assertRaises(OutlineValidationError):
            await make_executor(model, scene_count=3).run_outline("NEWS")

    async def test_resume_from_checkpoint(self):
        model = RecordingModel(lambda params, n: outline_scenes(*params["scene_range"]))
        outline, _ = await make_executor(model).run_outline("NEWS", start_batch=1, seed="SAVED BATCH 1")
        self.assertEqual(len(model.calls), 1)
        self.assertEqual(model.calls[0]["params"]["scene_range"], (4, 6))
        self.assertTrue(outline.startswith("SAVED BATCH 1"))


class TestScriptAndPrompts(unittest.IsolatedAsyncioTestCase):

    async def test_script_strips_end_marker(self):
        def handler(params, n):
            start, end = params["scene_range"]
            text = "\n".join(f"Scene {i}: detailed {i}" for i in range(start, end + 1))
            return text + (f"\n{END_OF_SCRIPT}" if end == 6 else "")

        model = RecordingModel(handler)
        script = await make_executor(model).run_script("OUTLINE")
        self.assertEqual(len(model.calls), 2)
        self.assertNotIn(END_OF_SCRIPT, script)
        self.assertIn("Scene 6: detailed 6", script)
        # Second batch sees the tail of the first as context
        self.assertIn("Scene 3: detailed 3", model.calls[1]["message"])

    async def test_context_window_limits_previous_content(self):
        model = RecordingModel(lambda params, n: "X" * 50)
        executor = make_executor(model, schedule=fast_schedule(context_window_size=10))
        await executor.run_script("OUTLINE")
        self.assertNotIn("X" * 11, model.calls[1]["message"])

    async def test_prompts_merged_per_chunk(self):
        script = "\n".join(f"Scene {i}: text {i}" for i in range(1, 7))

        def handler(params, n):
            return json.dumps({"imagePrompts": [f"img {n}"], "videoPrompts": [f"vid {n}"]})

        model = RecordingModel(handler)
        merged = json.loads(await make_executor(model).run_prompts(script))
        self.assertEqual(len(model.calls), 2)
        self.assertEqual(merged["imagePrompts"], ["img 1", "img 2"])
        self.assertEqual(merged["videoPrompts"], ["vid 1", "vid 2"])


class TestRetries(unittest.IsolatedAsyncioTestCase):

    async def test_transient_error_retried(self):
        def handler(params, n):
            if n == 1:
                raise GenerationError("429 rate limit", retryable=True)
            return "ok"

        model = RecordingModel(handler)
        self.assertEqual(await make_executor(model).run_metadata("SCRIPT"), "ok")
        self.assertEqual(len(model.calls), 2)

    async def test_permanent_error_propagates_verbatim(self):
        def handler(params, n):
            raise GenerationError("model refused")

        model = RecordingModel(handler)
        with self.assertRaises(GenerationError) as ctx:
            await make_executor(model).run_metadata("SCRIPT")
        self.assertEqual(str(ctx.exception), "model refused")
        self.assertEqual(len(model.calls), 1)

    async def test_retries_exhausted(self):
        def handler(params, n):
            raise GenerationError("503 unavailable", retryable=True)

        model = RecordingModel(handler)
        with self.assertRaises(GenerationError):
            await make_executor(model).run_metadata("SCRIPT")
        self.assertEqual(len(model.calls), 3)


class TestCancellation(unittest.IsolatedAsyncioTestCase):

    async def test_cancelled_before_batch(self):
        token = CancelToken()
        token.cancel()
        model = RecordingModel(lambda params, n: outline_scenes(*params["scene_range"]))
        with self.assertRaises(JobCancelledError):
            await make_executor(model, cancel_token=token).run_outline("NEWS")
        self.assertEqual(model.calls, [])

    async def test_cancel_between_batches(self):
        token = CancelToken()
        model = RecordingModel(lambda params, n: outline_scenes(*params["scene_range"]))
        executor = make_executor(model, cancel_token=token, on_checkpoint=lambda *args: token.cancel())
        with self.assertRaises(JobCancelledError):
            await executor.run_outline("NEWS")
        self.assertEqual(len(model.calls), 1)

    async def test_sleep_interrupted_by_cancel(self):
        token = CancelToken()
        sleeper = asyncio.create_task(token.sleep(60000))
        await asyncio.sleep(0)
        token.cancel()
        with self.assertRaises(JobCancelledError):
            await asyncio.wait_for(sleeper, timeout=1)

    async def test_sleep_completes_without_cancel(self):
        token = CancelToken()
        await token.sleep(1)
        self.assertFalse(token.cancelled)


if __name__ == "__main__":
    unittest.main()
