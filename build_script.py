import os
import sys
import json
import asyncio
import argparse
from pathlib import Path

from api_key_manager import ApiKeyPool
from batch_optimizer import estimate_processing_time, validate_workload
from batch_queue import BatchScheduler, QueueFullError, StatusChange
from config import (
    API_KEYS_FILE,
    QUEUE_STATE_FILE,
    STEP_NAMES,
    TEXT_PROVIDER,
    Config,
    ConfigurationError,
    get_language_config,
)
from job_runner import Job, JobStatus, ProgressEvent
from llm_utils import get_text_model_display
from prompt_registry import PromptRegistry
from queue_persistence import QueuePersistence
from script_steps import StageSettings

# ------------- CONFIG -------------

OUTPUT_DIR = Path("batch_output")

# Step output file names inside <output_dir>/<job_id>/
STEP_FILES = {
    1: "1_research.txt",
    2: "2_outline.txt",
    3: "3_script.txt",
    4: "4_prompts.json",
    5: "5_voice_over.txt",
    6: "6_metadata.txt",
}

config = Config()


def get_env_api_key(provider: str = TEXT_PROVIDER) -> str | None:
    """Single-key fallback from .env for the configured provider."""
    if provider == "openai":
        return os.getenv("OPENAI_API_KEY")
    return os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")


def load_key_pool(keys_file: str | None) -> ApiKeyPool | None:
    if not keys_file:
        return None
    path = Path(keys_file)
    if not path.exists():
        raise ConfigurationError(f"Keys file not found: {keys_file}")
    pool = ApiKeyPool.from_file(path)
    print(f"[KEYS] {len(pool.keys)} key(s) loaded from {keys_file}")
    return pool


def print_observer(event):
    """Console observer for scheduler events."""
    if isinstance(event, StatusChange):
        print(f"[QUEUE] {event.job_id}: {event.old_status.value} -> {event.new_status.value}")
    elif isinstance(event, ProgressEvent) and event.message:
        print(f"   {event.message}")


def write_job_outputs(job: Job, output_dir: Path) -> Path:
    """Write job.json and one file per finished step. Returns the job directory."""
    job_dir = output_dir / job.id
    job_dir.mkdir(parents=True, exist_ok=True)
    for step, text in sorted(job.outputs.items()):
        (job_dir / STEP_FILES[step]).write_text(text, encoding="utf-8")
    with open(job_dir / "job.json", "w", encoding="utf-8") as f:
        json.dump(job.to_dict(), f, indent=2, ensure_ascii=False)
    return job_dir


def print_summary(jobs: list[Job], output_dir: Path) -> None:
    completed = [j for j in jobs if j.status == JobStatus.COMPLETED]
    failed = [j for j in jobs if j.status == JobStatus.FAILED]

    print("\n" + "=" * 60)
    print(f"BATCH FINISHED: {len(completed)} completed, {len(failed)} failed")
    print("=" * 60)
    for job in completed:
        score = (job.quality_score or {}).get("score", "?")
        print(f"   ✓ {job.id}  quality {score}%  -> {output_dir / job.id}")
    for job in failed:
        steps_done = ", ".join(STEP_NAMES[s] for s in sorted(job.outputs)) or "none"
        where = f"step {job.failed_step} ({STEP_NAMES[job.failed_step]}): " if job.failed_step else ""
        print(f"   ✗ {job.id}  {where}{job.error}")
        print(f"     finished steps: {steps_done}")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Generate video scripts in batch (research, outline, script, prompts, voice over, metadata)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # One script per paragraph in topics.txt (blank line between topics)
  python build_script.py topics.txt

  # Shorter English scripts with a custom pack
  python build_script.py topics.txt --language en --scenes 20 --pack english-bd-crime

  # Input is already research/news text: skip step 1
  python build_script.py news.txt --skip-discovery

  # Rotate through several API keys (one per line)
  python build_script.py topics.txt --keys-file keys.txt --concurrency 2

  # Only print the workload estimate
  python build_script.py topics.txt --estimate-only

  # Continue a queue that was interrupted
  python build_script.py --resume
        """
    )

    parser.add_argument("input_file", nargs="?", help="Text file with one topic per paragraph")
    parser.add_argument("--output-dir", default=str(OUTPUT_DIR),
                        help=f"Directory for per-job results (default: {OUTPUT_DIR})")

    # Script shape (defaults from Config class)
    parser.add_argument("--scenes", type=int, default=Config.scene_count,
                        help=f"Scenes per script (default: {Config.scene_count})")
    parser.add_argument("--target-words", type=int, default=Config.target_words,
                        help=f"Target voice-over words per scene (default: {Config.target_words})")
    parser.add_argument("--tolerance", type=int, default=Config.word_tolerance,
                        help=f"Allowed +/- words around the target (default: {Config.word_tolerance})")
    parser.add_argument("--language", choices=["vi", "en"], default=Config.language,
                        help=f"Script language (default: {Config.language})")
    parser.add_argument("--pack", default=None,
                        help="Prompt pack id (default: the language's default pack)")

    # Queue settings
    parser.add_argument("--keys-file", default=API_KEYS_FILE or None,
                        help="File with API keys (one per line, or comma separated)")
    parser.add_argument("--concurrency", type=int, default=Config.concurrency,
                        help=f"Jobs run at once, capped by key capacity (default: {Config.concurrency})")
    parser.add_argument("--skip-discovery", action="store_true",
                        help="Use each input paragraph as the research result (skip step 1)")
    parser.add_argument("--estimate-only", action="store_true",
                        help="Print workload warnings and time estimate, then exit")
    parser.add_argument("--resume", action="store_true",
                        help="Continue the saved queue instead of reading an input file")
    parser.add_argument("--state-file", default=QUEUE_STATE_FILE,
                        help=f"Saved queue location (default: {QUEUE_STATE_FILE})")

    args = parser.parse_args(argv)
    if not args.input_file and not args.resume:
        parser.error("INPUT_FILE is required unless --resume is given")
    return args


def apply_args(args) -> None:
    config.scene_count = args.scenes
    config.target_words = args.target_words
    config.word_tolerance = args.tolerance
    config.language = args.language
    config.pack_id = args.pack or get_language_config(args.language)["default_pack_id"]
    config.skip_discovery = args.skip_discovery
    config.concurrency = args.concurrency


def run_batch(args) -> int:
    """Build the scheduler from CLI args, run the queue and write results. Returns the exit code."""
    apply_args(args)
    output_dir = Path(args.output_dir)

    key_pool = load_key_pool(args.keys_file)
    api_key = get_env_api_key()
    if not api_key and not (key_pool and key_pool.available_count()):
        print("ERROR: Set GOOGLE_API_KEY (or OPENAI_API_KEY with TEXT_PROVIDER=openai) or pass --keys-file.")
        return 1

    registry = PromptRegistry().load()
    prompts = registry.resolve_all(registry.selection_for_pack(config.pack_id))

    settings = StageSettings(
        scene_count=config.scene_count,
        word_min=config.word_min,
        word_max=config.word_max,
        language=config.language,
    )
    persistence = QueuePersistence(args.state_file)
    autosave = config.persist_queue and not args.estimate_only
    scheduler = BatchScheduler(
        prompts,
        settings,
        api_key=api_key,
        key_pool=key_pool,
        concurrency=config.concurrency,
        skip_discovery=config.skip_discovery,
        persistence=persistence if autosave else None,
    )

    if args.resume:
        state = persistence.load_state()
        if not state or not persistence.has_saved_state():
            print(f"ERROR: No recent saved queue with pending jobs in {args.state_file}")
            return 1
        print(f"[PERSIST] Resuming queue saved {persistence.get_state_age()}")
        scheduler.restore(state)
    if args.input_file:
        raw_text = Path(args.input_file).read_text(encoding="utf-8")
        try:
            scheduler.enqueue(raw_text)
        except QueueFullError as e:
            print(f"ERROR: {e}")
            return 1

    job_count = len(scheduler.queue)
    if job_count == 0:
        print("ERROR: No topics found in input")
        return 1

    capacity = max(1, scheduler.available_capacity())
    check = validate_workload(job_count, config.scene_count, capacity)
    estimate = estimate_processing_time(job_count, config.scene_count, capacity)
    schedule = scheduler.schedule_config()

    print(f"[MODE] {job_count} script(s) × {config.scene_count} scenes, {config.language}, pack '{config.pack_id}'")
    print(f"[MODE] Model: {get_text_model_display()}, {capacity} key(s)")
    print(f"[MODE] Batch size {schedule.scenes_per_batch} scenes, estimated time {estimate.formatted_time}")
    for warning in check.warnings:
        print(f"[WARNING] {warning}")
    if args.estimate_only:
        return 0

    scheduler.subscribe(print_observer)
    processed = asyncio.run(scheduler.run())

    for job in processed:
        write_job_outputs(job, output_dir)
    print_summary(processed, output_dir)

    if autosave and not scheduler.queue:
        persistence.clear_state()
    return 1 if any(j.status == JobStatus.FAILED for j in processed) else 0


# ------------- ENTRY POINT -------------

if __name__ == "__main__":
    args = parse_args()
    try:
        sys.exit(run_batch(args))
    except ConfigurationError as e:
        print(f"\n[ERROR] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n[ERROR] Interrupted. Run with --resume to continue the saved queue.")
        sys.exit(1)
