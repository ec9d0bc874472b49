"""
Shared utilities for script generation.
Used by script_steps.py for the chunked prompt extraction step.
"""
import json
import re

SCENE_BOUNDARY = re.compile(r"(?=\n[ \t]*(?:\*\*)?(?:Scene|Cảnh)\s+\d+\s*[:.])", re.IGNORECASE)
SCENE_HEADING = re.compile(r"\s*(?:\*\*)?(?:Scene|Cảnh)\s+\d+\s*[:.]", re.IGNORECASE)


class PromptMergeError(ValueError):
    """A prompt extraction chunk did not contain the expected JSON document."""


def clean_json_response(content: str) -> str:
    """Remove markdown code blocks from JSON response."""
    content = content.strip()
    if content.startswith("```json"):
        content = content[7:]
    elif content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    return content.strip()


def split_script_into_chunks(full_script: str, scenes_per_chunk: int = 3) -> list[str]:
    """
    Cut a script into chunks of scenes_per_chunk scene blocks.
    Text before the first scene heading stays with the first block.
    Returns [full_script] when no chunk could be formed.
    """
    scenes_per_chunk = max(1, scenes_per_chunk)
    parts = SCENE_BOUNDARY.split(full_script)
    if len(parts) > 1 and not SCENE_HEADING.match(parts[0]):
        parts[1] = parts[0] + parts[1]
        parts = parts[1:]

    chunks = []
    current = ""
    count = 0
    for part in parts:
        current += part
        count += 1
        if count >= scenes_per_chunk:
            chunks.append(current)
            current = ""
            count = 0
    if current:
        chunks.append(current)
    return chunks if any(c.strip() for c in chunks) else [full_script]


def _parse_prompt_chunk(raw: str) -> tuple[list, list]:
    """Parse one chunk's {"imagePrompts": [...], "videoPrompts": [...]} document."""
    try:
        data = json.loads(clean_json_response(raw))
    except json.JSONDecodeError as e:
        raise PromptMergeError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise PromptMergeError(f"Expected a JSON object, got {type(data).__name__}")
    images = data.get("imagePrompts", [])
    videos = data.get("videoPrompts", [])
    if not isinstance(images, list) or not isinstance(videos, list):
        raise PromptMergeError("imagePrompts and videoPrompts must be arrays")
    return images, videos


def merge_prompt_jsons(json_strings: list[str], strict: bool = False) -> str:
    """
    Merge per-chunk prompt JSON into one document.

    A chunk that fails to parse contributes empty lists and is logged, unless
    strict is True, in which case PromptMergeError is raised.
    """
    all_images = []
    all_videos = []
    for index, raw in enumerate(json_strings, start=1):
        try:
            images, videos = _parse_prompt_chunk(raw)
        except PromptMergeError as e:
            if strict:
                raise PromptMergeError(f"Prompt chunk {index}: {e}") from e
            print(f"[PROMPTS] WARNING: Chunk {index}/{len(json_strings)} skipped ({e}). Using empty prompt lists.")
            continue
        all_images.extend(images)
        all_videos.extend(videos)

    return json.dumps(
        {"imagePrompts": all_images, "videoPrompts": all_videos},
        indent=2,
        ensure_ascii=False,
    )
