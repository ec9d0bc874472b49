"""
User-message builders for the six pipeline steps.
The step's instruction text (system prompt) comes from the prompt registry;
these builders supply the per-call task: input data, batch range and rules.
"""
from config import get_language_config

END_OF_OUTLINE = "END_OF_OUTLINE"
END_OF_SCRIPT = "END_OF_SCRIPT"
METADATA_INPUT_LIMIT = 30000  # Characters of script sent to the metadata step


def get_word_count_rules(language: str) -> str:
    """Counting rule the model must follow so its annotations match word_counter."""
    if language == "vi":
        return """===== WORD COUNTING RULE (MANDATORY) =====
Each whitespace-separated SYLLABLE counts as 1 word.
Correct examples:
  • "Mẹ kế không phải ác quỷ" = 6 words.
  • "trong thời kỳ khủng hoảng" = 5 words.
  • "bà ta là nhà quản lý nguồn lực" = 8 words.
Do NOT merge compound words into one unit ("nhà quản lý" = 3 words, NOT 1).
=========================================="""
    return """===== WORD COUNTING RULE (MANDATORY) =====
Each whitespace-separated word counts as 1 word. Hyphenated words count per part.
=========================================="""


def build_news_message(keyword: str) -> str:
    return f'Topic / keyword to research: "{keyword}"'


def build_outline_batch_message(
    news_data: str,
    current_outline: str,
    start_scene: int,
    end_scene: int,
    scene_count: int,
    word_min: int,
    word_max: int,
    language: str = "vi",
    feedback: str = "",
    attempt: int = 1,
    max_attempts: int = 5,
) -> str:
    """
    Build the outline request for scenes start_scene..end_scene.

    Args:
        news_data: Step 1 output (research / ideas).
        current_outline: Tail of the outline written so far, for continuity.
        feedback: Validation errors from the previous attempt; empty on the first attempt.
    """
    lang = get_language_config(language)
    label = lang["voiceover_label"]
    image_label = lang["image_label"]
    unit = lang["word_unit"]

    feedback_block = ""
    if feedback:
        feedback_block = f"""
IMPORTANT (ATTEMPT {attempt}/{max_attempts}):
The previous attempt was REJECTED because:
{feedback}
FIX IT NOW. If too long: CUT. If too short: ADD.
"""

    return f"""
Input (news / events):
{news_data}

Outline written so far (context):
{current_outline}

CURRENT TASK (batch scenes {start_scene} -> {end_scene}):
Continue the detailed outline for **Scene {start_scene}** through **Scene {end_scene}**.
Planned total scenes: {scene_count}.
If the story is already complete before Scene {start_scene}, reply with exactly {END_OF_OUTLINE}.

{get_word_count_rules(language)}

VOICE-OVER REQUIREMENTS:
1. Every scene MUST have a "**{label}:**" section.
2. Length MUST be within **{word_min} - {word_max} {unit}** (counted with the rule above).
3. End every voice-over with its actual word count, e.g. (18 {unit}).
{feedback_block}
FORMAT:
Scene {start_scene}: [Scene title]
{image_label}: [Detailed visual description]
{label}: [Voice-over text] (word count)

... (continue through Scene {end_scene})
"""


def build_script_batch_message(
    outline: str,
    previous_content: str,
    start_scene: int,
    end_scene: int,
    scene_count: int,
) -> str:
    return f"""
Overall outline (total scenes required: {scene_count}):
{outline}

Script written in earlier parts (context, truncated):
{previous_content}
...

CURRENT TASK (batch scenes {start_scene} -> {end_scene}):
Write the detailed script for EXACTLY **Scene {start_scene}** through **Scene {end_scene}**.

RULES:
1. Start immediately with "**Scene {start_scene}:**".
2. Write each scene in order up to "**Scene {end_scene}**".
3. Do NOT write beyond Scene {end_scene} in this reply.
4. Keep the format: Visual and Audio/Voice Over.
5. If this is the final batch (Scene {end_scene} == {scene_count}), add a Conclusion if needed and finish with {END_OF_SCRIPT}.
"""


def build_prompts_batch_message(script_chunk: str) -> str:
    return f"""
Script section to process:
{script_chunk}

TASK:
Extract Image Prompts and Video Prompts for the scenes in the section above as JSON:
{{"imagePrompts": [...], "videoPrompts": [...]}}
Return raw JSON only, no markdown.
"""


def build_voice_over_message(full_script: str, word_min: int, word_max: int) -> str:
    return f"""
Detailed script to extract the Voice Over from:

{full_script}

LENGTH REQUIREMENTS:
- Every Voice Over sentence must be **{word_min} to {word_max} words** long.
- If a sentence is too short, merge it or expand it.
- If a sentence is too long, split it into 2 sentences.
"""


def build_metadata_message(detailed_script: str) -> str:
    return f"Script content:\n{detailed_script[:METADATA_INPUT_LIMIT]}"
