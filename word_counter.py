"""
Deterministic word counting for voice-over text.

Vietnamese words are counted per syllable (whitespace separated), which is how
voice-over timing is estimated (1 syllable ~ 0.25-0.3s). English uses the same
whitespace rule after punctuation is removed.
"""
import re

from config import get_language_config

_PUNCTUATION = re.compile(r"[.,;:!?\"“”‘’'()\[\]{}—–\-]")
_SCENE_SPLIT = re.compile(r"(?=(?:Scene|Cảnh)\s+\d+\s*:)", re.IGNORECASE)
_SCENE_START = re.compile(r"^(?:Scene|Cảnh)\s+(\d+)\s*:", re.IGNORECASE)

VOICEOVER_LABEL_PATTERNS = {
    "vi": r"Lời\s*dẫn",
    "en": r"Voice[\s-]*over|Narration",
}
ANNOTATION_PATTERNS = {
    "vi": r"\(\s*\d+\s*từ\s*\)",
    "en": r"\(\s*\d+\s*words?\s*\)",
}


def count_words(text: str, language: str = "vi") -> int:
    """
    Count words in voice-over text.

    Example:
        count_words("Mẹ kế không phải ác quỷ")  # 6
    """
    if not text or not text.strip():
        return 0
    cleaned = _PUNCTUATION.sub(" ", text)
    return len(cleaned.split())


def parse_scenes(response: str) -> list[str]:
    """Split a model response into 'Scene N:' blocks, dropping anything before the first scene."""
    parts = _SCENE_SPLIT.split(response or "")
    return [part.strip() for part in parts if _SCENE_START.match(part.strip())]


def scene_number(block: str) -> int | None:
    match = _SCENE_START.match(block.strip())
    return int(match.group(1)) if match else None


def _voiceover_regex(language: str) -> re.Pattern:
    label = VOICEOVER_LABEL_PATTERNS.get(language, VOICEOVER_LABEL_PATTERNS["vi"])
    # Voice-over runs to the next blank line or the end of the block
    return re.compile(rf"\**(?:{label})\**\s*:\s*\**(.*?)(?=\n\s*\n|\Z)", re.IGNORECASE | re.DOTALL)


def _strip_annotations(content: str, language: str) -> str:
    annotation = ANNOTATION_PATTERNS.get(language, ANNOTATION_PATTERNS["vi"])
    content = re.sub(annotation, "", content, flags=re.IGNORECASE)
    return content.replace("**", "").strip()


def extract_voiceover_content(scene_text: str, language: str = "vi") -> str | None:
    """Return the voice-over text of a scene block without its '(N words)' annotation."""
    match = _voiceover_regex(language).search(scene_text or "")
    if not match:
        return None
    content = _strip_annotations(match.group(1), language)
    return content or None


def correct_voiceover_annotation(scene_text: str, language: str = "vi") -> tuple[str, int, str | None]:
    """
    Replace the model's word-count annotation with the real count.

    Returns:
        (corrected_text, word_count, voiceover_content); the text is unchanged and
        the count is 0 when the scene has no voice-over.
    """
    match = _voiceover_regex(language).search(scene_text or "")
    if not match:
        return scene_text, 0, None
    content = _strip_annotations(match.group(1), language)
    if not content:
        return scene_text, 0, None
    count = count_words(content, language)
    lang_cfg = get_language_config(language)
    replacement = f"{lang_cfg['voiceover_label']}: {content} ({count} {lang_cfg['word_unit']})"
    corrected = scene_text[:match.start()] + replacement + scene_text[match.end():]
    return corrected, count, content
