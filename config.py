"""
Configuration settings for batch script generation.
Can be overridden via command line arguments.
"""

import os

from dotenv import load_dotenv

load_dotenv()

# LLM provider and model selection (from .env); used by llm_utils
# TEXT_PROVIDER: "google" or "openai"
TEXT_PROVIDER = os.getenv("TEXT_PROVIDER", "google").lower()
TEXT_MODEL_OPENAI = os.getenv("TEXT_MODEL_OPENAI", "gpt-5.2")
TEXT_MODEL_GOOGLE = os.getenv("TEXT_MODEL_GOOGLE", "gemini-3-pro-preview")

# Prompt packs: one directory per pack with a manifest.json
PROMPT_PACKS_DIR = os.getenv("PROMPT_PACKS_DIR", "prompt_packs")
PROMPT_REGISTRY_URL = os.getenv("PROMPT_REGISTRY_URL", "")

# Key pool file (one key per line) and saved queue state
API_KEYS_FILE = os.getenv("API_KEYS_FILE", "")
QUEUE_STATE_FILE = os.getenv("QUEUE_STATE_FILE", "batch_state/queue_state.json")

MAX_QUEUE_SIZE = 20

STEP_NAMES = {
    1: "Research & Ideas",
    2: "Create Outline",
    3: "Write Script",
    4: "Extract Prompts",
    5: "Voice Over",
    6: "Metadata",
}

# Env suffix used for per-step provider overrides (TEXT_PROVIDER_<KEY>)
STEP_KEYS = {
    1: "NEWS",
    2: "OUTLINE",
    3: "SCRIPT",
    4: "PROMPTS",
    5: "VOICE_OVER",
    6: "METADATA",
}

LANGUAGE_CONFIGS = {
    "vi": {
        "name": "Tiếng Việt",
        "voiceover_label": "Lời dẫn",
        "image_label": "Hình ảnh",
        "word_unit": "từ",
        "default_pack_id": "core-tools",
        "default_word_range": (18, 22),
    },
    "en": {
        "name": "English",
        "voiceover_label": "Voice-over",
        "image_label": "Image",
        "word_unit": "words",
        "default_pack_id": "english-bd-crime",
        "default_word_range": (14, 20),
    },
}


class ConfigurationError(ValueError):
    """Missing or invalid credential, template or setting. Fatal to the job that hits it."""


def get_language_config(language: str) -> dict:
    """Return the language profile for 'vi' or 'en'."""
    lang = (language or "vi").lower()
    if lang not in LANGUAGE_CONFIGS:
        raise ConfigurationError(
            f"Unsupported language '{language}'. Must be one of: {sorted(LANGUAGE_CONFIGS)}"
        )
    return LANGUAGE_CONFIGS[lang]


class Config:
    # Per-job pipeline settings
    scene_count = 45          # Scenes per script (outline and script are batched over these)
    target_words = 20         # Target voice-over words per scene
    word_tolerance = 2        # Allowed +/- around target_words
    language = "vi"           # "vi" or "en"; selects voice-over label and word unit
    pack_id = "core-tools"    # Prompt pack used for all six steps
    skip_discovery = False    # Treat job input as the step 1 result (no news/topic call)

    # Queue settings
    concurrency = 1           # Jobs run at once; capped by ScheduleConfig.parallel_jobs
    persist_queue = True      # Save queue state after every checkpoint

    @property
    def word_min(self):
        return max(1, self.target_words - self.word_tolerance)

    @property
    def word_max(self):
        return self.target_words + self.word_tolerance
