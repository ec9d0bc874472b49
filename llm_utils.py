"""
Unified LLM utilities for text generation.
Dispatches to OpenAI or Google (Gemini) based on .env TEXT_PROVIDER.

.env variables:
  TEXT_PROVIDER           - "openai" or "google" (default: google)
  TEXT_PROVIDER_<STEP>    - Optional per-step override, e.g. TEXT_PROVIDER_OUTLINE=openai
  TEXT_MODEL_OPENAI       - OpenAI chat model (default: gpt-5.2)
  TEXT_MODEL_GOOGLE       - Gemini model (default: gemini-3-pro-preview)
  OPENAI_API_KEY          - Fallback key for OpenAI when no key is passed in
  GOOGLE_API_KEY          - Fallback key for Gemini (GEMINI_API_KEY also supported)
"""

import os
from typing import Any

from config import (
    TEXT_PROVIDER,
    TEXT_MODEL_OPENAI,
    TEXT_MODEL_GOOGLE,
    ConfigurationError,
)

# Substrings that mark a provider error as transient (safe to retry after a pause)
TRANSIENT_ERROR_MARKERS = (
    "429",
    "rate limit",
    "rate_limit",
    "resource_exhausted",
    "quota",
    "503",
    "unavailable",
    "overloaded",
)

INVALID_KEY_MARKERS = (
    "api key not valid",
    "api_key_invalid",
    "invalid api key",
    "incorrect api key",
)


class GenerationError(RuntimeError):
    """A remote generation call failed. The provider's message is kept verbatim."""

    def __init__(self, message: str, retryable: bool = False, provider: str | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.provider = provider


def get_provider_for_step(step_name: str) -> str:
    """Return TEXT_PROVIDER_<STEP_NAME> when set, else TEXT_PROVIDER."""
    override = os.getenv(f"TEXT_PROVIDER_{step_name.upper()}")
    if override:
        return override.lower()
    return TEXT_PROVIDER


def get_text_model_display() -> str:
    """Return a short string for logging: provider / model (e.g. 'google / gemini-3-pro-preview')."""
    prov = TEXT_PROVIDER.lower()
    model = TEXT_MODEL_OPENAI if prov == "openai" else TEXT_MODEL_GOOGLE
    return f"{prov} / {model}"


def _classify_error(error: Exception, provider: str) -> Exception:
    """Map a provider SDK exception to ConfigurationError or GenerationError."""
    message = str(error) or error.__class__.__name__
    lowered = message.lower()
    if any(marker in lowered for marker in INVALID_KEY_MARKERS):
        return ConfigurationError(f"API key is not valid ({provider}). Check the key and try again.")
    status = getattr(error, "status_code", None) or getattr(error, "code", None)
    retryable = status in (429, 503) or any(marker in lowered for marker in TRANSIENT_ERROR_MARKERS)
    return GenerationError(message, retryable=retryable, provider=provider)


def _format_sources(response: Any) -> str:
    """Build a markdown source list from Gemini grounding metadata (empty if none)."""
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return ""
    metadata = getattr(candidates[0], "grounding_metadata", None)
    chunks = getattr(metadata, "grounding_chunks", None) or []
    lines = []
    for index, chunk in enumerate(chunks, start=1):
        web = getattr(chunk, "web", None)
        uri = getattr(web, "uri", None)
        title = getattr(web, "title", None)
        if uri and title:
            lines.append(f"{index}. [{title}]({uri})")
    if not lines:
        return ""
    return "\n\n---\n**Sources:**\n" + "\n".join(lines) + "\n"


def _generate_openai(messages, api_key, model, temperature, **kwargs) -> str:
    api_key = api_key or os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise ConfigurationError("OPENAI_API_KEY is not set. Set it in .env or pass an API key.")
    from openai import OpenAI
    client = OpenAI(api_key=api_key)
    req: dict[str, Any] = {
        "model": model or TEXT_MODEL_OPENAI,
        "messages": messages,
        "temperature": temperature,
        **kwargs,
    }
    try:
        response = client.chat.completions.create(**req)
    except Exception as e:
        raise _classify_error(e, "openai") from e
    return (response.choices[0].message.content or "").strip()


def _generate_google(messages, api_key, model, temperature, use_search, **kwargs) -> str:
    api_key = api_key or os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")
    if not api_key:
        raise ConfigurationError(
            "GOOGLE_API_KEY or GEMINI_API_KEY is not set. Set one in .env or pass an API key. "
            "You can create an API key in Google AI Studio."
        )
    from google import genai
    from google.genai import types
    client = genai.Client(api_key=api_key)
    system_parts: list[str] = []
    chat_parts: list[tuple[str, str]] = []  # (role, content)
    for m in messages:
        role = (m.get("role") or "user").lower()
        content = (m.get("content") or "").strip()
        if not content:
            continue
        if role == "system":
            system_parts.append(content)
        else:
            chat_parts.append(("user" if role == "user" else "model", content))
    system_instruction = "\n\n".join(system_parts) if system_parts else None
    config_kw: dict[str, Any] = {"temperature": temperature, **kwargs}
    if use_search:
        config_kw["tools"] = [types.Tool(google_search=types.GoogleSearch())]
    config = types.GenerateContentConfig(system_instruction=system_instruction, **config_kw)
    # Single user turn: one contents string; multi-turn: fold history into one prompt
    if len(chat_parts) <= 1 and (not chat_parts or chat_parts[0][0] == "user"):
        contents = chat_parts[0][1] if chat_parts else ""
    else:
        contents = "\n\n".join(
            f"{'User' if role == 'user' else 'Assistant'}: {content}" for role, content in chat_parts
        )
    try:
        response = client.models.generate_content(
            model=model or TEXT_MODEL_GOOGLE,
            contents=contents,
            config=config,
        )
    except Exception as e:
        raise _classify_error(e, "google") from e
    if not response:
        raise GenerationError("Google Gemini returned no response.", provider="google")
    text = getattr(response, "text", None) or ""
    if not text:
        raise GenerationError(
            "Google Gemini returned empty text. The model may have blocked the response.",
            provider="google",
        )
    text = text.strip()
    if use_search:
        text += _format_sources(response)
    return text


def generate_text(
    messages: list[dict[str, str]],
    api_key: str | None = None,
    model: str | None = None,
    provider: str | None = None,
    temperature: float = 0.7,
    use_search: bool = False,
    **kwargs: Any,
) -> str:
    """
    Generate text from messages using OpenAI or Google Gemini.

    Args:
        messages: List of {"role": "user"|"system"|"assistant", "content": str} (OpenAI shape).
        api_key: Credential for this call; falls back to the provider's env variable.
        model: Model name; if None, use env TEXT_MODEL_OPENAI or TEXT_MODEL_GOOGLE.
        provider: "openai" or "google"; if None, use env TEXT_PROVIDER.
        temperature: Sampling temperature.
        use_search: Ground the answer with Google Search (Gemini only) and append a source list.
        **kwargs: Passed through to the underlying API.

    Returns:
        The assistant reply as a single string.

    Raises:
        ConfigurationError: Missing or rejected API key, unknown provider.
        GenerationError: Any other provider failure; retryable is set for rate limits and outages.
    """
    prov = (provider or TEXT_PROVIDER).lower()
    if prov not in ("openai", "google"):
        raise ConfigurationError(
            f"TEXT_PROVIDER must be 'openai' or 'google'. Got: {prov}. "
            "Set TEXT_PROVIDER in .env or pass provider=."
        )
    if prov == "openai":
        return _generate_openai(messages, api_key, model, temperature, **kwargs)
    return _generate_google(messages, api_key, model, temperature, use_search, **kwargs)
