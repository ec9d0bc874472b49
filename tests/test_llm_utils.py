"""
Tests for llm_utils: generate_text dispatch, error classification and search sources.
Mocks OpenAI/Google clients so tests do not hit real APIs.
"""

import unittest
import sys
from pathlib import Path
from unittest.mock import patch, MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent))

import llm_utils
from config import ConfigurationError


class TestGetProviderForStep(unittest.TestCase):
    """Test get_provider_for_step returns env override when set, else TEXT_PROVIDER."""

    @patch("llm_utils.os.getenv")
    def test_returns_env_override_when_set(self, mock_getenv):
        mock_getenv.side_effect = lambda k, d=None: "openai" if k == "TEXT_PROVIDER_OUTLINE" else d
        with patch.object(llm_utils, "TEXT_PROVIDER", "google"):
            self.assertEqual(llm_utils.get_provider_for_step("OUTLINE"), "openai")

    @patch("llm_utils.os.getenv")
    def test_returns_text_provider_when_override_unset(self, mock_getenv):
        mock_getenv.side_effect = lambda k, d=None: d
        with patch.object(llm_utils, "TEXT_PROVIDER", "google"):
            self.assertEqual(llm_utils.get_provider_for_step("SCRIPT"), "google")

    @patch("llm_utils.os.getenv")
    def test_step_name_uppercased(self, mock_getenv):
        mock_getenv.side_effect = lambda k, d=None: "OpenAI" if k == "TEXT_PROVIDER_METADATA" else d
        with patch.object(llm_utils, "TEXT_PROVIDER", "google"):
            self.assertEqual(llm_utils.get_provider_for_step("metadata"), "openai")


class TestGetTextModelDisplay(unittest.TestCase):

    def test_returns_provider_and_model(self):
        out = llm_utils.get_text_model_display()
        parts = out.split("/", 1)
        self.assertEqual(len(parts), 2)
        self.assertIn(parts[0].strip(), ("openai", "google"))
        self.assertTrue(parts[1].strip())


class TestClassifyError(unittest.TestCase):

    def test_invalid_key_becomes_configuration_error(self):
        err = llm_utils._classify_error(Exception("400 API key not valid. Please pass a valid API key."), "google")
        self.assertIsInstance(err, ConfigurationError)

    def test_rate_limit_is_retryable(self):
        err = llm_utils._classify_error(Exception("429 RESOURCE_EXHAUSTED"), "google")
        self.assertIsInstance(err, llm_utils.GenerationError)
        self.assertTrue(err.retryable)
        self.assertEqual(err.provider, "google")

    def test_status_code_attribute_is_used(self):
        exc = Exception("Service busy")
        exc.status_code = 503
        self.assertTrue(llm_utils._classify_error(exc, "openai").retryable)

    def test_other_errors_keep_message_and_are_not_retryable(self):
        err = llm_utils._classify_error(ValueError("content policy violation"), "openai")
        self.assertIsInstance(err, llm_utils.GenerationError)
        self.assertFalse(err.retryable)
        self.assertEqual(str(err), "content policy violation")


class TestGenerateText(unittest.TestCase):
    """Test generate_text returns a string; mock underlying API."""

    @patch("openai.OpenAI")
    def test_openai_returns_string(self, mock_openai_class):
        mock_client = MagicMock()
        mock_openai_class.return_value = mock_client
        mock_resp = MagicMock()
        mock_resp.choices = [MagicMock()]
        mock_resp.choices[0].message.content = "  Hello, world.  "
        mock_client.chat.completions.create.return_value = mock_resp

        result = llm_utils.generate_text(
            messages=[{"role": "user", "content": "Hi"}],
            api_key="sk-test",
            provider="openai",
        )
        self.assertEqual(result, "Hello, world.")
        mock_openai_class.assert_called_once_with(api_key="sk-test")
        call_kw = mock_client.chat.completions.create.call_args[1]
        self.assertEqual(call_kw["model"], llm_utils.TEXT_MODEL_OPENAI)

    @patch("openai.OpenAI")
    def test_openai_error_is_wrapped(self, mock_openai_class):
        mock_client = MagicMock()
        mock_openai_class.return_value = mock_client
        mock_client.chat.completions.create.side_effect = Exception("Rate limit reached")

        with self.assertRaises(llm_utils.GenerationError) as ctx:
            llm_utils.generate_text(messages=[{"role": "user", "content": "Hi"}], api_key="sk-test", provider="openai")
        self.assertTrue(ctx.exception.retryable)
        self.assertIn("Rate limit reached", str(ctx.exception))

    @patch.dict("os.environ", {"OPENAI_API_KEY": ""}, clear=False)
    def test_openai_missing_key_raises(self):
        with self.assertRaises(ConfigurationError):
            llm_utils.generate_text(messages=[{"role": "user", "content": "Hi"}], provider="openai")

    @patch("google.genai.Client")
    def test_google_splits_system_instruction(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value = mock_client
        mock_resp = MagicMock()
        mock_resp.text = "Outline text"
        mock_resp.candidates = []
        mock_client.models.generate_content.return_value = mock_resp

        result = llm_utils.generate_text(
            messages=[
                {"role": "system", "content": "You write outlines."},
                {"role": "user", "content": "Topic A"},
            ],
            api_key="AIza-test-key",
            provider="google",
        )
        self.assertEqual(result, "Outline text")
        call_kw = mock_client.models.generate_content.call_args[1]
        self.assertEqual(call_kw["contents"], "Topic A")
        self.assertEqual(call_kw["config"].system_instruction, "You write outlines.")
        self.assertFalse(call_kw["config"].tools)

    @patch("google.genai.Client")
    def test_google_search_appends_sources(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value = mock_client
        chunk = MagicMock()
        chunk.web.uri = "https://example.com/news"
        chunk.web.title = "Example News"
        mock_resp = MagicMock()
        mock_resp.text = "Latest facts"
        mock_resp.candidates = [MagicMock()]
        mock_resp.candidates[0].grounding_metadata.grounding_chunks = [chunk]
        mock_client.models.generate_content.return_value = mock_resp

        result = llm_utils.generate_text(
            messages=[{"role": "user", "content": "Topic A"}],
            api_key="AIza-test-key",
            provider="google",
            use_search=True,
        )
        self.assertTrue(result.startswith("Latest facts"))
        self.assertIn("**Sources:**", result)
        self.assertIn("1. [Example News](https://example.com/news)", result)
        config = mock_client.models.generate_content.call_args[1]["config"]
        self.assertEqual(len(config.tools), 1)

    @patch("google.genai.Client")
    def test_google_empty_text_raises(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value = mock_client
        mock_resp = MagicMock()
        mock_resp.text = ""
        mock_client.models.generate_content.return_value = mock_resp

        with self.assertRaises(llm_utils.GenerationError):
            llm_utils.generate_text(messages=[{"role": "user", "content": "Hi"}], api_key="AIza-test-key", provider="google")

    def test_invalid_provider_raises(self):
        with self.assertRaises(ConfigurationError) as ctx:
            llm_utils.generate_text(
                messages=[{"role": "user", "content": "Hi"}],
                provider="invalid",
            )
        self.assertIn("openai", str(ctx.exception).lower())
        self.assertIn("google", str(ctx.exception).lower())


if __name__ == "__main__":
    unittest.main()
