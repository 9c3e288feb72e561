import unittest
from types import SimpleNamespace
from unittest import mock

from openai import OpenAIError

from expense_tracker.ai_client import (
    AiProvider,
    DisabledChatClient,
    OpenAICompatibleClient,
    build_chat_client,
    resolve_provider,
)
from expense_tracker.errors import UpstreamError


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class ProviderSelectionTests(unittest.TestCase):
    def test_first_configured_key_wins(self) -> None:
        config, api_key = resolve_provider({"GEMINI_API_KEY": "g", "GROQ_API_KEY": "q"})

        self.assertEqual(config.provider, AiProvider.GROQ)
        self.assertEqual(api_key, "q")

    def test_no_key_gives_disabled_client(self) -> None:
        with self.assertLogs("expense_tracker.ai_client", level="WARNING"):
            client = build_chat_client({"OPENAI_API_KEY": None})

        self.assertIsInstance(client, DisabledChatClient)
        with self.assertRaises(UpstreamError):
            client.complete([{"role": "user", "content": "hi"}])


class OpenAICompatibleClientTests(unittest.TestCase):
    def setUp(self) -> None:
        config, _ = resolve_provider({"DEEPSEEK_API_KEY": "d"})
        self.sdk = mock.MagicMock()
        self.client = OpenAICompatibleClient(config, "d", client=self.sdk)

    def test_complete_returns_message_content(self) -> None:
        self.sdk.chat.completions.create.return_value = completion("hello")

        reply = self.client.complete([{"role": "user", "content": "hi"}], max_tokens=50)

        self.assertEqual(reply, "hello")
        kwargs = self.sdk.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs["model"], "deepseek-chat")
        self.assertEqual(kwargs["max_tokens"], 50)

    def test_stream_skips_empty_deltas(self) -> None:
        self.sdk.chat.completions.create.return_value = iter(
            [chunk("Hel"), chunk(None), SimpleNamespace(choices=[]), chunk("lo")]
        )

        self.assertEqual(list(self.client.stream([{"role": "user", "content": "hi"}])), ["Hel", "lo"])

    def test_sdk_errors_become_upstream_errors(self) -> None:
        self.sdk.chat.completions.create.side_effect = OpenAIError("boom")

        with self.assertRaises(UpstreamError):
            self.client.complete([{"role": "user", "content": "hi"}])
        with self.assertRaises(UpstreamError):
            list(self.client.stream([{"role": "user", "content": "hi"}]))


if __name__ == "__main__":
    unittest.main()
