#!/usr/bin/env python3
"""Tests for the provider adapters (no network: requests.Session is mocked)."""

import io
import json
import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock

import requests

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "bin"))

import config as config_mod
from clients import (
    CompletionOptions,
    DeltaStream,
    GeminiClient,
    InferenceClient,
    OpenAIClient,
    gemini_output_ceiling,
    get_client,
)
from config import Config
from errors import ProviderMisconfigured, UpstreamError


class _FakeResponse:
    """Just enough of requests.Response for the adapters."""

    def __init__(self, lines=(), status_code=200, payload=None, text="", raw=True):
        self._lines = list(lines)
        self.status_code = status_code
        self._payload = payload
        self.text = text or (json.dumps(payload) if payload is not None else "")
        self.raw = object() if raw else None
        self.closed = False

    def iter_lines(self, decode_unicode=False):
        return iter(self._lines)

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def close(self):
        self.closed = True


def _sse(content):
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]})


def _make_session(response):
    session = MagicMock()
    session.post.return_value = response
    return session


def _make_options(**overrides):
    base = {"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]}
    base.update(overrides)
    return CompletionOptions(**base)


class ClientsBase(unittest.TestCase):

    def setUp(self):
        self._orig_debug = config_mod.DEBUG_MODE
        config_mod.DEBUG_MODE = False

    def tearDown(self):
        config_mod.DEBUG_MODE = self._orig_debug


class TestDeltaStream(ClientsBase):

    def test_parses_deltas_and_skips_noise(self):
        resp = _FakeResponse([
            _sse("<html>"),
            "",
            ": keep-alive",
            "data: {not json",
            _sse("</html>"),
            "data: [DONE]",
            _sse("never read"),
        ])
        stream = DeltaStream(resp, name="test")
        self.assertEqual(list(stream), ["<html>", "</html>"])
        self.assertEqual(stream.skipped_lines, 1)
        self.assertTrue(stream.done)
        self.assertTrue(resp.closed)

    def test_empty_delta_is_not_done(self):
        stream = DeltaStream(_FakeResponse(['data: {"choices": [{"delta": {}}]}']))
        event = stream.next_event()
        self.assertFalse(event.done)
        self.assertEqual(event.text_delta, "")
        self.assertTrue(stream.next_event().done)

    def test_end_of_body_finishes(self):
        stream = DeltaStream(_FakeResponse([_sse("a")]))
        self.assertEqual(stream.next_event().text_delta, "a")
        self.assertTrue(stream.next_event().done)

    def test_pull_after_done_raises(self):
        stream = DeltaStream(_FakeResponse(["data: [DONE]"]))
        self.assertTrue(stream.next_event().done)
        with self.assertRaises(RuntimeError):
            stream.next_event()

    def test_utf8_body_without_charset(self):
        body = "data: " + json.dumps({"choices": [{"delta": {"content": "Caf\u00e9 \U0001f433"}}]},
                                     ensure_ascii=False) + "\n\ndata: [DONE]\n\n"
        resp = requests.Response()
        resp.status_code = 200
        resp.headers["Content-Type"] = "text/event-stream"
        resp.raw = io.BytesIO(body.encode("utf-8"))
        self.assertEqual(list(DeltaStream(resp)), ["Caf\u00e9 \U0001f433"])

    def test_bytes_lines_are_decoded(self):
        stream = DeltaStream(_FakeResponse([_sse("x").encode("utf-8"), b"data: [DONE]"]))
        self.assertEqual(list(stream), ["x"])


class TestOpenAICompatible(ClientsBase):

    def test_missing_key_fails_before_request(self):
        session = _make_session(_FakeResponse())
        client = OpenAIClient("", session=session)
        with self.assertRaises(ProviderMisconfigured):
            client.completion(_make_options())
        session.post.assert_not_called()

    def test_http_error_is_upstream_error(self):
        resp = _FakeResponse(status_code=500, text="boom")
        client = OpenAIClient("sk", session=_make_session(resp))
        with self.assertRaises(UpstreamError) as ctx:
            client.completion_stream(_make_options())
        self.assertEqual(ctx.exception.http_status, 500)
        self.assertIn("API Error (500)", ctx.exception.message)
        self.assertTrue(resp.closed)

    def test_network_error_is_upstream_error(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("down")
        client = OpenAIClient("sk", session=session)
        with self.assertRaises(UpstreamError):
            client.completion(_make_options())

    def test_completion_strips_fences(self):
        payload = {"choices": [{"message": {"content": "```html\n<html></html>\n```"}}]}
        client = OpenAIClient("sk", session=_make_session(_FakeResponse(payload=payload)))
        self.assertEqual(client.completion(_make_options()).strip(), "<html></html>")

    def test_completion_empty_choices(self):
        client = OpenAIClient("sk", session=_make_session(_FakeResponse(payload={"choices": []})))
        with self.assertRaises(UpstreamError):
            client.completion(_make_options())

    def test_stream_without_body(self):
        client = OpenAIClient("sk", session=_make_session(_FakeResponse(raw=False)))
        with self.assertRaises(UpstreamError):
            client.completion_stream(_make_options())

    def test_openai_buffered_ceiling(self):
        client = OpenAIClient("sk")
        self.assertEqual(client.build_payload(_make_options(), stream=False)["max_tokens"], 4000)
        self.assertNotIn("max_tokens", client.build_payload(_make_options(), stream=True))

    def test_bearer_and_stream_flag_sent(self):
        session = _make_session(_FakeResponse([_sse("x")]))
        OpenAIClient("sk-1", session=session).completion_stream(_make_options())
        kwargs = session.post.call_args.kwargs
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk-1")
        self.assertTrue(kwargs["stream"])
        self.assertTrue(kwargs["json"]["stream"])


class TestGeminiAndInference(ClientsBase):

    def test_gemini_tiers(self):
        self.assertEqual(gemini_output_ceiling("gemini-2.5-pro-exp-03-25"), 65536)
        self.assertEqual(gemini_output_ceiling("gemini-2.5-flash-preview-04-17"), 65536)
        self.assertEqual(gemini_output_ceiling("gemini-2.0-flash"), 8192)
        payload = GeminiClient("g").build_payload(_make_options(model="gemini-2.0-flash"), stream=True)
        self.assertEqual(payload["max_tokens"], 8192)

    def test_inference_routes_provider_tag(self):
        session = _make_session(_FakeResponse([_sse("x")]))
        client = InferenceClient("hf_tok", session=session)
        client.completion_stream(_make_options(model="deepseek-ai/DeepSeek-V3-0324",
                                               provider="novita", max_tokens=16000))
        body = session.post.call_args.kwargs["json"]
        self.assertEqual(body["model"], "deepseek-ai/DeepSeek-V3-0324:novita")
        self.assertEqual(body["max_tokens"], 16000)


class TestGetClient(ClientsBase):

    def test_api_key_backends(self):
        self.assertIsInstance(get_client("openai", Config(openai_api_key="o")), OpenAIClient)
        self.assertIsInstance(get_client("gemini", Config(gemini_api_key="g")), GeminiClient)
        with self.assertRaises(ProviderMisconfigured):
            get_client("openai", Config())

    def test_hosted_backends_need_token(self):
        self.assertIsInstance(get_client("sambanova", Config(), token="t"), InferenceClient)
        with self.assertRaises(ProviderMisconfigured):
            get_client("novita", Config())
        with self.assertRaises(ProviderMisconfigured):
            get_client("", Config(), token="t")


if __name__ == "__main__":
    unittest.main()
