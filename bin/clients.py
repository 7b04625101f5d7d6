"""Sitesmith provider adapters: one request/response shape for every backend.

Each client exposes
  completion(options)         -> full text (fences stripped)
  completion_stream(options)  -> DeltaStream of text deltas

All three backends speak the OpenAI chat-completions wire format
(JSON body, ``data: {...}`` SSE lines, ``data: [DONE]`` terminator):
  - OpenAIClient     api.openai.com
  - GeminiClient     Gemini's OpenAI-compatibility endpoint
  - InferenceClient  Hugging Face router, routed to a hosted provider
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

import requests

import config as config_mod
from document import clean_markdown_code_blocks
from errors import ProviderMisconfigured, UpstreamError

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions"
HF_ROUTER_URL = "https://router.huggingface.co/v1/chat/completions"

GEMINI_DEFAULT_OUTPUT_TOKENS = 8192
GEMINI_LARGE_OUTPUT_TOKENS = 65536
GEMINI_MAX_INPUT_TOKENS = 1_000_000
OPENAI_BUFFERED_MAX_TOKENS = 4000


def gemini_output_ceiling(model: str) -> int:
    """Output-token ceiling for a Gemini model (2.5 flash/pro get the large tier)."""
    if "2.5" in model and ("flash" in model or "pro" in model):
        return GEMINI_LARGE_OUTPUT_TOKENS
    return GEMINI_DEFAULT_OUTPUT_TOKENS


# ---------------------------------------------------------------------------
# Request / result shapes
# ---------------------------------------------------------------------------
@dataclass
class CompletionOptions:
    """Provider-agnostic completion request."""
    model: str
    messages: List[Dict[str, str]] = field(default_factory=list)
    max_tokens: Optional[int] = None  # Output ceiling; None lets the client decide.
    provider: Optional[str] = None  # Routing tag for hosted-inference providers.


@dataclass(frozen=True)
class StreamEvent:
    done: bool
    text_delta: str = ""


class DeltaStream:
    """Pull-based reader over an OpenAI-style SSE response.

    ``next_event()`` yields ``StreamEvent(done=False, text_delta=...)`` per
    data line until ``[DONE]`` or end of body, then ``StreamEvent(done=True)``
    exactly once.  Deltas may be empty; malformed lines are skipped.
    """

    def __init__(self, response: requests.Response, name: str = "upstream"):
        self._response = response
        # Raw byte lines; decoded as UTF-8 in next_event regardless of Content-Type.
        self._lines = response.iter_lines()
        self._name = name
        self.done = False
        self.chunk_count = 0
        self.skipped_lines = 0

    def next_event(self) -> StreamEvent:
        if self.done:
            raise RuntimeError(f"{self._name} stream already finished")
        for line in self._lines:
            if not line or not line.strip():
                continue
            if isinstance(line, bytes):
                line = line.decode("utf-8", errors="replace")
            if "data: [DONE]" in line:
                return self._finish()
            if not line.startswith("data: "):
                continue
            try:
                data = json.loads(line[6:])
                choices = data.get("choices") or [{}]
                delta = (choices[0].get("delta") or {}).get("content") or ""
            except (ValueError, AttributeError, IndexError, TypeError):
                self.skipped_lines += 1
                if config_mod.DEBUG_MODE:
                    print(f"[DEBUG] {self._name}: skipping unparseable line: {line[:100]}")
                continue
            self.chunk_count += 1
            return StreamEvent(done=False, text_delta=delta)
        return self._finish()

    def _finish(self) -> StreamEvent:
        self.done = True
        self.close()
        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] {self._name}: stream complete after {self.chunk_count} chunks")
        return StreamEvent(done=True)

    def close(self) -> None:
        self._response.close()

    def __iter__(self) -> Iterator[str]:
        """Iterate over non-empty deltas until the stream finishes."""
        while not self.done:
            event = self.next_event()
            if event.done:
                return
            if event.text_delta:
                yield event.text_delta


@dataclass
class BufferedCompletion:
    """Whole-document result."""
    text: str


@dataclass
class StreamedCompletion:
    """Incremental result; the relay pulls from ``stream``."""
    stream: DeltaStream
    preamble: str = ""  # Text written to the client before the first delta.


Completion = Union[BufferedCompletion, StreamedCompletion]


# ---------------------------------------------------------------------------
# OpenAI-compatible clients
# ---------------------------------------------------------------------------
class OpenAICompatibleClient:
    """Chat-completions client for any OpenAI-compatible endpoint."""

    name = "OpenAI-compatible"
    default_url = OPENAI_URL
    key_label = "API key"

    def __init__(self, api_key: str, *, url: str | None = None, timeout_s: float = 120.0,
                 session: requests.Session | None = None):
        self.api_key = api_key
        self.url = url or self.default_url
        self.timeout_s = timeout_s
        self._http = session or requests.Session()

    def max_output_tokens(self, model: str, *, stream: bool) -> Optional[int]:
        return None

    def request_model(self, options: CompletionOptions) -> str:
        return options.model

    def build_payload(self, options: CompletionOptions, *, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.request_model(options),
            "messages": options.messages,
            "stream": stream,
        }
        max_tokens = options.max_tokens or self.max_output_tokens(options.model, stream=stream)
        if max_tokens:
            payload["max_tokens"] = max_tokens
        return payload

    def _post(self, payload: Dict[str, Any], *, stream: bool) -> requests.Response:
        if not self.api_key:
            raise ProviderMisconfigured(f"{self.name} {self.key_label} is not configured")
        if config_mod.DEBUG_MODE:
            msgs = payload.get("messages", [])
            print(f"[DEBUG] {self.name} → {self.url} (model={payload.get('model')}, stream={stream})")
            for i, m in enumerate(msgs):
                print(f"  [{i}] {m['role']}: {m['content'][:200]}{'...' if len(m['content']) > 200 else ''}")
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}
        try:
            resp = self._http.post(self.url, json=payload, headers=headers,
                                   timeout=self.timeout_s, stream=stream)
        except requests.RequestException as exc:
            raise UpstreamError(f"{self.name} request failed: {exc}") from exc
        if resp.status_code >= 400:
            body = resp.text[:2000]
            resp.close()
            raise UpstreamError(f"{self.name} API Error ({resp.status_code}): {body}",
                                http_status=resp.status_code, body=body)
        return resp

    def completion(self, options: CompletionOptions) -> str:
        """Non-streaming request; returns the full text with code fences removed."""
        resp = self._post(self.build_payload(options, stream=False), stream=False)
        try:
            data = resp.json()
        except ValueError as exc:
            raise UpstreamError(f"{self.name} returned invalid JSON: {exc}") from exc
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise UpstreamError(f"{self.name} API returned empty choices")
        content = (choices[0].get("message") or {}).get("content") or ""
        if not content:
            return content
        return clean_markdown_code_blocks(content)

    def completion_stream(self, options: CompletionOptions) -> DeltaStream:
        """Streaming request; the returned DeltaStream owns the connection."""
        resp = self._post(self.build_payload(options, stream=True), stream=True)
        if resp.raw is None:
            resp.close()
            raise UpstreamError(f"{self.name} API returned no response body")
        return DeltaStream(resp, name=self.name)


class OpenAIClient(OpenAICompatibleClient):
    name = "OpenAI"
    default_url = OPENAI_URL

    def max_output_tokens(self, model: str, *, stream: bool) -> Optional[int]:
        return None if stream else OPENAI_BUFFERED_MAX_TOKENS


class GeminiClient(OpenAICompatibleClient):
    name = "Gemini"
    default_url = GEMINI_URL

    def max_output_tokens(self, model: str, *, stream: bool) -> Optional[int]:
        return gemini_output_ceiling(model)


class InferenceClient(OpenAICompatibleClient):
    """Hugging Face router; the provider tag is appended to the model id."""

    name = "HuggingFace"
    default_url = HF_ROUTER_URL
    key_label = "token"

    def request_model(self, options: CompletionOptions) -> str:
        if options.provider:
            return f"{options.model}:{options.provider}"
        return options.model


def get_client(provider_id: str, cfg: config_mod.Config, token: str = "",
               session: requests.Session | None = None) -> OpenAICompatibleClient:
    """Build the adapter for *provider_id*.

    API-key backends read their key from *cfg*; every other provider goes
    through the Hugging Face router with *token*.
    """
    if not provider_id:
        raise ProviderMisconfigured("No AI provider specified")
    if provider_id == "openai":
        if not cfg.openai_api_key:
            raise ProviderMisconfigured("OpenAI API key is not configured")
        return OpenAIClient(cfg.openai_api_key, timeout_s=cfg.timeout_s, session=session)
    if provider_id == "gemini":
        if not cfg.gemini_api_key:
            raise ProviderMisconfigured("Gemini API key is not configured")
        return GeminiClient(cfg.gemini_api_key, timeout_s=cfg.timeout_s, session=session)
    if not token:
        raise ProviderMisconfigured("HuggingFace token is required")
    return InferenceClient(token, timeout_s=cfg.timeout_s, session=session)
