"""Sitesmith generation pipeline: request policy, provider dispatch, and output relay.

A /generate request moves through one linear sequence:

  validated → rate/credential-checked → provider-resolved → model-resolved
  → token-budget-checked → dispatched → relayed → closed

``plan_generation`` runs everything up to dispatch and raises one of the
errors in errors.py on rejection.  ``open_completion`` issues the upstream
request and returns a BufferedCompletion (whole-document providers) or a
StreamedCompletion; ``relay_stream`` turns the latter into the chunks written
to the client.  Nothing is retried except the single buffered → streaming
fallback for whole-document providers.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional

import requests

import config as config_mod
from clients import (
    GEMINI_MAX_INPUT_TOKENS,
    BufferedCompletion,
    Completion,
    CompletionOptions,
    OpenAICompatibleClient,
    StreamedCompletion,
    gemini_output_ceiling,
    get_client,
)
from document import (
    DEFAULT_HTML,
    HTML_FOOTER,
    HTML_HEADER,
    DocumentReconstructor,
    clean_html_response,
    ensure_document_frame,
    find_complete_document,
    reached_end,
    truncate_after_close,
)
from errors import (
    ContextTooLarge,
    ProviderMisconfigured,
    RateLimited,
    SitesmithError,
    UpstreamError,
    ValidationError,
    error_payload,
)
from history import Workspace
from providers import (
    API_KEY_PROVIDERS,
    ProviderDescriptor,
    fallback_api_key_provider,
    get_provider,
    resolve_model,
    select_default_provider,
)

SYSTEM_PROMPT = (
    "ONLY USE HTML, CSS AND JAVASCRIPT. If you want to use ICON make sure to import the library "
    "first. Try to create the best UI possible by using only HTML, CSS and JAVASCRIPT. Use as much "
    "as you can TailwindCSS for the CSS, if you can't do something with TailwindCSS, then use "
    "custom CSS (make sure to import <script src=\"https://cdn.tailwindcss.com\"></script> in the "
    "head). Also, try to elaborate as much as you can, to create something unique. IMPORTANT: DO "
    "NOT USE MARKDOWN CODE BLOCKS. DO NOT START YOUR RESPONSE WITH ```html OR END IT WITH ```. JUST "
    "PROVIDE THE RAW HTML CONTENT DIRECTLY. ALWAYS GIVE THE RESPONSE AS A SINGLE HTML FILE."
)

# Providers whose own ceiling is not forwarded as max_tokens.
_NO_MAX_TOKENS = ("sambanova", "openai", "gemini")
# Provider whose deltas are cut at the first closing root tag.
TRUNCATING_PROVIDER = "sambanova"


# ---------------------------------------------------------------------------
# Anonymous usage counter
# ---------------------------------------------------------------------------
class UsageCounter:
    """Per-address request counts for anonymous users; reset only on restart."""

    def __init__(self):
        self._counts: Dict[str, int] = {}

    def hit(self, address: str) -> int:
        """Increment and return the post-increment count."""
        self._counts[address] = self._counts.get(address, 0) + 1
        return self._counts[address]

    def count(self, address: str) -> int:
        return self._counts.get(address, 0)

    def set(self, address: str, value: int) -> None:
        self._counts[address] = value


USAGE = UsageCounter()


# ---------------------------------------------------------------------------
# Request state
# ---------------------------------------------------------------------------
@dataclass
class GenerationRequest:
    """Validated /generate body plus caller identity."""
    prompt: str
    html: str = ""
    previous_prompt: str = ""
    provider: str = "auto"
    model: str = ""
    address: str = "0.0.0.0"

    @property
    def tokens_used(self) -> int:
        """Coarse token estimate: total characters of prompt, previous prompt and html."""
        return len(self.prompt) + len(self.previous_prompt) + len(self.html)


@dataclass
class GenerationPlan:
    """Everything needed to dispatch one request upstream."""
    request: GenerationRequest
    provider: ProviderDescriptor
    model: str
    token: str
    options: CompletionOptions


def parse_request(body: Any, *, address: str = "0.0.0.0",
                  workspace: Optional[Workspace] = None) -> GenerationRequest:
    """Validate the JSON body; a workspace supplies html/previous prompt when absent."""
    if not isinstance(body, dict):
        raise ValidationError("Invalid request body - must be valid JSON")
    prompt = body.get("prompt")
    if not prompt or not isinstance(prompt, str):
        raise ValidationError("Missing required fields: prompt")

    html = body.get("html") or ""
    previous_prompt = body.get("previousPrompt") or ""
    if workspace is not None:
        if "html" not in body and workspace.html != DEFAULT_HTML:
            html = workspace.html
        if "previousPrompt" not in body:
            previous_prompt = workspace.previous_prompt
    if not isinstance(html, str) or not isinstance(previous_prompt, str):
        raise ValidationError("html and previousPrompt must be strings")

    return GenerationRequest(
        prompt=prompt,
        html=html,
        previous_prompt=previous_prompt,
        provider=str(body.get("provider") or "auto"),
        model=str(body.get("model") or ""),
        address=address,
    )


# ---------------------------------------------------------------------------
# Policy steps
# ---------------------------------------------------------------------------
def _api_keys(cfg: config_mod.Config) -> Dict[str, str]:
    return {pid: cfg.api_key(pid) for pid in API_KEY_PROVIDERS}


def check_anonymous_usage(req: GenerationRequest, cfg: config_mod.Config, token: str,
                          counter: UsageCounter) -> str:
    """Gate tokenless hosted-inference use per address; returns the token to use."""
    if token or req.provider in API_KEY_PROVIDERS:
        return token
    count = counter.hit(req.address)
    print(f"[Sitesmith] Anonymous request #{count} from {req.address}")
    if count > cfg.max_requests_per_ip:
        raise RateLimited("Log In to continue using the service")
    return cfg.default_hf_token


def resolve_provider(req: GenerationRequest, cfg: config_mod.Config, token: str) -> ProviderDescriptor:
    """Apply the default-provider policy and the tokenless fallback to API-key backends."""
    api_keys = _api_keys(cfg)
    requested = get_provider(req.provider)
    if req.provider != "auto" and requested is None:
        print(f"[Sitesmith] Unknown provider '{req.provider}', using default")
    provider = requested if requested is not None else select_default_provider(token, api_keys)

    if not token and not provider.needs_api_key:
        fallback = fallback_api_key_provider(api_keys)
        if fallback is None:
            raise ProviderMisconfigured(
                "No API keys or tokens available for any provider. "
                "Please configure at least one provider."
            )
        print(f"[Sitesmith] No token for {provider.name}; switching to {fallback.name}")
        provider = fallback
    return provider


def check_token_budget(provider: ProviderDescriptor, model: str, tokens_used: int) -> None:
    """Reject requests whose estimate exceeds the provider ceiling (equal passes)."""
    if provider.id == "openai" or tokens_used <= provider.max_tokens:
        return
    if provider.id == "gemini":
        if tokens_used > GEMINI_MAX_INPUT_TOKENS:
            raise ContextTooLarge(
                f"Input context is too long. {model} allows {GEMINI_MAX_INPUT_TOKENS} max input tokens."
            )
        max_output = gemini_output_ceiling(model)
        if tokens_used > max_output:
            raise ContextTooLarge(
                f"Output limit exceeded. {model} allows {max_output} max output tokens."
            )
        return
    raise ContextTooLarge(
        f"Context is too long. {provider.name} allows {provider.max_tokens} max tokens."
    )


def build_messages(req: GenerationRequest, provider: ProviderDescriptor, model: str) -> List[Dict[str, str]]:
    """System prompt, previous prompt, current document, then the new prompt.

    Gemma models take no system role, so the instructions are prepended to
    the user prompt instead.
    """
    is_gemma = provider.id == "gemini" and "gemma" in model
    messages: List[Dict[str, str]] = []
    if not is_gemma:
        messages.append({"role": "system", "content": SYSTEM_PROMPT})
    if req.previous_prompt:
        messages.append({"role": "user", "content": req.previous_prompt})
    if req.html:
        messages.append({"role": "assistant", "content": f"The current code is: {req.html}."})
    if is_gemma:
        messages.append({"role": "user", "content": f"{SYSTEM_PROMPT}\n\n{req.prompt}"})
    else:
        messages.append({"role": "user", "content": req.prompt})
    return messages


def build_options(req: GenerationRequest, provider: ProviderDescriptor, model: str) -> CompletionOptions:
    options = CompletionOptions(model=model, messages=build_messages(req, provider, model))
    if not provider.needs_api_key:
        options.provider = provider.id
    if provider.id not in _NO_MAX_TOKENS:
        options.max_tokens = provider.max_tokens
    return options


def plan_generation(req: GenerationRequest, cfg: config_mod.Config, token: str = "",
                    counter: UsageCounter | None = None) -> GenerationPlan:
    """Run every policy step up to dispatch; raises a SitesmithError on rejection."""
    counter = counter if counter is not None else USAGE
    token = check_anonymous_usage(req, cfg, token, counter)
    provider = resolve_provider(req, cfg, token)
    model = resolve_model(provider, req.model)
    print(f"[Sitesmith] Generate: provider='{provider.id}', model='{model}', "
          f"tokens_used={req.tokens_used}")

    check_token_budget(provider, model, req.tokens_used)
    if provider.needs_api_key and not cfg.api_key(provider.id):
        raise ProviderMisconfigured(f"{provider.name} API key is not configured")

    return GenerationPlan(
        request=req,
        provider=provider,
        model=model,
        token=token,
        options=build_options(req, provider, model),
    )


# ---------------------------------------------------------------------------
# Dispatch and relay
# ---------------------------------------------------------------------------
def open_completion(plan: GenerationPlan, cfg: config_mod.Config,
                    client: OpenAICompatibleClient | None = None) -> Completion:
    """Issue the upstream request.

    Whole-document providers try one buffered call (cleaned and framed);
    if that fails the same options go out once more as a stream, preceded
    by the standard document head.
    """
    if client is None:
        client = get_client(plan.provider.id, cfg, plan.token)
    name = plan.provider.name
    if not plan.provider.whole_document:
        return StreamedCompletion(client.completion_stream(plan.options))

    try:
        text = client.completion(plan.options)
    except UpstreamError as exc:
        print(f"[Sitesmith] {name} buffered request failed: {exc}; falling back to streaming")
        return StreamedCompletion(client.completion_stream(plan.options), preamble=HTML_HEADER)
    if not text:
        raise UpstreamError(f"No response received from {name}")
    if config_mod.DEBUG_MODE:
        print(f"[DEBUG] {name} response length: {len(text)} chars")
    return BufferedCompletion(ensure_document_frame(clean_html_response(text)))


def relay_stream(completion: StreamedCompletion, provider_id: str) -> Iterator[str]:
    """Yield the chunks written to the client for a streamed completion.

    Stops pulling once the cumulative output holds a closing root tag (the
    truncating provider instead cuts its newest delta at the first one).
    Appends the footer when the stream ends without one.  Upstream failures
    mid-stream are logged and end the relay; the status is already sent.
    """
    stream = completion.stream
    complete = ""
    chunk_count = 0
    try:
        if completion.preamble:
            complete += completion.preamble
            yield completion.preamble
        while True:
            event = stream.next_event()
            if event.done:
                break
            chunk = event.text_delta
            if not chunk:
                continue
            chunk_count += 1
            if provider_id == TRUNCATING_PROVIDER:
                chunk = truncate_after_close(chunk)
                complete += chunk
                yield chunk
                if reached_end(chunk):
                    break
            else:
                complete += chunk
                yield chunk
                if reached_end(complete):
                    break
    except (UpstreamError, requests.RequestException) as exc:
        print(f"[Sitesmith] Upstream error mid-stream after {chunk_count} chunks: {exc}")
    finally:
        stream.close()

    if not reached_end(complete):
        yield HTML_FOOTER
    print(f"[Sitesmith] Relay finished: {chunk_count} chunks, {len(complete)} chars")


def completion_chunks(completion: Completion, provider_id: str) -> Iterator[str]:
    """Single dispatch path over both completion shapes."""
    if isinstance(completion, BufferedCompletion):
        yield completion.text
        return
    yield from relay_stream(completion, provider_id)


def record_into_workspace(chunks: Iterable[str], workspace: Workspace, prompt: str,
                          base_id: str, throttle_s: float = 0.3) -> Iterator[str]:
    """Pass chunks through while updating the live preview; record the result.

    A new Version is added only when the relay produced a complete document;
    otherwise (or when the client goes away) the generation is abandoned.
    """
    reconstructor = DocumentReconstructor(throttle_s=throttle_s)
    finished = False
    try:
        for chunk in chunks:
            pushed = reconstructor.feed(chunk)
            if pushed is not None:
                workspace.preview = pushed
            yield chunk
        finished = True
    finally:
        document = find_complete_document(reconstructor.buffer) if finished else None
        if document:
            version = workspace.finish_generation(prompt, document, base_id)
            print(f"[Sitesmith] Workspace {workspace.id}: recorded version {version.id}")
        else:
            workspace.abort_generation()


# ---------------------------------------------------------------------------
# CLI generation
# ---------------------------------------------------------------------------
def run_cli_generate(cfg: config_mod.Config, args) -> int:
    """CLI path: generate one document and write it to args.output."""
    body: Dict[str, Any] = {
        "prompt": args.prompt,
        "provider": args.provider,
        "model": args.model,
        "previousPrompt": args.previous_prompt,
    }
    if args.html is not None:
        body["html"] = args.html.read_text(encoding="utf-8")

    reconstructor = DocumentReconstructor(throttle_s=cfg.render_throttle_s)
    try:
        req = parse_request(body, address="cli")
        plan = plan_generation(req, cfg, token=cfg.hf_token)
        completion = open_completion(plan, cfg)
        for chunk in completion_chunks(completion, plan.provider.id):
            reconstructor.feed(chunk)
            sys.stderr.write(".")
            sys.stderr.flush()
    except SitesmithError as exc:
        payload, status = error_payload(exc)
        print(json.dumps({**payload, "status": status}, indent=2))
        return 2

    document = reconstructor.finalize()
    args.output.write_text(document, encoding="utf-8")
    print(json.dumps({"ok": True, "provider": plan.provider.id, "model": plan.model,
                      "output": str(args.output), "chars": len(document)}, indent=2))
    return 0
