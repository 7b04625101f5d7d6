"""Sitesmith document reconstruction: turn partial model output into renderable HTML.

Generated text arrives as deltas that may be wrapped in Markdown fences,
repeat the doctype, or stop halfway through the markup.  This module:
  - finds the authoritative complete document in a cumulative buffer
  - force-closes a partial document for provisional rendering
  - wraps plain text in a minimal skeleton so something always renders
  - throttles provisional preview pushes (DocumentReconstructor)
  - cleans whole-document responses (fences, duplicate doctype/<html>)
  - strips and re-inserts the published-site attribution badge

Every feed rescans the full buffer.  That is quadratic in the number of
deltas, which is fine for single-page documents.
"""

from __future__ import annotations

import html as html_lib
import re
import time
from typing import Callable, Optional

DOCTYPE = "<!doctype html>"
CLOSE_HTML = "</html>"

# Sent ahead of streamed output for whole-document providers, and prepended to
# buffered output that lacks a doctype.
HTML_HEADER = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Sitesmith Generated Page</title>
    <script src="https://cdn.tailwindcss.com"></script>
"""

HTML_FOOTER = """
</body>
</html>"""

_PLAIN_TEXT_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <script src="https://cdn.tailwindcss.com"></script>
  <title>AI Response</title>
</head>
<body>
  {body}
</body>
</html>"""

DEFAULT_HTML = """<!DOCTYPE html>
<html>
  <head>
    <title>My app</title>
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <meta charset="utf-8">
    <script src="https://cdn.tailwindcss.com"></script>
  </head>
  <body class="flex justify-center items-center h-screen overflow-hidden bg-white font-sans text-center px-6">
    <div class="w-full">
      <p class="text-4xl lg:text-6xl font-bold">Describe the site you want.</p>
      <p class="text-lg text-gray-500 mt-4">Type a prompt below and watch it build.</p>
    </div>
  </body>
</html>
"""

_COMPLETE_RE = re.compile(r"<!DOCTYPE html>[\s\S]*</html>", re.IGNORECASE)
_PARTIAL_RES = (
    re.compile(r"<!DOCTYPE html>[\s\S]*", re.IGNORECASE),
    re.compile(r"<html[\s\S]*", re.IGNORECASE),
    re.compile(r"<head[\s\S]*", re.IGNORECASE),
    re.compile(r"<body[\s\S]*", re.IGNORECASE),
)


# ---------------------------------------------------------------------------
# Buffer scanning
# ---------------------------------------------------------------------------
def find_complete_document(buffer: str) -> Optional[str]:
    """Doctype through the last closing root tag, or None."""
    match = _COMPLETE_RE.search(buffer)
    return match.group(0) if match else None


def find_partial_document(buffer: str) -> Optional[str]:
    """Best partial-document start: doctype, then <html, <head, <body."""
    for pattern in _PARTIAL_RES:
        match = pattern.search(buffer)
        if match:
            return match.group(0)
    return None


def close_partial_document(partial: str) -> str:
    """Force-close a partial document so it renders without half-open markup."""
    doc = partial
    if CLOSE_HTML not in doc:
        doc += "\n" + CLOSE_HTML
    if "</body>" not in doc and "<body" in doc:
        doc = doc.replace(CLOSE_HTML, "</body>\n" + CLOSE_HTML, 1)
    return doc


def wrap_plain_text(text: str) -> str:
    """Wrap non-HTML output in a minimal document skeleton."""
    return _PLAIN_TEXT_TEMPLATE.format(body=text)


def reached_end(buffer: str) -> bool:
    """True once the cumulative output contains a closing root tag."""
    return CLOSE_HTML in buffer


def truncate_after_close(delta: str) -> str:
    """Drop everything after the first closing root tag in *delta*."""
    idx = delta.find(CLOSE_HTML)
    if idx < 0:
        return delta
    return delta[:idx + len(CLOSE_HTML)]


# ---------------------------------------------------------------------------
# Incremental reconstruction
# ---------------------------------------------------------------------------
class DocumentReconstructor:
    """Accumulates streamed deltas and decides what the live preview shows.

    ``feed`` returns the string to push to the preview, or None when nothing
    should be pushed (throttled, or nothing renderable yet).  The cumulative
    buffer is never modified by force-closing.
    """

    def __init__(self, throttle_s: float = 0.3, clock: Callable[[], float] = time.monotonic):
        self.buffer = ""
        self.render = ""  # Last string pushed to the preview.
        self.complete = False
        self._throttle_s = throttle_s
        self._clock = clock
        self._last_push: float | None = None

    def feed(self, delta: str, now: float | None = None) -> Optional[str]:
        if not delta:
            return None
        self.buffer += delta

        complete = find_complete_document(self.buffer)
        if complete is not None:
            self.complete = True
            self.render = complete
            return complete

        partial = find_partial_document(self.buffer)
        if partial is not None:
            candidate = close_partial_document(partial)
        elif self.buffer:
            candidate = wrap_plain_text(self.buffer)
        else:
            return None

        if now is None:
            now = self._clock()
        if self._last_push is not None and now - self._last_push < self._throttle_s:
            return None
        self._last_push = now
        self.render = candidate
        return candidate

    def finalize(self) -> str:
        """Best document for the accumulated buffer, ignoring the throttle."""
        complete = find_complete_document(self.buffer)
        if complete is not None:
            return complete
        partial = find_partial_document(self.buffer)
        if partial is not None:
            return close_partial_document(partial)
        if self.buffer:
            return wrap_plain_text(self.buffer)
        return ""


# ---------------------------------------------------------------------------
# Whole-document cleanup
# ---------------------------------------------------------------------------
_LEADING_FENCE_RE = re.compile(r"^```(\w*)$", re.MULTILINE)


def clean_markdown_code_blocks(content: str) -> str:
    """Strip Markdown code fences from a whole-document adapter response."""
    stripped = content.strip()
    if stripped.startswith("```"):
        if stripped.startswith("```html") or _LEADING_FENCE_RE.match(stripped):
            first_newline = content.find("\n")
            if first_newline != -1:
                content = content[first_newline + 1:]
        if "```" in content:
            content = re.sub(r"```\s*$", "", content)

    content = content.replace("```html\n", "")
    content = content.replace("```\n", "")
    content = re.sub(r"^```", "", content, flags=re.MULTILINE)
    content = re.sub(r"```$", "", content, flags=re.MULTILINE)
    return content


def _drop_second_occurrence(text: str, needle: str, *, through_gt: bool = False) -> str:
    """Remove the second case-insensitive occurrence of *needle*.

    With *through_gt* the removal extends to the end of that tag.
    """
    lowered = text.lower()
    first = lowered.find(needle)
    if first < 0 or first == lowered.rfind(needle):
        return text
    second = lowered.find(needle, first + 1)
    if through_gt:
        end = text.find(">", second) + 1
        if end == 0:
            end = second + len(needle)
    else:
        end = second + len(needle)
    return text[:second] + text[end:]


def clean_html_response(text: str) -> str:
    """Cleanup pass for buffered responses: fences, duplicate doctype and <html>."""
    if not text:
        return text
    cleaned = text
    if cleaned.strip().startswith("```html"):
        first_newline = cleaned.find("\n")
        if first_newline != -1:
            cleaned = cleaned[first_newline + 1:]
    cleaned = cleaned.replace("```html", "")
    cleaned = cleaned.replace("```", "")
    cleaned = _drop_second_occurrence(cleaned, DOCTYPE)
    cleaned = _drop_second_occurrence(cleaned, "<html", through_gt=True)
    return cleaned


def ensure_document_frame(text: str) -> str:
    """Prepend the standard head when there is no doctype; close body/html when open."""
    framed = text
    if not framed.strip().lower().startswith(DOCTYPE):
        framed = HTML_HEADER + framed
    if CLOSE_HTML not in framed:
        framed += HTML_FOOTER
    return framed


# ---------------------------------------------------------------------------
# Attribution badge for published sites
# ---------------------------------------------------------------------------
def attribution_tag(repo_id: str, base_url: str = "http://localhost:3000") -> str:
    """Fixed "Made with Sitesmith" badge pointing back at the remix URL for *repo_id*."""
    base = html_lib.escape(base_url.rstrip("/"), quote=True)
    repo = html_lib.escape(repo_id, quote=True)
    return (
        '<p style="border-radius: 8px; text-align: center; font-size: 12px; color: #fff; '
        'margin-top: 16px;position: fixed; left: 8px; bottom: 8px; z-index: 10; '
        'background: rgba(0, 0, 0, 0.8); padding: 4px 8px;">Made with '
        f'<a href="{base}" style="color: #fff;text-decoration: underline;" target="_blank" >Sitesmith</a>'
        f' - <a href="{base}?remix={repo}" style="color: #fff;text-decoration: underline;" '
        'target="_blank" >Remix</a></p>'
    )


def strip_attribution(document: str, repo_id: str, base_url: str = "http://localhost:3000") -> str:
    return document.replace(attribution_tag(repo_id, base_url), "")


def add_attribution(document: str, repo_id: str, base_url: str = "http://localhost:3000") -> str:
    """Insert the badge before the first </body> (no-op when there is none)."""
    return document.replace("</body>", attribution_tag(repo_id, base_url) + "</body>", 1)
