"""Sitesmith error taxonomy.

Every error that can end a /generate request before the body starts maps to
one HTTP status and, where the browser should react, one client flag:

  ValidationError          400                      missing prompt / bad body
  RateLimited              429  openLogin           anonymous quota used up
  ProviderMisconfigured    400                      credential not configured
  ContextTooLarge          400  openSelectProvider  prompt + history too long
  UpstreamBillingExceeded  402  openProModal        upstream credits exhausted
  UpstreamError            500                      upstream HTTP/network/parse failure
  GenerationInProgress     409                      history change during generation

Once the first body byte has been written none of these can change the
status; the relay logs and closes the stream instead.
"""

from __future__ import annotations

from typing import Any, Dict, Tuple

BILLING_MARKER = "exceeded your monthly included credits"


class SitesmithError(Exception):
    """Base class: carries the HTTP status and optional client flag."""

    status: int = 500
    flag: str | None = None

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SitesmithError):
    status = 400


class RateLimited(SitesmithError):
    status = 429
    flag = "openLogin"


class ProviderMisconfigured(SitesmithError):
    status = 400


class ContextTooLarge(SitesmithError):
    status = 400
    flag = "openSelectProvider"


class UpstreamBillingExceeded(SitesmithError):
    status = 402
    flag = "openProModal"


class UpstreamError(SitesmithError):
    """Non-success upstream status, missing body, or a broken stream."""

    status = 500

    def __init__(self, message: str, *, http_status: int | None = None, body: str = ""):
        super().__init__(message)
        self.http_status = http_status
        self.body = body


class GenerationInProgress(SitesmithError):
    status = 409


def classify_upstream(exc: Exception) -> Exception:
    """Promote an upstream failure mentioning exhausted credits to a 402."""
    if isinstance(exc, UpstreamBillingExceeded):
        return exc
    if BILLING_MARKER in str(exc):
        return UpstreamBillingExceeded(str(exc))
    return exc


def error_payload(exc: Exception) -> Tuple[Dict[str, Any], int]:
    """Map any exception to a ({ok, message, flag?}, status) pair."""
    exc = classify_upstream(exc)
    if isinstance(exc, SitesmithError):
        body: Dict[str, Any] = {"ok": False, "message": exc.message}
        if exc.flag:
            body[exc.flag] = True
        return body, exc.status
    message = str(exc) or "An error occurred while processing your request."
    return {"ok": False, "message": message}, 500
