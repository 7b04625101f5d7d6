"""Sitesmith hosted-space client: identity lookup, publish and remix over the Hub HTTP API.

Thin wrapper around the Hugging Face Hub REST endpoints the builder needs;
nothing here retries or resumes.
"""

from __future__ import annotations

import base64
import json
import random
import re
from typing import Any, Dict, List, Optional, Tuple

import requests

import config as config_mod
from errors import UpstreamError

HUB_URL = "https://huggingface.co"

COLORS = ["red", "yellow", "green", "blue", "indigo", "purple", "pink", "gray"]


class HubError(UpstreamError):
    """A Hub API call failed."""


def slugify_title(title: str) -> str:
    """Lowercase, non-alphanumerics collapsed to single dashes, capped at 96 chars."""
    parts = re.sub(r"[^a-z0-9]+", "-", (title or "").lower()).split("-")
    return "-".join(p for p in parts if p)[:96]


def space_readme(title: str) -> str:
    """Static-space README front matter for a newly created space."""
    color_from = random.choice(COLORS)
    color_to = random.choice(COLORS)
    return f"""---
title: {title}
emoji: 🐳
colorFrom: {color_from}
colorTo: {color_to}
sdk: static
pinned: false
tags:
  - sitesmith
---

Check out the configuration reference at https://huggingface.co/docs/hub/spaces-config-reference"""


class HubClient:
    """Minimal Hub REST client (one instance per server)."""

    def __init__(self, base_url: str = HUB_URL, *, timeout_s: float = 30.0,
                 session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._http = session or requests.Session()

    def _request(self, method: str, path: str, token: str = "", **kwargs) -> requests.Response:
        headers = kwargs.pop("headers", {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        url = f"{self.base_url}{path}"
        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] Hub {method} {url}")
        try:
            return self._http.request(method, url, headers=headers, timeout=self.timeout_s, **kwargs)
        except requests.RequestException as exc:
            raise HubError(f"Hub request failed: {exc}") from exc

    def _json(self, resp: requests.Response, what: str) -> Dict[str, Any]:
        if resp.status_code >= 400:
            raise HubError(f"{what} failed ({resp.status_code}): {resp.text[:500]}",
                           http_status=resp.status_code, body=resp.text[:500])
        try:
            return resp.json()
        except ValueError as exc:
            raise HubError(f"{what} returned invalid JSON") from exc

    # -- identity ----------------------------------------------------------
    def whoami(self, token: str) -> Dict[str, Any]:
        return self._json(self._request("GET", "/api/whoami-v2", token), "whoami")

    def userinfo(self, token: str) -> Dict[str, Any]:
        return self._json(self._request("GET", "/oauth/userinfo", token), "userinfo")

    # -- spaces ------------------------------------------------------------
    def space_info(self, repo_id: str, token: str = "") -> Optional[Dict[str, Any]]:
        """Space metadata, or None when the space does not exist / is hidden."""
        resp = self._request("GET", f"/api/spaces/{repo_id}", token)
        if resp.status_code in (401, 403, 404):
            return None
        return self._json(resp, "space info")

    def fetch_space_html(self, repo_id: str) -> Optional[str]:
        resp = self._request("GET", f"/spaces/{repo_id}/raw/main/index.html")
        if resp.status_code >= 400:
            return None
        return resp.text

    def create_space(self, name: str, token: str, organization: str | None = None) -> None:
        """Create a public static space under the token's user (or *organization*)."""
        payload: Dict[str, Any] = {"type": "space", "name": name, "sdk": "static", "private": False}
        if organization:
            payload["organization"] = organization
        self._json(self._request("POST", "/api/repos/create", token, json=payload), "create space")

    def upload_files(self, repo_id: str, files: List[Tuple[str, str]], token: str,
                     summary: str = "Update from Sitesmith") -> Dict[str, Any]:
        """Commit (path, text) pairs to the space's main branch in one commit."""
        lines = [json.dumps({"key": "header", "value": {"summary": summary, "description": ""}})]
        for path, content in files:
            lines.append(json.dumps({
                "key": "file",
                "value": {
                    "path": path,
                    "encoding": "base64",
                    "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
                },
            }))
        resp = self._request(
            "POST", f"/api/spaces/{repo_id}/commit/main", token,
            data="\n".join(lines).encode("utf-8"),
            headers={"Content-Type": "application/x-ndjson"},
        )
        return self._json(resp, "upload")
