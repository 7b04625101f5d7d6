#!/usr/bin/env python3
"""Sitesmith builder server.

Local Flask server that turns natural-language prompts into single-file
HTML pages: it dispatches each /generate request to one AI provider,
relays the output as it arrives, keeps a branching version history per
workspace, and publishes finished pages as static Hugging Face spaces.

Usage:
    # Server mode (default)
    export HF_TOKEN=hf_...          # or OPENAI_API_KEY / GEMINI_API_KEY
    python bin/sitesmith.py

    # One-shot generation
    python bin/sitesmith.py generate "a landing page for a bakery" -o bakery.html

Then open http://localhost:3000/
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request as flask_request, stream_with_context

# Ensure bin/ is on the path so sibling modules are importable
sys.path.insert(0, str(Path(__file__).resolve().parent))

import config as config_mod
from config import Config, load_config, parse_args
from document import DEFAULT_HTML, add_attribution, strip_attribution
from errors import GenerationInProgress, SitesmithError, ValidationError, error_payload
from history import NOTHING_TO_UNDO, Workspace, WorkspaceStore, utc_now_iso
from hub import HubClient, HubError, slugify_title, space_readme
from providers import API_KEY_PROVIDERS, PROVIDERS, describe_providers
from response import (
    USAGE,
    BufferedCompletion,
    UsageCounter,
    completion_chunks,
    open_completion,
    parse_request,
    plan_generation,
    record_into_workspace,
    run_cli_generate,
)

TOKEN_COOKIE = "hf_token"


def _client_address() -> str:
    """First forwarded address, then X-Real-IP, then the socket peer."""
    forwarded = flask_request.headers.get("X-Forwarded-For", "")
    if forwarded.split(",")[0].strip():
        return forwarded.split(",")[0].strip()
    return (flask_request.headers.get("X-Real-IP")
            or flask_request.remote_addr
            or "0.0.0.0")


def _user_token(cfg: Config) -> str:
    """Hosted-inference token: local HF_TOKEN, then cookie, then Bearer header."""
    if cfg.hf_token:
        return cfg.hf_token
    token = flask_request.cookies.get(TOKEN_COOKIE, "")
    if token:
        return token
    auth = flask_request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[len("Bearer "):].strip()
    return ""


def _fail(exc: Exception):
    body, status = error_payload(exc)
    return jsonify(body), status


def _json_object() -> Dict[str, Any]:
    """JSON body as a dict (empty when absent); ValidationError for any other JSON value."""
    body = flask_request.get_json(force=True, silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Invalid request body - must be a JSON object")
    return body


def _debug_body(body: Any) -> str:
    """Request body with html/prompt values truncated for logging."""
    if not isinstance(body, dict):
        return repr(body)[:200]
    shown = {}
    for key, value in body.items():
        if isinstance(value, str) and len(value) > 80:
            shown[key] = f"{value[:80]}... ({len(value)} chars)"
        else:
            shown[key] = value
    return repr(shown)


# ---------------------------------------------------------------------------
# Flask app factory
# ---------------------------------------------------------------------------
def create_app(cfg: Config, url_prefix: str = "", *,
               hub: Optional[HubClient] = None,
               workspaces: Optional[WorkspaceStore] = None,
               counter: Optional[UsageCounter] = None) -> Flask:
    """Create and configure the Sitesmith Flask application instance."""
    app = Flask(__name__, static_folder=None)
    hub = hub or HubClient(timeout_s=cfg.timeout_s)
    workspaces = workspaces if workspaces is not None else WorkspaceStore()
    counter = counter if counter is not None else USAGE
    app.config["WORKSPACES"] = workspaces

    @app.before_request
    def log_request():
        print(f"[Sitesmith] {utc_now_iso()} {flask_request.method} {flask_request.path}")
        if config_mod.DEBUG_MODE and flask_request.method == "POST":
            print(f"[DEBUG] body: {_debug_body(flask_request.get_json(silent=True))}")

    @app.after_request
    def add_cors_headers(response):
        """Apply CORS headers for allow-listed origins."""
        origin = flask_request.headers.get("Origin", "")
        if origin and origin in cfg.allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        return response

    def _workspace_or_404(workspace_id: str):
        workspace = workspaces.get(workspace_id)
        if workspace is None:
            return None, (jsonify({"ok": False, "message": "Workspace not found"}), 404)
        return workspace, None

    @app.route(url_prefix + "/health", methods=["GET"])
    def health():
        """Liveness plus which credentials are configured."""
        return jsonify({
            "ok": True,
            "timestamp": utc_now_iso(),
            "providers": {
                "huggingface": bool(cfg.hf_token or cfg.default_hf_token),
                **{pid: bool(cfg.api_key(pid)) for pid in API_KEY_PROVIDERS},
            },
        })

    @app.route(url_prefix + "/providers", methods=["GET"])
    def providers():
        """Expose non-secret provider metadata for UI model selectors."""
        api_keys = {pid: cfg.api_key(pid) for pid in API_KEY_PROVIDERS}
        token_available = bool(_user_token(cfg) or cfg.default_hf_token)
        return jsonify({"providers": describe_providers(api_keys, token_available)})

    @app.route(url_prefix + "/session", methods=["GET"])
    def session():
        """Current identity: local-use marker, Hub user info, or anonymous."""
        if cfg.hf_token:
            return jsonify({"preferred_username": "local-use", "isLocalUse": True})
        token = _user_token(cfg)
        if not token:
            return jsonify({"ok": True, "anonymous": True})
        try:
            return jsonify(hub.userinfo(token))
        except HubError as exc:
            resp = jsonify({"ok": False, "message": exc.message})
            resp.delete_cookie(TOKEN_COOKIE)
            return resp, 401

    @app.route(url_prefix + "/generate", methods=["POST", "OPTIONS"])
    def generate():
        """Generate or modify a page; streams text/plain or returns text/html."""
        if flask_request.method == "OPTIONS":
            return ("", 204)

        body = flask_request.get_json(force=True, silent=True)
        workspace: Optional[Workspace] = None
        if isinstance(body, dict) and body.get("workspace"):
            workspace = workspaces.get(str(body["workspace"]))
            if workspace is None:
                return jsonify({"ok": False, "message": "Workspace not found"}), 404

        try:
            req = parse_request(body, address=_client_address(), workspace=workspace)
            plan = plan_generation(req, cfg, token=_user_token(cfg), counter=counter)
        except SitesmithError as exc:
            print(f"[Sitesmith] Generate rejected ({exc.status}): {exc.message}")
            return _fail(exc)

        base_id = workspace.begin_generation(req.prompt) if workspace is not None else ""
        try:
            completion = open_completion(plan, cfg)
        except Exception as exc:
            if workspace is not None:
                workspace.abort_generation()
            print(f"[Sitesmith] Generate failed before output: {exc}")
            return _fail(exc)

        chunks = completion_chunks(completion, plan.provider.id)
        if workspace is not None:
            chunks = record_into_workspace(chunks, workspace, req.prompt, base_id,
                                           throttle_s=cfg.render_throttle_s)
        headers = {
            "X-Sitesmith-Provider": plan.provider.id,
            "X-Sitesmith-Model": plan.model,
        }
        if isinstance(completion, BufferedCompletion):
            return Response("".join(chunks), mimetype="text/html", headers=headers)

        headers.update({"Cache-Control": "no-cache", "X-Accel-Buffering": "no"})
        return Response(stream_with_context(chunks), mimetype="text/plain", headers=headers)

    @app.route(url_prefix + "/publish", methods=["POST", "OPTIONS"])
    def publish():
        """Create (or update) a static space holding the page and its prompts."""
        if flask_request.method == "OPTIONS":
            return ("", 204)

        try:
            body = _json_object()
        except ValidationError as exc:
            return _fail(exc)
        workspace = workspaces.get(str(body["workspace"])) if body.get("workspace") else None
        html = body.get("html") or (workspace.html if workspace is not None else "")
        prompts = body.get("prompts")
        if prompts is None:
            prompts = workspace.prompts if workspace is not None else []
        if not isinstance(prompts, list):
            return _fail(ValidationError("prompts must be a list"))
        title = body.get("title") or ""
        path = body.get("path") or ""
        if not all(isinstance(v, str) for v in (html, title, path)):
            return _fail(ValidationError("html, title and path must be strings"))
        if not html or (not path and not title):
            return _fail(ValidationError("Missing required fields"))

        token = _user_token(cfg)
        if not token:
            return jsonify({"ok": False, "openLogin": True, "message": "Unauthorized"}), 401

        try:
            readme = None
            repo_id = path
            if not repo_id:
                username = hub.whoami(token).get("name", "")
                name = slugify_title(title)
                repo_id = f"{username}/{name}"
                hub.create_space(name, token)
                readme = space_readme(name)
                print(f"[Sitesmith] Created space {repo_id}")

            files = [
                ("index.html", add_attribution(strip_attribution(html, repo_id, cfg.public_url),
                                              repo_id, cfg.public_url)),
                ("prompts.txt", "\n".join(str(p) for p in prompts)),
            ]
            if readme is not None:
                files.append(("README.md", readme))
            hub.upload_files(repo_id, files, token)
        except HubError as exc:
            print(f"[Sitesmith] Publish failed: {exc}")
            return jsonify({"ok": False, "message": exc.message}), 500

        print(f"[Sitesmith] Published {repo_id} ({len(files)} files)")
        return jsonify({"ok": True, "path": repo_id})

    @app.route(url_prefix + "/remix/<owner>/<project>", methods=["GET"])
    def remix(owner: str, project: str):
        """Fetch a published page (badge removed) as a new starting point."""
        repo_id = f"{owner}/{project}"
        user_token = _user_token(cfg)
        token = user_token or cfg.default_hf_token
        try:
            space = hub.space_info(repo_id, token)
            if not space or space.get("sdk") != "static" or space.get("private"):
                return jsonify({"ok": False, "message": "Space not found"}), 404
            html = hub.fetch_space_html(repo_id)
            if html is None:
                return jsonify({"ok": False, "message": "Space not found"}), 404

            username = None
            if user_token:
                try:
                    username = hub.userinfo(user_token).get("preferred_username")
                except HubError as exc:
                    print(f"[Sitesmith] Remix: user lookup failed: {exc}")
        except HubError as exc:
            return jsonify({"ok": False, "message": exc.message}), 500

        return jsonify({
            "ok": True,
            "html": strip_attribution(html, repo_id, cfg.public_url),
            "isOwner": username is not None and space.get("author") == username,
            "path": repo_id,
        })

    # ------------------------------------------------------------------
    # Workspaces (version history)
    # ------------------------------------------------------------------
    @app.route(url_prefix + "/workspaces", methods=["POST", "OPTIONS"])
    def create_workspace():
        """Start a workspace whose root version is the body html (or the default page)."""
        if flask_request.method == "OPTIONS":
            return ("", 204)
        try:
            body = _json_object()
        except ValidationError as exc:
            return _fail(exc)
        html = body.get("html") or DEFAULT_HTML
        if not isinstance(html, str):
            return _fail(ValidationError("html must be a string"))
        workspace = workspaces.create(html)
        print(f"[Sitesmith] Workspace {workspace.id} created")
        return jsonify({"ok": True, "workspace": workspace.to_dict()}), 201

    @app.route(url_prefix + "/workspaces/<workspace_id>/versions", methods=["GET"])
    def workspace_versions(workspace_id: str):
        workspace, missing = _workspace_or_404(workspace_id)
        if missing:
            return missing
        return jsonify({"ok": True, "workspace": workspace.to_dict()})

    @app.route(url_prefix + "/workspaces/<workspace_id>/undo", methods=["POST"])
    def workspace_undo(workspace_id: str):
        """Move to the parent version; a no-op at the root."""
        workspace, missing = _workspace_or_404(workspace_id)
        if missing:
            return missing
        try:
            version = workspace.undo()
        except GenerationInProgress as exc:
            return _fail(exc)
        if version is None:
            return jsonify({"ok": True, "undone": False, "message": NOTHING_TO_UNDO,
                            "current": workspace.tree.current_id})
        return jsonify({"ok": True, "undone": True, "current": version.id})

    @app.route(url_prefix + "/workspaces/<workspace_id>/select", methods=["POST"])
    def workspace_select(workspace_id: str):
        """Make any version current, wherever it sits in the tree."""
        workspace, missing = _workspace_or_404(workspace_id)
        if missing:
            return missing
        try:
            body = _json_object()
        except ValidationError as exc:
            return _fail(exc)
        version_id = body.get("version_id")
        if not version_id or not isinstance(version_id, str):
            return _fail(ValidationError("Missing required fields: version_id"))
        if version_id not in workspace.tree:
            return jsonify({"ok": False, "message": "Version not found"}), 404
        try:
            version = workspace.select(version_id)
        except GenerationInProgress as exc:
            return _fail(exc)
        return jsonify({"ok": True, "current": version.id, "label": version.label})

    @app.route(url_prefix + "/workspaces/<workspace_id>/preview", methods=["GET"])
    def workspace_preview(workspace_id: str):
        """Latest live render: the provisional document while generating."""
        workspace, missing = _workspace_or_404(workspace_id)
        if missing:
            return missing
        resp = Response(workspace.preview, mimetype="text/html")
        resp.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
        return resp

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main(argv=None) -> int:
    """Entrypoint for server startup and one-shot CLI generation."""
    args = parse_args(argv)
    config_mod.DEBUG_MODE = args.debug or config_mod.DEBUG_MODE
    cfg = load_config()

    if args.cmd == "generate":
        return run_cli_generate(cfg, args)

    # Default: serve
    url_prefix = os.environ.get("SITESMITH_URL_PREFIX", "").strip().rstrip("/")

    print(f"\n{'='*60}")
    print("  Sitesmith AI Website Builder")
    print(f"{'='*60}")
    print(f"  Bind       : {cfg.bind_host}:{cfg.bind_port}")
    if url_prefix:
        print(f"  URL prefix : {url_prefix}")
    print("  Providers  :")
    for key, desc in PROVIDERS.items():
        if desc.needs_api_key:
            status = "ok" if cfg.api_key(key) else "NO KEY"
        else:
            status = "ok" if (cfg.hf_token or cfg.default_hf_token) else "login"
        print(f"    {key}({status}, max_tokens={desc.max_tokens})")
    print(f"  Local token: {'HF_TOKEN' if cfg.hf_token else 'off'}")
    print(f"  Anon limit : {cfg.max_requests_per_ip} requests/address")
    print(f"  Config YAML: {config_mod._CONFIG_YAML_STATUS}")
    print(f"  Debug      : {'ON' if config_mod.DEBUG_MODE else 'off'}")
    print(f"  UI         : http://{cfg.bind_host}:{cfg.bind_port}{url_prefix}/")
    print(f"{'='*60}\n")

    app = create_app(cfg, url_prefix=url_prefix)
    app.run(host=cfg.bind_host, port=cfg.bind_port, debug=False, threaded=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
