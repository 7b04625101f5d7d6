"""Sitesmith configuration: config.yaml loading, credentials, mode flags, CLI args."""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict


# ---------------------------------------------------------------------------
# Configuration dataclass
# ---------------------------------------------------------------------------
@dataclass
class Config:
    """Runtime configuration for the builder server process."""

    bind_host: str = "127.0.0.1"  # Bind address for browser/UI traffic.
    bind_port: int = 3000  # Local port for browser/UI traffic.
    timeout_s: float = 120.0  # Network timeout for provider requests.
    max_requests_per_ip: int = 2  # Anonymous generations allowed per client address.
    render_throttle_s: float = 0.3  # Minimum gap between provisional preview pushes.
    hf_token: str = ""  # Local-use hosted-inference token (overrides user tokens).
    default_hf_token: str = ""  # Shared fallback token for anonymous users.
    openai_api_key: str = ""
    gemini_api_key: str = ""
    public_url: str = "http://localhost:3000"  # Base URL used in the attribution badge.
    allowed_origins: set = field(default_factory=lambda: {
        "http://127.0.0.1:3000", "http://localhost:3000"
    })

    def api_key(self, provider_id: str) -> str:
        """Return the API key configured for an API-key backend ("" if absent)."""
        if provider_id == "openai":
            return self.openai_api_key
        if provider_id == "gemini":
            return self.gemini_api_key
        return ""


def _env_bool(name: str, default: bool) -> bool:
    """Read a permissive boolean env var with a default fallback."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# ---------------------------------------------------------------------------
# config.yaml loader
# ---------------------------------------------------------------------------
_CONFIG_YAML_STATUS = ""  # human-readable load status for startup banner


def _load_config_yaml(project_root: Path | None = None) -> Dict[str, Any]:
    """Load config.yaml from the project directory.

    *project_root* defaults to the parent of the bin/ directory (i.e. the
    repo root).
    """
    global _CONFIG_YAML_STATUS
    import yaml

    if project_root is None:
        project_root = Path(__file__).resolve().parent.parent
    cfg_path = project_root / "config.yaml"
    if not cfg_path.exists():
        _CONFIG_YAML_STATUS = f"not found at {cfg_path}"
        return {}
    try:
        with open(cfg_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        _CONFIG_YAML_STATUS = f"parse error: {exc}"
        return {}
    if not isinstance(data, dict):
        _CONFIG_YAML_STATUS = f"not a mapping at {cfg_path}"
        return {}
    if data:
        _CONFIG_YAML_STATUS = f"loaded ({len(data)} keys) from {cfg_path}"
    else:
        _CONFIG_YAML_STATUS = f"empty at {cfg_path}"
    return data


def _yaml_secret(cfg_yaml: Dict[str, Any], provider: str, *keys: str) -> str:
    """Pull the first set providers.<provider>.<key> out of parsed YAML."""
    section = (cfg_yaml.get("providers") or {}).get(provider) or {}
    if not isinstance(section, dict):
        return ""
    for key in keys or ("api_key",):
        if section.get(key):
            return str(section[key])
    return ""


def load_config(cfg_yaml: Dict[str, Any] | None = None) -> Config:
    """Build Config from environment variables, falling back to config.yaml values.

    Environment variables always win; YAML fills in what the environment
    leaves unset.
    """
    if cfg_yaml is None:
        cfg_yaml = _load_config_yaml()
    server = cfg_yaml.get("server") or {}
    limits = cfg_yaml.get("limits") or {}

    port = int(os.environ.get("SITESMITH_BIND_PORT") or os.environ.get("APP_PORT")
               or server.get("port", 3000))
    allowed_origins_raw = os.environ.get(
        "SITESMITH_ALLOWED_ORIGINS",
        f"http://127.0.0.1:{port},http://localhost:{port}",
    )
    allowed_origins = {v.strip() for v in allowed_origins_raw.split(",") if v.strip()}

    return Config(
        bind_host=os.environ.get("SITESMITH_BIND_HOST", server.get("host", "127.0.0.1")),
        bind_port=port,
        timeout_s=float(os.environ.get("SITESMITH_TIMEOUT_S", server.get("timeout_s", 120))),
        max_requests_per_ip=int(os.environ.get(
            "SITESMITH_MAX_REQUESTS_PER_IP", limits.get("max_requests_per_ip", 2))),
        render_throttle_s=float(os.environ.get(
            "SITESMITH_RENDER_THROTTLE_S", limits.get("render_throttle_s", 0.3))),
        hf_token=os.environ.get("HF_TOKEN") or _yaml_secret(cfg_yaml, "huggingface", "token"),
        default_hf_token=(os.environ.get("DEFAULT_HF_TOKEN")
                          or _yaml_secret(cfg_yaml, "huggingface", "default_token")),
        openai_api_key=os.environ.get("OPENAI_API_KEY") or _yaml_secret(cfg_yaml, "openai"),
        gemini_api_key=os.environ.get("GEMINI_API_KEY") or _yaml_secret(cfg_yaml, "gemini"),
        public_url=os.environ.get("SITESMITH_PUBLIC_URL",
                                  server.get("public_url", f"http://localhost:{port}")).rstrip("/"),
        allowed_origins=allowed_origins,
    )


# ---------------------------------------------------------------------------
# Module-level mode flags (set by main() at startup)
# ---------------------------------------------------------------------------
DEBUG_MODE: bool = _env_bool("SITESMITH_DEBUG", False)


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------
def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments for serve/generate execution modes."""
    parser = argparse.ArgumentParser(description="Sitesmith AI website builder")
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug logging")
    sub = parser.add_subparsers(dest="cmd")
    sub.add_parser("serve", help="Run the Flask builder server (default)")
    gen = sub.add_parser("generate", help="Generate one page from a prompt")
    gen.add_argument("prompt", help="what to build")
    gen.add_argument("--provider", default="auto", help="provider id or 'auto'")
    gen.add_argument("--model", default="", help="model id (API-key providers only)")
    gen.add_argument("--html", type=Path, default=None,
                     help="existing document to modify")
    gen.add_argument("--previous-prompt", default="", help="prompt that produced --html")
    gen.add_argument("-o", "--output", type=Path, default=Path("index.html"),
                     help="where to write the generated document")
    return parser.parse_args(argv)
