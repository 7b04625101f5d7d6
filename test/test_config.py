#!/usr/bin/env python3
"""Tests for configuration loading (env over config.yaml) and CLI parsing."""

import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "bin"))

import config as config_mod
from config import Config, _load_config_yaml, load_config, parse_args

_ENV_KEYS = (
    "SITESMITH_BIND_PORT", "APP_PORT", "SITESMITH_ALLOWED_ORIGINS", "SITESMITH_BIND_HOST",
    "SITESMITH_TIMEOUT_S", "SITESMITH_MAX_REQUESTS_PER_IP", "SITESMITH_RENDER_THROTTLE_S",
    "SITESMITH_PUBLIC_URL", "HF_TOKEN", "DEFAULT_HF_TOKEN", "OPENAI_API_KEY", "GEMINI_API_KEY",
)


def _clean_env(**values):
    """Environment with every Sitesmith variable removed, plus *values*."""
    env = {k: v for k, v in os.environ.items() if k not in _ENV_KEYS}
    env.update(values)
    return env


class TestLoadConfig(unittest.TestCase):

    def test_defaults(self):
        with patch.dict(os.environ, _clean_env(), clear=True):
            cfg = load_config({})
        self.assertEqual(cfg.bind_port, 3000)
        self.assertEqual(cfg.max_requests_per_ip, 2)
        self.assertEqual(cfg.render_throttle_s, 0.3)
        self.assertEqual(cfg.hf_token, "")
        self.assertIn("http://localhost:3000", cfg.allowed_origins)

    def test_yaml_fills_unset_values(self):
        cfg_yaml = {
            "server": {"port": 8080, "public_url": "https://builder.example/"},
            "limits": {"max_requests_per_ip": 5},
            "providers": {
                "huggingface": {"default_token": "shared"},
                "gemini": {"api_key": "g-yaml"},
            },
        }
        with patch.dict(os.environ, _clean_env(), clear=True):
            cfg = load_config(cfg_yaml)
        self.assertEqual(cfg.bind_port, 8080)
        self.assertEqual(cfg.max_requests_per_ip, 5)
        self.assertEqual(cfg.default_hf_token, "shared")
        self.assertEqual(cfg.gemini_api_key, "g-yaml")
        self.assertEqual(cfg.public_url, "https://builder.example")
        self.assertIn("http://localhost:8080", cfg.allowed_origins)

    def test_env_wins_over_yaml(self):
        cfg_yaml = {"providers": {"openai": {"api_key": "o-yaml"}}, "limits": {"max_requests_per_ip": 5}}
        env = _clean_env(OPENAI_API_KEY="o-env", SITESMITH_MAX_REQUESTS_PER_IP="1", APP_PORT="4000")
        with patch.dict(os.environ, env, clear=True):
            cfg = load_config(cfg_yaml)
        self.assertEqual(cfg.openai_api_key, "o-env")
        self.assertEqual(cfg.max_requests_per_ip, 1)
        self.assertEqual(cfg.bind_port, 4000)

    def test_api_key_lookup(self):
        cfg = Config(openai_api_key="o", gemini_api_key="g")
        self.assertEqual(cfg.api_key("openai"), "o")
        self.assertEqual(cfg.api_key("gemini"), "g")
        self.assertEqual(cfg.api_key("novita"), "")


class TestConfigYaml(unittest.TestCase):

    def test_missing_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            self.assertEqual(_load_config_yaml(Path(tmp)), {})
            self.assertIn("not found", config_mod._CONFIG_YAML_STATUS)

    def test_parse_error(self):
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "config.yaml").write_text("server: [unclosed\n")
            self.assertEqual(_load_config_yaml(Path(tmp)), {})
            self.assertIn("parse error", config_mod._CONFIG_YAML_STATUS)

    def test_loaded(self):
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "config.yaml").write_text("server:\n  port: 9000\n")
            self.assertEqual(_load_config_yaml(Path(tmp)), {"server": {"port": 9000}})
            self.assertIn("loaded", config_mod._CONFIG_YAML_STATUS)


class TestParseArgs(unittest.TestCase):

    def test_serve_is_default(self):
        args = parse_args([])
        self.assertIsNone(args.cmd)
        self.assertFalse(args.debug)

    def test_generate(self):
        args = parse_args(["--debug", "generate", "a cafe", "--provider", "gemini", "-o", "out.html"])
        self.assertTrue(args.debug)
        self.assertEqual(args.cmd, "generate")
        self.assertEqual(args.prompt, "a cafe")
        self.assertEqual(args.provider, "gemini")
        self.assertEqual(args.output, Path("out.html"))


if __name__ == "__main__":
    unittest.main()
