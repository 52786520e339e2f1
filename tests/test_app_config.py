import json
import os
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

from gpt_cli.app_config import (
    DEFAULT_CONFIG,
    load_json_config,
    parse_app_config,
    resolve_runtime_env,
    save_default_config,
)
from gpt_cli.models import ModelIdentity, SamplingParams
from gpt_cli.personas import build_persona, persona_names


class ParseAppConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        config = parse_app_config({})
        self.assertEqual("openai", config.provider_name)
        self.assertEqual(ModelIdentity("gpt-3.5-turbo", 4096), config.model_identity())
        self.assertEqual(SamplingParams(), config.sampling())
        self.assertTrue(config.stream)
        self.assertTrue(config.save)
        self.assertIsNone(config.cache_dir)
        self.assertIsNone(config.api_key)
        self.assertIsNone(config.log_consumers)

    def test_explicit_values(self) -> None:
        config = parse_app_config({
            "Provider": " Anthropic ",
            "Model": "my-model",
            "TokenLimit": "2048",
            "Temperature": "0.5",
            "TopP": 0.8,
            "Stream": "off",
            "Save": "no",
            "CacheDir": "/tmp/chats",
        })
        self.assertEqual("anthropic", config.provider_name)
        self.assertEqual(ModelIdentity("my-model", 2048), config.model_identity())
        self.assertEqual(SamplingParams(temperature=0.5, top_p=0.8), config.sampling())
        self.assertFalse(config.stream)
        self.assertFalse(config.save)
        self.assertEqual("/tmp/chats", config.cache_dir)

    def test_known_model_limit_is_used(self) -> None:
        self.assertEqual(128000, parse_app_config({"Model": "gpt-4o"}).model_identity().token_limit)


class ConfigFileTests(unittest.TestCase):
    def test_default_config_round_trip(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            config_file = Path(tmp) / "nested" / "config.json"
            save_default_config(config_file)
            self.assertEqual(DEFAULT_CONFIG, json.loads(config_file.read_text()))
            with patch("gpt_cli.app_config.Path.cwd", return_value=Path(tmp)):
                self.assertEqual(DEFAULT_CONFIG, load_json_config(config_file))

    def test_working_directory_config_wins(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "config.json").write_text(json.dumps({"Model": "local"}))
            user_file = Path(tmp) / "user.json"
            user_file.write_text(json.dumps({"Model": "user"}))
            with patch("gpt_cli.app_config.Path.cwd", return_value=Path(tmp)):
                self.assertEqual({"Model": "local"}, load_json_config(user_file))

    def test_no_config_anywhere(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with patch("gpt_cli.app_config.Path.cwd", return_value=Path(tmp)):
                self.assertEqual({}, load_json_config(Path(tmp) / "absent.json"))


class RuntimeEnvTests(unittest.TestCase):
    def test_env_var_beats_config_key(self) -> None:
        with patch.dict(os.environ, {"OPENAI_API_KEY": "from-env"}, clear=True):
            env = resolve_runtime_env("openai", "from-config")
        self.assertEqual("from-env", env.provider_api_key)
        self.assertEqual("OPENAI_API_KEY", env.provider_env_var)

    def test_config_key_is_fallback(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            env = resolve_runtime_env("anthropic", "from-config")
        self.assertEqual("from-config", env.provider_api_key)
        self.assertEqual("ANTHROPIC_API_KEY", env.provider_env_var)


class PersonaTests(unittest.TestCase):
    def test_persona_prompt_includes_cutoff_and_time(self) -> None:
        now = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        persona = build_persona("Joi", now=now)
        self.assertTrue(persona.system_prompt.startswith("You are Joi."))
        self.assertIn("September 2021", persona.system_prompt)
        self.assertIn("2024-01-02T03:04:05+00:00", persona.system_prompt)

    def test_unknown_persona(self) -> None:
        with self.assertRaises(ValueError):
            build_persona("hal")

    def test_persona_names(self) -> None:
        self.assertEqual(["default", "joi"], persona_names())


if __name__ == "__main__":
    unittest.main()
