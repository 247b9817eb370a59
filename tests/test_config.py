"""Tests for configuration loading and validation."""

import json

import pytest
import yaml

from persona_context.config import DEFAULT_PLANS, load_config, validate_config


class TestLoadConfig:
    def test_load_defaults(self):
        config = load_config(config_dict={})
        assert config.context.max_pairs == 5
        assert config.context.window_token_budget == 8_000
        assert config.summarization.interval == 15
        assert config.summarization.model == "mistralai/mistral-7b-instruct"
        assert config.chat.generation_timeout == 120.0
        assert config.default_plan == "Guest Pass"
        assert set(config.plans) == set(DEFAULT_PLANS)
        assert config.plans["Guest Pass"].credit_cost == 8
        assert config.plans["True Fan"].credit_cost == 23

    def test_load_from_dict(self):
        config = load_config(config_dict={
            "context": {"max_pairs": 3},
            "summarization": {"interval": 10},
            "plans": {"Basic": {"model": "m", "credit_cost": 2, "max_context_tokens": 4000}},
            "default_plan": "Basic",
        })
        assert config.context.max_pairs == 3
        assert config.summarization.interval == 10
        assert list(config.plans) == ["Basic"]
        assert config.plans["Basic"].max_context_tokens == 4000

    def test_load_from_yaml_file(self, tmp_path):
        path = tmp_path / "persona-context.yaml"
        path.write_text(yaml.dump({"context": {"window_token_budget": 5000}}))
        config = load_config(config_path=path)
        assert config.context.window_token_budget == 5000

    def test_load_from_json_file(self, tmp_path):
        path = tmp_path / "persona-context.json"
        path.write_text(json.dumps({"server": {"port": 9000}}))
        config = load_config(config_path=path)
        assert config.server.port == 9000

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(config_path=tmp_path / "nope.yaml")

    def test_discovers_config_in_cwd(self, tmp_path, monkeypatch):
        (tmp_path / "persona-context.yml").write_text("token_counter: estimate\nchat:\n  max_tokens: 321\n")
        monkeypatch.chdir(tmp_path)
        assert load_config().chat.max_tokens == 321


class TestValidateConfig:
    def test_defaults_are_valid(self):
        assert validate_config(load_config(config_dict={})) == []

    def test_bad_values(self):
        config = load_config(config_dict={
            "context": {"max_pairs": 0, "window_token_budget": 0},
            "summarization": {"interval": 0, "max_attempts": 0},
            "chat": {"generation_timeout": 0},
        })
        errors = validate_config(config)
        assert any("max_pairs" in e for e in errors)
        assert any("window_token_budget" in e for e in errors)
        assert any("interval" in e for e in errors)
        assert any("max_attempts" in e for e in errors)
        assert any("generation_timeout" in e for e in errors)

    def test_unknown_default_plan(self):
        errors = validate_config(load_config(config_dict={"default_plan": "Platinum"}))
        assert any("Platinum" in e for e in errors)

    def test_plan_context_must_exceed_margin(self):
        config = load_config(config_dict={
            "plans": {"Tiny": {"model": "m", "credit_cost": 1, "max_context_tokens": 500}},
            "default_plan": "Tiny",
        })
        errors = validate_config(config)
        assert any("safety_margin" in e for e in errors)
