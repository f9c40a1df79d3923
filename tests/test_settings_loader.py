from __future__ import annotations

import pytest

from rulecraft.core.config import RuleEngineSettings, load_settings
from rulecraft.core.errors import ConfigurationError


def test_load_settings_defaults_without_file() -> None:
    settings = load_settings()

    assert isinstance(settings, RuleEngineSettings)
    assert settings.max_rules == 1000
    assert settings.max_condition_depth == 10
    assert settings.actions.max_per_rule == 10
    assert settings.functions.allow_unsafe_expressions is False
    assert settings.groups.execution_mode == "sequential"


def test_load_settings_from_yaml(tmp_path) -> None:
    sample = tmp_path / "rules.yaml"
    sample.write_text(
        "max_rules: 5\n"
        "evaluation:\n  cache_results: false\n  cache_max_entries: 50\n"
        "variables:\n  global_variables:\n    region: eu\n  readonly: [region]\n"
        "groups:\n  execution_mode: first-match\n"
    )

    settings = load_settings(sample)

    assert settings.max_rules == 5
    assert settings.evaluation.cache_results is False
    assert settings.evaluation.cache_max_entries == 50
    assert settings.variables.global_variables == {"region": "eu"}
    assert settings.variables.readonly == ["region"]
    assert settings.groups.execution_mode == "first-match"


def test_env_overrides_win_over_yaml(tmp_path, monkeypatch) -> None:
    sample = tmp_path / "rules.yaml"
    sample.write_text("max_rules: 5\nfunctions:\n  timeout_s: 2.5\n")
    monkeypatch.setenv("RULECRAFT_MAX_RULES", "7")
    monkeypatch.setenv("RULECRAFT_ALLOW_UNSAFE_EXPRESSIONS", "true")
    monkeypatch.setenv("RULECRAFT_ACTION_TIMEOUT_S", "not-a-number")

    settings = load_settings(sample)

    assert settings.max_rules == 7
    assert settings.functions.allow_unsafe_expressions is True
    assert settings.functions.timeout_s == 2.5
    assert settings.actions.timeout_s == 30.0


def test_invalid_settings_raise_configuration_error(tmp_path) -> None:
    sample = tmp_path / "rules.yaml"
    sample.write_text("max_rules: 0\n")

    with pytest.raises(ConfigurationError):
        load_settings(sample)


def test_non_mapping_settings_file_is_rejected(tmp_path) -> None:
    sample = tmp_path / "rules.yaml"
    sample.write_text("- just\n- a list\n")

    with pytest.raises(ConfigurationError):
        load_settings(sample)


def test_module_docstring_is_set() -> None:
    from rulecraft.core.config import settings

    assert settings.__doc__ == "Configuration loader for the rule engine."
