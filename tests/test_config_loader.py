import os

import pytest

from hybrid_brain.config.loader import (
    CONFIG_PATH_ENV,
    BrainSettings,
    OrchestratorSettings,
    _substitute_env_vars,
    load_settings,
)
from hybrid_brain.constants import BACKEND_TIMEOUT_SECONDS
from hybrid_brain.schemas import BackendKind


class TestSubstituteEnvVars:
    def test_basic(self, monkeypatch):
        monkeypatch.setenv("HOME", "/users/test")
        assert _substitute_env_vars("${HOME}") == "/users/test"

    def test_with_default(self):
        assert _substitute_env_vars("${NONEXISTENT_VAR_12345:-fallback}") == "fallback"

    def test_missing_no_default(self):
        key = "TOTALLY_MISSING_VAR_99999"
        assert os.environ.get(key) is None
        assert _substitute_env_vars(f"${{{key}}}") == ""

    def test_env_var_overrides_default(self, monkeypatch):
        monkeypatch.setenv("MY_VAR", "real")
        assert _substitute_env_vars("${MY_VAR:-default}") == "real"

    def test_multiple_vars(self, monkeypatch):
        monkeypatch.setenv("A_VAR", "hello")
        monkeypatch.setenv("B_VAR", "world")
        assert _substitute_env_vars("${A_VAR} ${B_VAR}") == "hello world"


VALID_YAML = """\
orchestrator:
  enable_fallback: false
  backend_timeout_seconds: 12
  direct_model: "${TEST_DIRECT_MODEL:-gpt-4.1-nano}"
classifier:
  complexity_threshold: 0.4
prompt_cache:
  ttl_seconds: 60
rollout:
  initial_test:
    rollout_percentage: 25
    min_samples: 50
"""


class TestLoadSettings:
    def test_load_valid_yaml(self, tmp_path):
        cfg_file = tmp_path / "brain.yaml"
        cfg_file.write_text(VALID_YAML)

        settings = load_settings(str(cfg_file))

        assert settings.orchestrator.enable_fallback is False
        assert settings.orchestrator.backend_timeout_seconds == 12
        assert settings.orchestrator.direct_model == "gpt-4.1-nano"
        assert settings.classifier.complexity_threshold == 0.4
        assert settings.prompt_cache.ttl_seconds == 60
        test = settings.rollout.initial_test
        assert test is not None
        assert test.rollout_percentage == 25
        assert test.candidate_backend is BackendKind.DIRECT

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_DIRECT_MODEL", "custom-mini")
        cfg_file = tmp_path / "brain.yaml"
        cfg_file.write_text(VALID_YAML)
        assert load_settings(str(cfg_file)).orchestrator.direct_model == "custom-mini"

    def test_path_from_environment(self, tmp_path, monkeypatch):
        cfg_file = tmp_path / "brain.yaml"
        cfg_file.write_text("orchestrator:\n  enable_classification: false\n")
        monkeypatch.setenv(CONFIG_PATH_ENV, str(cfg_file))
        assert load_settings().orchestrator.enable_classification is False

    @pytest.mark.parametrize("path", [None, "", "/nonexistent/path/brain.yaml"])
    def test_missing_file_gives_defaults(self, path, monkeypatch):
        monkeypatch.delenv(CONFIG_PATH_ENV, raising=False)
        assert load_settings(path) == BrainSettings()

    def test_invalid_yaml(self, tmp_path):
        cfg_file = tmp_path / "bad.yaml"
        cfg_file.write_text("{{{{not yaml at all::::")
        assert load_settings(str(cfg_file)) == BrainSettings()

    def test_non_mapping_root(self, tmp_path):
        cfg_file = tmp_path / "list.yaml"
        cfg_file.write_text("- a\n- b\n")
        assert load_settings(str(cfg_file)) == BrainSettings()

    def test_empty_file(self, tmp_path):
        cfg_file = tmp_path / "empty.yaml"
        cfg_file.write_text("")
        assert load_settings(str(cfg_file)) == BrainSettings()

    def test_invalid_section_skipped(self, tmp_path):
        cfg_file = tmp_path / "mixed.yaml"
        cfg_file.write_text(
            "orchestrator:\n  backend_timeout_seconds: -5\n"
            "classifier:\n  confidence_threshold: 0.9\n"
            "surprise:\n  x: 1\n"
        )

        settings = load_settings(str(cfg_file))

        assert settings.orchestrator.backend_timeout_seconds == BACKEND_TIMEOUT_SECONDS
        assert settings.classifier.confidence_threshold == 0.9

    def test_empty_section_uses_defaults(self, tmp_path):
        cfg_file = tmp_path / "sections.yaml"
        cfg_file.write_text("resources:\n")
        assert load_settings(str(cfg_file)).resources == BrainSettings().resources


class TestOrchestratorSettings:
    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError):
            OrchestratorSettings(backend_timeout_seconds=0)
