"""Tests for repoengine.lib.config and envparse modules."""

import pytest
from pathlib import Path
from unittest.mock import patch

from repoengine.lib import validate
from repoengine.lib.config import load_engine_config, EngineConfig, BACKEND_EMBEDDED
from repoengine.lib.envparse import parse_env_text


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    """Keep a stray ./engine.env out of the tests."""
    monkeypatch.chdir(tmp_path)


class TestLoadEngineConfig:
    """Test file loading, overrides and schema validation."""

    def test_defaults_without_file_or_env(self):
        config = load_engine_config(environ={})
        assert config == EngineConfig()

    def test_reads_env_file(self, tmp_path):
        env_file = tmp_path / "custom.env"
        env_file.write_text('BACKEND="embedded"\nSTATUS_TTL_MS=500\n# comment\n')
        config = load_engine_config(env_file, environ={})
        assert config.backend == BACKEND_EMBEDDED
        assert config.status_ttl_ms == 500
        assert config.branch_ttl_ms == 15000

    def test_environment_overrides_file(self, tmp_path):
        env_file = tmp_path / "engine.env"
        env_file.write_text("WORKERS=2\n")
        config = load_engine_config(env_file, environ={"REPOENGINE_WORKERS": "8"})
        assert config.workers == 8

    def test_config_path_from_environment(self, tmp_path):
        env_file = tmp_path / "elsewhere.env"
        env_file.write_text("BLAME_DEPTH=10\n")
        config = load_engine_config(environ={"REPOENGINE_CONFIG": str(env_file)})
        assert config.blame_depth == 10

    def test_picks_up_engine_env_in_cwd(self, tmp_path):
        (tmp_path / "engine.env").write_text("LOG_PAGE_SIZE=50\n")
        assert load_engine_config(environ={}).log_page_size == 50

    @patch("repoengine.lib.config.envparse.load_env")
    def test_unknown_backend_rejected(self, mock_load_env):
        mock_load_env.return_value = {"BACKEND": "libgit"}
        with pytest.raises(validate.ValidationError) as exc:
            load_engine_config(Path("/fake/engine.env"), environ={})
        assert exc.value.schema_name == "engine"
        assert exc.value.path == "BACKEND"

    @patch("repoengine.lib.config.envparse.load_env")
    def test_unknown_key_rejected(self, mock_load_env):
        mock_load_env.return_value = {"NOT_A_SETTING": "1"}
        with pytest.raises(validate.ValidationError):
            load_engine_config(Path("/fake/engine.env"), environ={})

    @patch("repoengine.lib.config.envparse.load_env")
    def test_non_numeric_timeout_rejected(self, mock_load_env):
        mock_load_env.return_value = {"GIT_TIMEOUT": "soon"}
        with pytest.raises(validate.ValidationError):
            load_engine_config(Path("/fake/engine.env"), environ={})

    def test_watermark_must_be_below_max(self):
        environ = {"REPOENGINE_CACHE_MAX_ENTRIES": "10", "REPOENGINE_CACHE_LOW_WATERMARK": "10"}
        with pytest.raises(validate.ValidationError) as exc:
            load_engine_config(environ=environ)
        assert exc.value.path == "CACHE_LOW_WATERMARK"

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_engine_config(tmp_path / "nope.env", environ={})


class TestParseEnvText:
    """Test the .env parser."""

    def test_export_and_quotes(self):
        assert parse_env_text("export GIT_BINARY='/usr/bin/git'\n") == {"GIT_BINARY": "/usr/bin/git"}

    def test_rejects_command_substitution(self):
        with pytest.raises(ValueError, match="Forbidden pattern"):
            parse_env_text("GIT_BINARY=$(which git)\n")

    def test_rejects_lowercase_key(self):
        with pytest.raises(ValueError, match="Invalid key"):
            parse_env_text("backend=auto\n")

    def test_rejects_line_without_equals(self):
        with pytest.raises(ValueError, match="no '='"):
            parse_env_text("BACKEND\n")
