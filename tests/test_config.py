"""Tests for tbd_sync.config: env-var config loading and validation.

NOT to be confused with test_config_loader.py (hierarchical YAML config)
or test_config_schema.py (Pydantic models). This tests the runtime
resolution path: validate_config() and load_config().
"""

import pytest

from tbd_sync.config import Config, load_config, validate_config
from tbd_sync.config_schema import build_config
from tbd_sync.errors import ConfigError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in (
        "TBD_SYNC_BRANCH",
        "TBD_SYNC_REMOTE",
        "TBD_MAX_PUSH_ATTEMPTS",
        "TBD_DEBUG",
    ):
        monkeypatch.delenv(var, raising=False)


# -------------------------------------------------------------------------
# validate_config()
# -------------------------------------------------------------------------


class TestValidateConfig:
    """Tests for validate_config(): git names and numeric ranges."""

    def test_defaults_valid(self, tmp_path):
        validate_config(Config(repo_root=tmp_path))

    def test_whitespace_stripped(self, tmp_path):
        config = Config(repo_root=tmp_path, branch="  tbd-sync ", remote=" origin")
        validate_config(config)
        assert config.branch == "tbd-sync"
        assert config.remote == "origin"

    @pytest.mark.parametrize(
        "branch", ["", "-delete", "a..b", "has space", "x.lock", "trailing/"]
    )
    def test_unsafe_branch_rejected(self, tmp_path, branch):
        with pytest.raises(ConfigError, match="branch"):
            validate_config(Config(repo_root=tmp_path, branch=branch))

    def test_remote_with_slash_rejected(self, tmp_path):
        with pytest.raises(ConfigError, match="remote"):
            validate_config(Config(repo_root=tmp_path, remote="a/b"))

    @pytest.mark.parametrize("attempts", [0, 11])
    def test_attempts_out_of_range(self, tmp_path, attempts):
        with pytest.raises(ConfigError, match="max_push_attempts"):
            validate_config(Config(repo_root=tmp_path, max_push_attempts=attempts))

    def test_unknown_tie_break(self, tmp_path):
        with pytest.raises(ConfigError, match="tie_break"):
            validate_config(Config(repo_root=tmp_path, tie_break="coin"))


# -------------------------------------------------------------------------
# load_config()
# -------------------------------------------------------------------------


class TestLoadConfig:
    """Tests for load_config(): override > env > YAML > default."""

    def test_defaults(self, tmp_path):
        config = load_config(repo_root=tmp_path)
        assert config.branch == "tbd-sync"
        assert config.remote == "origin"
        assert config.max_push_attempts == 3
        assert config.debug is False
        assert config.repo_root == tmp_path.resolve()

    def test_yaml_values_used(self, tmp_path):
        unified = build_config(
            {
                "sync": {"branch": "issues", "max_push_attempts": 5},
                "ids": {"hex_width": 8},
                "logging": {"level": "DEBUG"},
            }
        )
        config = load_config(repo_root=tmp_path, unified=unified)
        assert config.branch == "issues"
        assert config.max_push_attempts == 5
        assert config.hex_width == 8
        assert config.log_level == "DEBUG"

    def test_env_beats_yaml(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TBD_SYNC_BRANCH", "from-env")
        monkeypatch.setenv("TBD_MAX_PUSH_ATTEMPTS", "7")
        unified = build_config({"sync": {"branch": "from-yaml"}})
        config = load_config(repo_root=tmp_path, unified=unified)
        assert config.branch == "from-env"
        assert config.max_push_attempts == 7

    def test_override_beats_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TBD_SYNC_REMOTE", "upstream")
        config = load_config(repo_root=tmp_path, remote="mirror")
        assert config.remote == "mirror"

    def test_invalid_attempts_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TBD_MAX_PUSH_ATTEMPTS", "lots")
        with pytest.raises(ConfigError, match="TBD_MAX_PUSH_ATTEMPTS"):
            load_config(repo_root=tmp_path)

    def test_invalid_branch_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TBD_SYNC_BRANCH", "--upload-pack=evil")
        with pytest.raises(ConfigError):
            load_config(repo_root=tmp_path)

    @pytest.mark.parametrize("value", ["true", "1", "YES", "on"])
    def test_debug_env(self, tmp_path, monkeypatch, value):
        monkeypatch.setenv("TBD_DEBUG", value)
        assert load_config(repo_root=tmp_path).debug is True
