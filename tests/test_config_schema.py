"""Tests for tbd_sync.config_schema: Pydantic config models."""

import pytest
from pydantic import ValidationError

from tbd_sync.config_schema import (
    IdsSection,
    SyncSection,
    UnifiedConfig,
    build_config,
)
from tbd_sync.errors import ConfigError


class TestSections:
    def test_zero_config_defaults(self):
        config = UnifiedConfig()
        assert config.sync.branch == "tbd-sync"
        assert config.sync.remote == "origin"
        assert config.sync.max_push_attempts == 3
        assert config.sync.tie_break == "remote"
        assert config.ids.prefix == "is"
        assert config.ids.hex_width == 6
        assert config.storage.temp_grace_seconds == 3600
        assert config.logging.file is None

    def test_sections_are_frozen(self):
        with pytest.raises(ValidationError):
            SyncSection().branch = "other"

    @pytest.mark.parametrize("branch", ["-x", "a..b", "sp ace"])
    def test_bad_branch(self, branch):
        with pytest.raises(ValidationError):
            SyncSection(branch=branch)

    def test_nested_branch_allowed(self):
        assert SyncSection(branch="team/tbd-sync").branch == "team/tbd-sync"

    def test_bad_tie_break(self):
        with pytest.raises(ValidationError):
            SyncSection(tie_break="random")

    @pytest.mark.parametrize("width", [3, 17])
    def test_hex_width_bounds(self, width):
        with pytest.raises(ValidationError):
            IdsSection(hex_width=width)


class TestBuildConfig:
    def test_empty_dict(self):
        assert build_config({}) == UnifiedConfig()

    def test_partial_sections(self):
        config = build_config({"sync": {"remote": "upstream"}})
        assert config.sync.remote == "upstream"
        assert config.sync.branch == "tbd-sync"
        assert config.ids == UnifiedConfig().ids

    def test_invalid_value_raises_config_error(self):
        with pytest.raises(ConfigError, match="Invalid configuration"):
            build_config({"sync": {"max_push_attempts": 0}})
