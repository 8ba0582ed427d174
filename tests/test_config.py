"""
Tests for configuration loading — kaspa-aio.yml settings and .env files.
"""

import textwrap
from pathlib import Path

import pytest

from src.core.config.env_file import (
    parse_env,
    read_env_file,
    render_env,
    update_env_file,
    write_env_file,
)
from src.core.config.loader import ConfigError, find_settings_file, load_settings


class TestLoadSettings:
    """Tests for kaspa-aio.yml parsing and validation."""

    def test_defaults_without_file(self):
        settings = load_settings(None)
        assert settings.poll_interval_s == 10.0
        assert settings.teardown_on_failure is False

    def test_load_valid(self, tmp_path: Path):
        path = tmp_path / "kaspa-aio.yml"
        path.write_text(textwrap.dedent("""\
            project_name: home-node
            max_backups: 5
            teardown_on_failure: true
            node_rpc_port: 16210
        """))
        settings = load_settings(path)
        assert settings.project_name == "home-node"
        assert settings.max_backups == 5
        assert settings.teardown_on_failure is True
        assert settings.node_rpc_port == 16210

    def test_empty_file_is_defaults(self, tmp_path: Path):
        path = tmp_path / "kaspa-aio.yml"
        path.write_text("")
        assert load_settings(path).max_backups == 10

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_settings(tmp_path / "nope.yml")

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "kaspa-aio.yml"
        path.write_text("project_name: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_settings(path)

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "kaspa-aio.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_settings(path)

    def test_unknown_key_rejected(self, tmp_path: Path):
        path = tmp_path / "kaspa-aio.yml"
        path.write_text("max_backupz: 3\n")
        with pytest.raises(ConfigError, match="Invalid settings"):
            load_settings(path)

    def test_out_of_range(self, tmp_path: Path):
        path = tmp_path / "kaspa-aio.yml"
        path.write_text("max_backups: 0\n")
        with pytest.raises(ConfigError):
            load_settings(path)

    def test_start_retries_capped(self, tmp_path: Path):
        path = tmp_path / "kaspa-aio.yml"
        path.write_text("start_retries: 3\n")
        with pytest.raises(ConfigError):
            load_settings(path)


class TestFindSettingsFile:
    """Tests for walking up to kaspa-aio.yml."""

    def test_found_in_parent(self, tmp_path: Path):
        (tmp_path / "kaspa-aio.yml").write_text("")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_settings_file(nested) == (tmp_path / "kaspa-aio.yml").resolve()

    def test_not_found(self, tmp_path: Path):
        nested = tmp_path / "empty"
        nested.mkdir()
        found = find_settings_file(nested)
        assert found is None or not found.is_relative_to(nested)


class TestEnvFile:
    """Tests for .env parsing and writing."""

    def test_parse(self):
        content = textwrap.dedent("""\
            # comment
            KASPA_NETWORK=mainnet

            QUOTED="hello world"
            SINGLE='x'
            URL=https://a.b/?q=1
            not a line
            KASPA_NETWORK=testnet
        """)
        assert parse_env(content) == {
            "KASPA_NETWORK": "testnet",
            "QUOTED": "hello world",
            "SINGLE": "x",
            "URL": "https://a.b/?q=1",
        }

    def test_render_formats_values(self):
        text = render_env({"A": True, "B": False, "C": None, "D": "two words", "E": 5}, ["kaspa-node"])
        assert "# Profiles: kaspa-node" in text
        assert "A=true" in text
        assert "B=false" in text
        assert "C=\n" in text
        assert 'D="two words"' in text
        assert "E=5" in text

    def test_write_then_read(self, tmp_path: Path):
        path = tmp_path / ".env"
        write_env_file(path, {"KASPA_NETWORK": "testnet", "PUBLIC_NODE": True})
        assert read_env_file(path) == {"KASPA_NETWORK": "testnet", "PUBLIC_NODE": "true"}

    def test_read_missing(self, tmp_path: Path):
        assert read_env_file(tmp_path / ".env") == {}

    def test_update_keeps_other_lines(self, tmp_path: Path):
        path = tmp_path / ".env"
        path.write_text("# header\nKASPA_NODE_CONNECTION=public\nOTHER=1\n")
        result = update_env_file(path, {"KASPA_NODE_CONNECTION": "local", "NEW": "x"})
        assert result == {"KASPA_NODE_CONNECTION": "local", "OTHER": "1", "NEW": "x"}
        assert path.read_text().startswith("# header\n")

    def test_update_creates_file(self, tmp_path: Path):
        path = tmp_path / ".env"
        update_env_file(path, {"A": "1"})
        assert read_env_file(path) == {"A": "1"}
