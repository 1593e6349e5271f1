"""
Tests for encrypted API key storage.
"""

import os

import pytest

from convoctl.core.config import ConfigManager, _mask


class TestConfigManager:
    """Tests for storing and exporting provider keys."""

    def test_creates_key_file(self, temp_dir):
        ConfigManager(base_dir=temp_dir / "config")
        assert (temp_dir / "config" / ".key").exists()

    def test_set_and_get(self, temp_dir):
        mgr = ConfigManager(base_dir=temp_dir / "config")
        mgr.set("CONVOCTL_TEST_KEY", "secret-value")

        assert mgr.get("CONVOCTL_TEST_KEY") == "secret-value"
        assert b"secret-value" not in mgr.keys_path.read_bytes()

    def test_persists_across_instances(self, temp_dir):
        ConfigManager(base_dir=temp_dir / "config").set("CONVOCTL_TEST_KEY", "v1")

        assert ConfigManager(base_dir=temp_dir / "config").get("CONVOCTL_TEST_KEY") == "v1"

    def test_environment_wins(self, temp_dir):
        mgr = ConfigManager(base_dir=temp_dir / "config")
        mgr.set("CONVOCTL_TEST_KEY", "stored")
        os.environ["CONVOCTL_TEST_KEY"] = "from-env"

        assert mgr.get("CONVOCTL_TEST_KEY") == "from-env"

    def test_delete(self, temp_dir):
        mgr = ConfigManager(base_dir=temp_dir / "config")
        mgr.set("CONVOCTL_TEST_KEY", "v")

        assert mgr.delete("CONVOCTL_TEST_KEY") is True
        assert mgr.delete("CONVOCTL_TEST_KEY") is False
        assert mgr.list_keys() == []

    def test_load_into_environment(self, temp_dir):
        mgr = ConfigManager(base_dir=temp_dir / "config")
        mgr.set("CONVOCTL_A", "a")
        mgr.set("CONVOCTL_B", "b")
        os.environ["CONVOCTL_B"] = "already-set"

        loaded = mgr.load_into_environment()

        assert loaded == 1
        assert os.environ["CONVOCTL_A"] == "a"
        assert os.environ["CONVOCTL_B"] == "already-set"

    def test_corrupt_store_reads_empty(self, temp_dir):
        mgr = ConfigManager(base_dir=temp_dir / "config")
        mgr.keys_path.write_bytes(b"garbage")

        assert ConfigManager(base_dir=temp_dir / "config").list_keys() == []

    def test_set_from_file(self, temp_dir):
        env_file = temp_dir / ".env"
        env_file.write_text(
            "# provider keys\n"
            "GEMINI_API_KEY=abc123\n"
            'export OPENAI_API_KEY="sk-quoted"\n'
            "not a key line\n"
        )
        mgr = ConfigManager(base_dir=temp_dir / "config")

        assert mgr.set_from_file(env_file) == 2
        assert mgr.list_keys() == ["GEMINI_API_KEY", "OPENAI_API_KEY"]
        assert mgr._load_keys()["OPENAI_API_KEY"] == "sk-quoted"

    def test_set_from_missing_file(self, temp_dir):
        mgr = ConfigManager(base_dir=temp_dir / "config")
        with pytest.raises(FileNotFoundError):
            mgr.set_from_file(temp_dir / "missing.env")


def test_mask():
    assert _mask("short") == "*****"
    assert _mask("sk-1234567890") == "sk-1...7890"
