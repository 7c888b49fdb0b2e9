"""
Tests for the command line entry point (offline commands only).
"""

import json
import logging

import pytest

from trassenger.cli import main


@pytest.fixture(autouse=True)
def restore_logging():
    """main() reconfigures the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path / "trassenger")


class TestCli:
    """Init, contacts and config without touching the network."""

    def test_commands_need_identity(self, data_dir, capsys):
        """Test a fresh install points the user at init."""
        assert main(["--data-dir", data_dir, "contacts"]) == 1
        assert "trassenger init" in capsys.readouterr().err

    def test_init_creates_identity_and_config(self, data_dir, tmp_path, capsys):
        """Test init writes keys and a default config, and is repeatable."""
        assert main(["--data-dir", data_dir, "init"]) == 0
        root = tmp_path / "trassenger"
        assert (root / "keys" / "identity.json").exists()
        assert (root / "config.json").exists()
        first_keys = (root / "keys" / "identity.json").read_text()

        assert main(["--data-dir", data_dir, "init"]) == 0
        assert (root / "keys" / "identity.json").read_text() == first_keys
        assert list((root / "logs").glob("session-*.log"))

    def test_exchange_cards(self, tmp_path, capsys):
        """Test two installs can import each other's exported cards."""
        alice_dir, bob_dir = str(tmp_path / "a"), str(tmp_path / "b")
        main(["--data-dir", alice_dir, "init"])
        main(["--data-dir", bob_dir, "init"])

        card = tmp_path / "bob.json"
        assert main(["--data-dir", bob_dir, "export-contact", "Bob", "-o", str(card)]) == 0
        assert json.loads(card.read_text())["name"] == "Bob"

        assert main(["--data-dir", alice_dir, "import-contact", str(card)]) == 0
        assert main(["--data-dir", alice_dir, "import-contact", str(card)]) == 1
        assert "already exists" in capsys.readouterr().err

        assert main(["--data-dir", alice_dir, "rename-contact", "Bob", "Robert"]) == 0
        capsys.readouterr()
        assert main(["--data-dir", alice_dir, "contacts"]) == 0
        assert capsys.readouterr().out.startswith("Robert\t")

        assert main(["--data-dir", alice_dir, "remove-contact", "Robert"]) == 0
        assert main(["--data-dir", alice_dir, "remove-contact", "Robert"]) == 1

    def test_config_update_and_validation(self, data_dir, tmp_path, capsys):
        """Test config values are saved and bad bounds are refused."""
        main(["--data-dir", data_dir, "init"])

        assert main(["--data-dir", data_dir, "config", "--floor", "2", "--ceiling", "30"]) == 0
        saved = json.loads((tmp_path / "trassenger" / "config.json").read_text())
        assert saved["poll_floor_secs"] == 2
        assert saved["poll_ceiling_secs"] == 30

        assert main(["--data-dir", data_dir, "config", "--floor", "90"]) == 1
        saved = json.loads((tmp_path / "trassenger" / "config.json").read_text())
        assert saved["poll_floor_secs"] == 2

    def test_unknown_contact_history(self, data_dir, capsys):
        """Test asking for a missing conversation fails cleanly."""
        main(["--data-dir", data_dir, "init"])
        assert main(["--data-dir", data_dir, "history", "Nobody"]) == 1
        assert "Unknown contact" in capsys.readouterr().err
