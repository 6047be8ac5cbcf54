"""
WhisperMail - Command line tests.

Created by orpheus497
"""

import logging

import pytest

from conftest import ALICE, BOB
from whispermail.__main__ import build_parser, main
from whispermail.storage import Keyring


@pytest.fixture
def cli(temp_dir, monkeypatch):
    """Run the CLI against a temporary data directory with the memory relay."""
    monkeypatch.setenv("WHISPER_RELAY_BACKEND", "memory")
    monkeypatch.setenv("WHISPER_LOGGING_FILE_LOGGING", "false")
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level

    def run(*args):
        return main(["--data-dir", str(temp_dir), *args])

    yield run
    root.handlers[:] = handlers
    root.setLevel(level)


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_import_key_requires_fingerprint():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["import-key", BOB])


@pytest.mark.slow
def test_init_and_status(cli, temp_dir, capsys):
    assert cli("init", "--address", ALICE, "--peer", BOB) == 0
    out = capsys.readouterr().out
    assert "Identity ready" in out

    keyring = Keyring(str(temp_dir / "keyring.json"))
    assert keyring.get_private_key() is not None
    assert keyring.get_value("peer_address") == BOB

    assert cli("status") == 0
    out = capsys.readouterr().out
    assert "IDENTITY_GENERATED" in out

    assert cli("export-key") == 0
    assert "Fingerprint" in capsys.readouterr().out


def test_invalid_address(cli, capsys):
    assert cli("init", "--address", "nobody") == 1
    assert "E002" in capsys.readouterr().out


def test_commands_without_identity(cli, capsys):
    assert cli("fingerprint") == 1
    assert "E301" in capsys.readouterr().out


def test_send_before_exchange(cli, capsys):
    assert cli("send", "hello") == 1
    assert "E401" in capsys.readouterr().out


def test_clear_requires_confirmation(cli, capsys):
    assert cli("clear") == 1
    assert "E302" in capsys.readouterr().out


def test_history_when_empty(cli, capsys):
    assert cli("history") == 0


def test_config_example(cli, temp_dir, capsys):
    assert cli("config", "--example") == 0
    assert (temp_dir / "config.toml").exists()
    assert cli("config", "--example") == 1


def test_config_hides_password(cli, monkeypatch, capsys):
    monkeypatch.setenv("WHISPER_RELAY_PASSWORD", "hunter2")
    assert cli("config") == 0
    out = capsys.readouterr().out
    assert "hunter2" not in out
    assert "relay.backend" in out


def test_broken_config_file(cli, temp_dir, capsys):
    (temp_dir / "config.toml").write_text("[relay\n", encoding="utf-8")
    assert cli("status") == 1
    assert "E704" in capsys.readouterr().out
