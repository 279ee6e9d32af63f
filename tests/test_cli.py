"""Tests for the beacon command line."""

import json

import pytest

from beacon import cli
from beacon.registry import ServiceRegistry


@pytest.fixture
def connected(monkeypatch, store):
    """Route every subcommand to a registry backed by the in-memory store."""
    monkeypatch.setattr(
        cli, "_connect",
        lambda args: ServiceRegistry(store, ttl=1, retry_interval=0.05, resync_interval=0.2),
    )
    return store


class TestFormatting:

    def test_text_is_sorted(self):
        out = cli._format_entries({"svc/b": "2", "svc/a": "1"}, "text")
        assert out.splitlines() == ["svc/a  1", "svc/b  2"]

    def test_text_empty(self):
        assert cli._format_entries({}, "text") == "(no entries)"

    def test_json(self):
        assert json.loads(cli._format_entries({"svc/a": "1"}, "json")) == {"svc/a": "1"}


class TestCommands:

    def test_no_command_prints_help(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            cli.main([])
        assert excinfo.value.code == 1
        assert "usage" in capsys.readouterr().out

    def test_invalid_config_exits(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            cli.main(["list", "svc/", "--ttl", "0"])
        assert excinfo.value.code == 1
        assert "ttl must be positive" in capsys.readouterr().err

    def test_list(self, connected, capsys):
        connected.put("svc/a", "1.2.3.4:80")
        connected.put("other/x", "9")
        cli.main(["list", "svc/", "--format", "json"])
        assert json.loads(capsys.readouterr().out) == {"svc/a": "1.2.3.4:80"}

    def test_register_until_interrupted(self, connected, monkeypatch, wait_for):
        seen = []

        def interrupt():
            seen.append(wait_for(lambda: connected.get("svc/a") is not None))

        monkeypatch.setattr(cli, "_wait_for_interrupt", interrupt)
        cli.main(["register", "svc/a", "1.2.3.4:80"])

        assert seen == [True]
        assert connected.get("svc/a") is None

    def test_watch_prints_snapshots(self, connected, monkeypatch, capsys, wait_for):
        connected.put("svc/a", "1.2.3.4:80")
        monkeypatch.setattr(
            cli, "_wait_for_interrupt",
            lambda: wait_for(lambda: False, timeout=0.3),
        )
        cli.main(["watch", "svc/"])
        assert "svc/a  1.2.3.4:80" in capsys.readouterr().out
