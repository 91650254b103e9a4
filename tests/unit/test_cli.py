"""
Unit tests for the tutor-engine CLI commands that need no server.
"""

import json

import pytest
from typer.testing import CliRunner

from src.cli import main as cli
from src.db.store import InMemoryStore

runner = CliRunner()


@pytest.fixture
def events_file(tmp_path):
    events = [
        {"id": f"e{i}", "learnerId": "learner-1", "problemId": "p1",
         "timestamp": 1000 * (i + 1), "eventType": "error", "errorSubtypeId": "undefined column"}
        for i in range(3)
    ]
    path = tmp_path / "events.json"
    path.write_text(json.dumps(events), encoding="utf-8")
    return path


class TestDecisionCommands:
    """Tests for decide, replay and hint."""

    def test_decide_json(self, events_file):
        result = runner.invoke(
            cli.app, ["decide", str(events_file), "-l", "learner-1", "-p", "p1", "--now", "5000", "--json"]
        )

        assert result.exit_code == 0
        assert '"decision": "show_explanation"' in result.stdout
        assert '"rule_fired": "escalation-threshold-met"' in result.stdout

    def test_decide_unknown_mode(self, events_file):
        result = runner.invoke(
            cli.app, ["decide", str(events_file), "-l", "learner-1", "-p", "p1", "--mode", "sometimes"]
        )

        assert result.exit_code == 1
        assert "Unknown escalation mode" in result.stdout

    def test_decide_missing_file(self, tmp_path):
        result = runner.invoke(cli.app, ["decide", str(tmp_path / "none.json"), "-l", "x", "-p", "p1"])

        assert result.exit_code == 1
        assert "File not found" in result.stdout

    def test_replay_prints_fingerprint(self, events_file):
        result = runner.invoke(cli.app, ["replay", str(events_file), "-l", "learner-1", "-s", "adaptive-high"])

        assert result.exit_code == 0
        assert "Fingerprint: fnv1a32:" in result.stdout

    def test_hint_classifies_error(self):
        result = runner.invoke(
            cli.app, ["hint", "-l", "learner-1", "-p", "p1", "--error", "no such column: user_name"]
        )

        assert result.exit_code == 0
        assert "subtype: undefined column" in result.stdout


class TestContentCommands:
    """Tests for parse and generate."""

    def test_parse_success(self, tmp_path):
        raw = tmp_path / "raw.txt"
        raw.write_text(
            'Sure! {"title": "T", "content_markdown": "C", "key_points": ["k"], "next_steps": ["n"]}',
            encoding="utf-8",
        )

        result = runner.invoke(cli.app, ["parse", str(raw)])

        assert result.exit_code == 0
        assert '"status": "success"' in result.stdout
        assert '"mode": "brace-extract"' in result.stdout

    def test_parse_failure(self, tmp_path):
        raw = tmp_path / "raw.txt"
        raw.write_text("not json", encoding="utf-8")

        result = runner.invoke(cli.app, ["parse", str(raw)])

        assert result.exit_code == 1
        assert "Unparseable output: invalid_json" in result.stdout

    def test_generate_replay_and_save(self, tmp_path, monkeypatch, sample_bundle_dict):
        store = InMemoryStore()
        monkeypatch.setattr(cli, "_open_store", lambda: store)
        bundle = tmp_path / "bundle.json"
        bundle.write_text(json.dumps(sample_bundle_dict), encoding="utf-8")

        result = runner.invoke(cli.app, ["generate", str(bundle), "--replay", "--save"])

        assert result.exit_code == 0
        assert "replay_mode" in result.stdout
        assert "Saved to textbook" in result.stdout
        units = store.get_textbook_units("learner-1")
        assert len(units) == 1
        assert units[0].title == "Help with Employees in Sales"
