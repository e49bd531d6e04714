"""Tests for the tts-gateway command line."""
from __future__ import annotations

import json

import pytest

from tts_gateway import cli
from tts_gateway.services.webhook_service import sign_payload


@pytest.fixture(autouse=True)
def no_settings_file(monkeypatch, tmp_path):
    monkeypatch.setenv("TTS_GW_SETTINGS", str(tmp_path / "absent.yaml"))


def _json_out(capsys):
    out = capsys.readouterr().out
    return json.loads(out[out.index("{"):])


class TestSummary:
    def test_json_summary(self, capsys):
        assert cli.main(["Hello there. How are you?", "--json"]) == 0
        item = _json_out(capsys)["items"][0]
        assert item["text_len"] == 25
        assert item["mode"] == "sync"
        assert item["chunks"] == 1
        assert len(item["request_hash"]) == 64

    def test_file_input_with_small_chunks(self, capsys, tmp_path):
        path = tmp_path / "inputs.txt"
        path.write_text("First one. Second one.\n\nThird.\n", encoding="utf-8")
        assert cli.main(["--file", str(path), "--max-chars", "12", "--json"]) == 0
        items = _json_out(capsys)["items"]
        assert [i["chunks"] for i in items] == [2, 1]

    def test_voice_changes_hash(self, capsys):
        cli.main(["--text", "Hi", "--json"])
        a = _json_out(capsys)["items"][0]["request_hash"]
        cli.main(["--text", "Hi", "--voice", "other_voice", "--json"])
        b = _json_out(capsys)["items"][0]["request_hash"]
        assert a != b

    def test_no_input(self):
        with pytest.raises(SystemExit):
            cli.main([])

    def test_file_and_text_conflict(self, tmp_path):
        path = tmp_path / "in.txt"
        path.write_text("x\n", encoding="utf-8")
        with pytest.raises(SystemExit):
            cli.main(["--file", str(path), "--text", "y"])


class TestOperations:
    def test_init_db(self, capsys, monkeypatch, tmp_path):
        db = tmp_path / "cli.db"
        monkeypatch.setenv("TTS_GW_DATABASE_URL", f"sqlite:///{db}")
        assert cli.main(["--init-db", "--json"]) == 0
        assert _json_out(capsys)["ok"] is True
        assert db.exists()

    def test_sign_webhook(self, capsys, monkeypatch, tmp_path):
        monkeypatch.setenv("TTS_GW_WEBHOOK_SECRET", "cli-secret")
        body = tmp_path / "event.json"
        body.write_bytes(b'{"type": "ping"}')
        assert cli.main(["--sign-webhook", str(body), "--json"]) == 0
        out = _json_out(capsys)
        assert out["header"] == "X-ElevenLabs-Signature"
        assert out["signature"] == sign_payload("cli-secret", b'{"type": "ping"}')

    def test_sign_webhook_without_secret(self, tmp_path):
        body = tmp_path / "event.json"
        body.write_bytes(b"{}")
        with pytest.raises(SystemExit):
            cli.main(["--sign-webhook", str(body)])

    def test_explicit_missing_settings_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            cli.main(["--settings", str(tmp_path / "nope.yaml"), "Hi"])
