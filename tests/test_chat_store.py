"""Tests for the chat cache and its JSON store."""

from __future__ import annotations

import json
from pathlib import Path

from wabot.chat_store import ChatStore, remember_chat


def test_remember_chat_normalizes_and_merges():
    chats: dict = {}
    remember_chat(chats, "254700:3@s.whatsapp.net", name="Ann")
    remember_chat(chats, "254700@s.whatsapp.net", name=None, last_message_at=12.0)

    assert list(chats) == ["254700@s.whatsapp.net"]
    entry = chats["254700@s.whatsapp.net"]
    assert entry["name"] == "Ann"
    assert entry["last_message_at"] == 12.0
    assert entry["id"] == "254700@s.whatsapp.net"
    assert "updated_at" in entry


def test_flush_then_load(tmp_path: Path):
    store = ChatStore(tmp_path / "store.json")
    chats = {"120363@g.us": {"id": "120363@g.us", "subject": "Team"}}
    store.flush(chats)

    assert json.loads((tmp_path / "store.json").read_text()) == {"chats": chats}
    assert store.load() == chats


def test_load_missing_file(tmp_path: Path):
    assert ChatStore(tmp_path / "absent.json").load() == {}


def test_load_corrupt_file(tmp_path: Path):
    path = tmp_path / "store.json"
    path.write_text("{oops")
    assert ChatStore(path).load() == {}


def test_load_drops_malformed_entries(tmp_path: Path):
    path = tmp_path / "store.json"
    path.write_text(json.dumps({"chats": {"a@g.us": {"id": "a@g.us"}, "b@g.us": "junk"}}))
    assert ChatStore(path).load() == {"a@g.us": {"id": "a@g.us"}}


def test_load_wrong_shape(tmp_path: Path):
    path = tmp_path / "store.json"
    path.write_text(json.dumps(["not", "a", "dict"]))
    assert ChatStore(path).load() == {}
