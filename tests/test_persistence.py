"""
Test JSON file persistence

Run with: pytest tests/test_persistence.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json

import pytest

from medguide.contracts import ChatMessage, ImageAttachment, IntakeData, Session, SessionStep
from medguide.persistence import JsonFilePersistence


def make_snapshot(session_id="abc123", updated_at="2026-01-01T00:00:00+00:00"):
    return {
        'id': session_id,
        'createdAt': updated_at,
        'updatedAt': updated_at,
        'status': 'in-progress',
        'step': 'interviewing',
        'title': 'cough'
    }


@pytest.fixture
def store(tmp_path):
    return JsonFilePersistence(str(tmp_path / "nested" / "sessions.json"))


def test_save_and_get(store):
    """Test saved snapshot can be read back"""
    store.save(make_snapshot())

    snapshot = store.get_by_id("abc123")
    assert snapshot['title'] == 'cough'
    assert store.get_by_id("missing") is None
    assert store.path.exists()

    print("✓ Save/get test passed")


def test_save_replaces_same_id(store):
    store.save(make_snapshot())
    store.save({**make_snapshot(), 'title': 'headache'})

    assert len(store.list_all()) == 1
    assert store.get_by_id("abc123")['title'] == 'headache'


def test_save_requires_id(store):
    with pytest.raises(ValueError):
        store.save({'title': 'no id'})


def test_update_merges_and_bumps_timestamp(store):
    """Test update merges fields and refreshes updatedAt"""
    store.save(make_snapshot())

    assert store.update("abc123", {'status': 'abandoned'}) is True

    snapshot = store.get_by_id("abc123")
    assert snapshot['status'] == 'abandoned'
    assert snapshot['title'] == 'cough'
    assert snapshot['updatedAt'] != '2026-01-01T00:00:00+00:00'

    print("✓ Update merge test passed")


def test_update_missing_id_is_noop(store, caplog):
    """Test update of an unknown id warns and returns False"""
    store.save(make_snapshot())

    assert store.update("missing", {'status': 'completed'}) is False
    assert len(store.list_all()) == 1
    assert "not found" in caplog.text


def test_delete(store):
    store.save(make_snapshot("a"))
    store.save(make_snapshot("b"))

    assert store.delete("a") is True
    assert store.delete("a") is False
    assert [s['id'] for s in store.list_all()] == ["b"]


def test_missing_file_reads_empty(tmp_path):
    store = JsonFilePersistence(str(tmp_path / "sessions.json"))
    assert store.list_all() == []


def test_corrupt_file_reads_empty(tmp_path):
    """Test unreadable store is treated as empty, not fatal"""
    path = tmp_path / "sessions.json"
    path.write_text("{not json", encoding="utf-8")
    store = JsonFilePersistence(str(path))

    assert store.list_all() == []

    store.save(make_snapshot())
    assert len(store.list_all()) == 1

    print("✓ Corrupt file test passed")


def test_non_list_file_reads_empty(tmp_path):
    path = tmp_path / "sessions.json"
    path.write_text(json.dumps({'id': 'x'}), encoding="utf-8")

    assert JsonFilePersistence(str(path)).list_all() == []


def test_session_snapshot_round_trip(store):
    """Test a full Session survives the file store"""
    session = Session(
        id="round-trip",
        created_at="2026-01-01T00:00:00+00:00",
        updated_at="2026-01-01T00:00:00+00:00",
        intake=IntakeData(full_name="Élodie Martin", age="51", gender="Female", complaint="Migraine"),
        step=SessionStep.AWAITING_SUPPLEMENTAL_INPUT,
        history=[
            ChatMessage(role="system", content="sys"),
            ChatMessage(role="user", content="Maux de tête depuis 3 jours"),
        ],
        images=(ImageAttachment(data="AAAA", media_type="image/png"),)
    )

    store.save(session.to_snapshot())
    restored = Session.from_snapshot(store.get_by_id("round-trip"))

    assert restored == session
    assert "Élodie" in store.path.read_text(encoding="utf-8")

    print("✓ Session round trip test passed")
