from pathlib import Path

import pytest

from alcortex.kvstore import DRAFT_KEY, USERS_KEY, FileKeyValueStore, MemoryKeyValueStore


def test_file_store_round_trip_and_layout(tmp_path: Path):
    kv = FileKeyValueStore(tmp_path / "store")
    kv.init()

    kv.set_json(USERS_KEY, [{"email": "dr.ana@example.org"}])

    assert kv.get_json(USERS_KEY) == [{"email": "dr.ana@example.org"}]
    assert (tmp_path / "store" / "alcortex_db_users.json").exists()
    assert not list((tmp_path / "store").glob(".*.tmp"))
    assert kv.get_json(DRAFT_KEY, {}) == {}


def test_file_store_delete_is_quiet_for_missing_keys(tmp_path: Path):
    kv = FileKeyValueStore(tmp_path)
    kv.init()
    kv.set_json(DRAFT_KEY, {"name": "Ana"})

    kv.delete(DRAFT_KEY)
    kv.delete(DRAFT_KEY)

    assert kv.get_json(DRAFT_KEY) is None


def test_file_store_rejects_bad_keys_and_closed_use(tmp_path: Path):
    kv = FileKeyValueStore(tmp_path)
    with pytest.raises(RuntimeError):
        kv.get_json(USERS_KEY)

    kv.init()
    with pytest.raises(ValueError):
        kv.set_json("../escape", {})
    with pytest.raises(ValueError):
        kv.set_json(".hidden", {})


def test_memory_store_hands_out_copies():
    kv = MemoryKeyValueStore()
    kv.init()
    value = {"labs": [1, 2]}
    kv.set_json(DRAFT_KEY, value)

    value["labs"].append(3)
    loaded = kv.get_json(DRAFT_KEY)
    loaded["labs"].append(4)

    assert kv.get_json(DRAFT_KEY) == {"labs": [1, 2]}
    assert kv.keys() == [DRAFT_KEY]
