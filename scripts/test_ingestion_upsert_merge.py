#!/usr/bin/env python3
"""
入库 pipeline：同 id 重复入库只留一条、字段 merge、qa_integrity/timestamp 整体重算、timestamp 回退、不可 key 记录跳过。
直接驱动 InMemoryIncidentStore，不需要服务。
"""
from __future__ import annotations

from _fakes import BASE_NOW_MS, DAY_MS, HOUR_MS, FakeFeedClient, feed_datetime, make_incident

from honestwatch.incidents_logic import build_stored_incident, merge_incident_record
from honestwatch.ingestion_logic import sync_latest, upsert_incidents
from honestwatch.store import InMemoryIncidentStore
from honestwatch.timestamps import feed_datetime_to_epoch_ms

NOW = BASE_NOW_MS


def test_reingest_same_id_keeps_one_record_with_second_assessment():
    store = InMemoryIncidentStore()
    first = make_incident(4711)
    second = make_incident(
        4711,
        summary="kort",
        datetime=feed_datetime(NOW - 2 * DAY_MS),
        location={"gps": "0,0"},
    )
    assert upsert_incidents(store, [first], NOW) == 1
    assert upsert_incidents(store, [second], NOW + 1000) == 1
    assert len(store) == 1

    rec = store.get("4711")
    assert rec["summary"] == "kort"
    assert rec["timestamp"] == feed_datetime_to_epoch_ms(second["datetime"])
    # location 字段级 merge：name 保留，gps 被覆盖
    assert rec["location"] == {"name": "Stockholm", "gps": "0,0"}
    # 评分针对入库 payload 重算（不看 merge 后保留的旧 name）
    assert rec["qa_integrity"]["score"] == 0 + 15 + 20 + 0
    assert rec["qa_integrity"]["reasons"][0] == "Missing GPS coordinates"


def test_fields_absent_from_new_payload_persist():
    store = InMemoryIncidentStore()
    upsert_incidents(store, [make_incident(9, extra_note="kept")], NOW)
    newer = {"id": 9, "summary": "Updated summary text for the event", "datetime": feed_datetime(NOW - HOUR_MS)}
    upsert_incidents(store, [newer], NOW)
    rec = store.get("9")
    assert rec["extra_note"] == "kept"
    assert rec["url"].startswith("/aktuellt/")
    assert rec["summary"] == "Updated summary text for the event"


def test_unparseable_datetime_falls_back_to_ingest_time():
    store = InMemoryIncidentStore()
    upsert_incidents(store, [make_incident(5, datetime="igår kväll")], NOW)
    upsert_incidents(store, [make_incident(6, datetime=None)], NOW)
    for key in ("5", "6"):
        rec = store.get(key)
        assert rec["timestamp"] == NOW
        assert isinstance(rec["timestamp"], int)
        assert "Invalid timestamp format" in rec["qa_integrity"]["reasons"]


def test_caller_supplied_derived_fields_are_discarded():
    forged = make_incident(
        77,
        qa_integrity={"score": 100, "reasons": [], "isLowConfidence": False},
        timestamp=1,
        isMockedData=True,
        summary="",
    )
    key, doc = build_stored_incident(forged, NOW)
    assert key == "77"
    assert "isMockedData" not in doc
    assert doc["timestamp"] != 1
    assert doc["qa_integrity"]["score"] == 70


def test_unkeyable_and_sandbox_prefixed_ids_are_skipped():
    store = InMemoryIncidentStore()
    events = [
        make_incident(None),
        make_incident(""),
        make_incident("mock_12"),
        "not an object",
        make_incident(12),
    ]
    assert upsert_incidents(store, events, NOW) == 1
    assert len(store) == 1
    assert store.get("12") is not None


def test_merge_replaces_derived_fields_whole():
    existing = {
        "id": 1,
        "location": {"name": "A", "gps": "1,1"},
        "qa_integrity": {"score": 100, "reasons": [], "isLowConfidence": False, "legacy": True},
        "timestamp": 10,
        "isMockedData": True,
    }
    incoming = {
        "id": 1,
        "location": {"gps": "2,2"},
        "qa_integrity": {"score": 30, "reasons": ["x"], "isLowConfidence": True},
        "timestamp": 20,
    }
    merged = merge_incident_record(existing, incoming)
    assert merged["location"] == {"name": "A", "gps": "2,2"}
    assert merged["qa_integrity"] == incoming["qa_integrity"]
    assert merged["timestamp"] == 20
    assert "isMockedData" not in merged
    # 输入不被修改
    assert existing["location"] == {"name": "A", "gps": "1,1"}
    assert merge_incident_record(None, incoming) == incoming


def test_sync_latest_upserts_feed_batch():
    store = InMemoryIncidentStore()
    client = FakeFeedClient(latest=[make_incident(1), make_incident(2), make_incident(1, summary="dup")])
    assert sync_latest(store, client, NOW) == 3
    assert len(store) == 2
    assert store.get("1")["summary"] == "dup"
    assert client.calls == [("latest", None)]


def main() -> None:
    for name, fn in sorted(globals().items()):
        if name.startswith("test_") and callable(fn):
            fn()
            print(f"PASS: {name}")


if __name__ == "__main__":
    main()
