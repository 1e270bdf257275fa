from heroreel.events import EventChannel, ProgressEvent
from heroreel.models import HeroPoolResult, NormalizedHeroItem, StoredPool


def test_stored_pool_serialises_with_camel_case_and_drops_read_flags() -> None:
    pool = StoredPool(
        kind="movies",
        items=[{"id": "1"}],
        updated_at=5,
        expires_at=10,
        policy_hash="sig",
        is_expired=True,
        source="session",
    )

    payload = pool.to_storage()

    assert payload == {
        "kind": "movies",
        "items": [{"id": "1"}],
        "updatedAt": 5,
        "expiresAt": 10,
        "policyHash": "sig",
        "slotSummary": {},
    }
    assert StoredPool.model_validate(payload).expires_at == 10


def test_result_from_stored_pool_is_flagged_as_cached() -> None:
    pool = StoredPool(kind="series", items=[{"id": "a"}], expires_at=99, meta={"plan": {}})

    result = HeroPoolResult.from_stored(pool, stale=True)
    payload = result.to_payload()

    assert payload["fromCache"] is True
    assert payload["stale"] is True
    assert payload["kind"] == "series"
    result.items.append({"id": "b"})
    assert pool.items == [{"id": "a"}]


def test_normalized_item_payload_omits_empty_fields() -> None:
    item = NormalizedHeroItem(id="42", type="movie", title="Heat", pool_id="rk:42")

    payload = item.to_payload()

    assert payload["poolId"] == "rk:42"
    assert "tagline" not in payload
    assert payload["genres"] == []


def test_event_channel_isolates_failing_listeners() -> None:
    channel: EventChannel[ProgressEvent] = EventChannel("test")
    received: list[dict] = []

    def _broken(event: ProgressEvent) -> None:
        raise RuntimeError("listener bug")

    channel.subscribe(_broken)
    unsubscribe = channel.subscribe(lambda event: received.append(event.to_payload()))
    channel.publish(ProgressEvent(stage="done", kind="movies", timestamp=7, extra={"size": 3}))
    unsubscribe()
    channel.publish(ProgressEvent(stage="start", kind="movies", timestamp=8))

    assert received == [{"stage": "done", "kind": "movies", "timestamp": 7, "size": 3}]
    assert len(channel) == 1
