from __future__ import annotations

import asyncio
import json
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict

import pytest
import respx

from channel_hub.errors import AppError
from channel_hub.services.channels.orchestrator import CONNECTION_INACTIVE, UNMAPPED_ROOM_TYPE, ChannelOrchestrator
from channel_hub.services.channels.types import ConnectionStatus, InventoryUpdate, RateUpdate, ResultCode

from channel_fakes import FakeChannelProvider, make_booking, seed_connection

AGODA_BASE = "https://agoda.test/ycs/v2"
HOTEL = "hotel-1"


def _inv(room: str, day: int, available: bool = False) -> InventoryUpdate:
    return InventoryUpdate(room_id=room, date=date(2025, 7, day), available=available)


async def _status(orch: ChannelOrchestrator, connection: Dict[str, Any]) -> str:
    doc = await orch.connections.get(connection["_id"])
    return doc["status"]


@pytest.mark.anyio
async def test_push_reaches_agoda_grouped_by_room_type(orchestrator: ChannelOrchestrator) -> None:
    agoda = await seed_connection(
        orchestrator,
        hotel_id=HOTEL,
        channel_type="AGODA",
        property_id="AG-PROP-1",
        mappings={"101": "RT-55"},
        credentials={"api_key": "agoda-key", "property_id": "AG-PROP-1"},
    )
    update = InventoryUpdate(room_id="101", date=date(2025, 6, 1), available=False, price=3000)

    with respx.mock(assert_all_called=True) as router:
        route = router.post(f"{AGODA_BASE}/SetAriV2").respond(status_code=200, json={"success": True})
        outcomes = await orchestrator.push_inventory(HOTEL, [update])

    assert [o.to_dict()["success"] for o in outcomes] == [True]
    assert outcomes[0].connection_id == agoda["_id"]
    assert outcomes[0].result.affected_rooms == ["101"]

    body = json.loads(route.calls.last.request.content)
    assert body == {
        "propertyId": "AG-PROP-1",
        "ariUpdates": [{"roomTypeId": "RT-55", "dateRanges": [{"date": "2025-06-01", "availability": 0, "price": 3000}]}],
    }

    logs = await orchestrator.sync_logs.recent(agoda["_id"])
    assert len(logs) == 1
    assert logs[0]["operation"] == "PUSH_INVENTORY"
    assert logs[0]["success"] is True
    assert logs[0]["attempt"] == 1
    assert logs[0]["affected_rooms"] == ["101"]
    refreshed = await orchestrator.connections.get(agoda["_id"])
    assert refreshed["last_sync_at"] is not None


@pytest.mark.anyio
async def test_one_broken_adapter_does_not_affect_siblings(
    orchestrator: ChannelOrchestrator, fake_booking_com: FakeChannelProvider, fake_expedia: FakeChannelProvider
) -> None:
    bc = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={"R1": "EXT-1"})
    ex = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="EXPEDIA", property_id="EX-1", mappings={"R1": "EXT-1"})
    fake_booking_com.raise_on_push = RuntimeError("adapter bug")

    outcomes = await orchestrator.push_inventory(HOTEL, [_inv("R1", 1)])

    by_conn = {o.connection_id: o.result for o in outcomes}
    assert by_conn[bc["_id"]].success is False
    assert by_conn[bc["_id"]].code == ResultCode.UNKNOWN_ERROR.value
    assert by_conn[bc["_id"]].error_message == "adapter bug"
    assert by_conn[ex["_id"]].success is True
    assert len(fake_expedia.pushes()) == 1

    bc_logs = await orchestrator.sync_logs.recent(bc["_id"])
    ex_logs = await orchestrator.sync_logs.recent(ex["_id"])
    assert [(r["success"], r["code"]) for r in bc_logs] == [(False, "UNKNOWN_ERROR")]
    assert [(r["success"], r["code"]) for r in ex_logs] == [(True, "OK")]

    queued = await orchestrator.outbox.list_for_connection(bc["_id"])
    assert len(queued) == 1
    assert queued[0]["kind"] == "push_inventory"
    assert queued[0]["attempts"] == 1
    assert queued[0]["payload"]["updates"] == [{"room_id": "R1", "date": "2025-07-01", "available": False, "price": None}]
    assert await orchestrator.outbox.list_for_connection(ex["_id"]) == []


@pytest.mark.anyio
async def test_slow_adapter_is_cut_off_and_logged_as_timeout(
    orchestrator: ChannelOrchestrator, fake_booking_com: FakeChannelProvider
) -> None:
    bc = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={"R1": "EXT-1"})
    orchestrator.call_timeout = 0.05
    fake_booking_com.delay = 1.0

    outcomes = await orchestrator.push_inventory(HOTEL, [_inv("R1", 1)])

    assert outcomes[0].result.code == ResultCode.TIMEOUT.value
    logs = await orchestrator.sync_logs.recent(bc["_id"])
    assert logs[0]["code"] == "TIMEOUT"
    assert logs[0]["success"] is False
    assert "timed out" in logs[0]["error_message"]


@pytest.mark.anyio
async def test_pushes_to_one_connection_run_one_at_a_time_in_submission_order(
    orchestrator: ChannelOrchestrator,
    fake_booking_com: FakeChannelProvider,
    fake_expedia: FakeChannelProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={"R1": "EXT-1"})
    await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="EXPEDIA", property_id="EX-1", mappings={"R1": "EXT-1"})

    in_flight: Dict[str, int] = {"BOOKING_COM": 0, "EXPEDIA": 0, "all": 0}
    peak: Dict[str, int] = {"BOOKING_COM": 0, "EXPEDIA": 0, "all": 0}

    def track(fake: FakeChannelProvider) -> None:
        real_push = fake._push

        async def tracked(operation, updates):
            for key in (fake.channel_type, "all"):
                in_flight[key] += 1
                peak[key] = max(peak[key], in_flight[key])
            try:
                return await real_push(operation, updates)
            finally:
                for key in (fake.channel_type, "all"):
                    in_flight[key] -= 1

        monkeypatch.setattr(fake, "_push", tracked)

    for fake in (fake_booking_com, fake_expedia):
        fake.delay = 0.05
        track(fake)

    tasks = []
    for day in (1, 2, 3):
        tasks.append(asyncio.create_task(orchestrator.push_inventory(HOTEL, [_inv("R1", day)])))
        # each push reaches the connection gate before the next is submitted
        await asyncio.sleep(0.01)
    results = await asyncio.gather(*tasks)

    assert all(o.result.success for outcomes in results for o in outcomes)
    for fake in (fake_booking_com, fake_expedia):
        assert [[u.date.day for u in batch] for batch in fake.pushes()] == [[1], [2], [3]]
    assert peak["BOOKING_COM"] == 1
    assert peak["EXPEDIA"] == 1
    # different connections are not serialized behind each other
    assert peak["all"] == 2


@pytest.mark.anyio
async def test_fan_out_skips_unmapped_and_non_active_connections(
    orchestrator: ChannelOrchestrator, fake_booking_com: FakeChannelProvider, fake_expedia: FakeChannelProvider
) -> None:
    bc = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={"R2": "EXT-2"})
    await seed_connection(
        orchestrator,
        hotel_id=HOTEL,
        channel_type="EXPEDIA",
        property_id="EX-1",
        mappings={"R1": "EXT-1"},
        status=ConnectionStatus.DEGRADED,
    )
    await seed_connection(orchestrator, hotel_id="other-hotel", channel_type="EXPEDIA", property_id="EX-9", mappings={"R1": "EXT-1"})

    outcomes = await orchestrator.push_inventory(HOTEL, [_inv("R1", 1)])

    assert outcomes == []
    assert fake_booking_com.pushes() == []
    assert fake_expedia.pushes() == []
    assert await orchestrator.sync_logs.recent(bc["_id"]) == []
    assert await orchestrator.push_inventory(HOTEL, []) == []


@pytest.mark.anyio
async def test_unknown_channel_type_is_a_config_error(orchestrator: ChannelOrchestrator) -> None:
    conn = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="TRIVAGO", property_id="TV-1", mappings={"R1": "T-1"})

    outcomes = await orchestrator.push_inventory(HOTEL, [_inv("R1", 1)])

    assert outcomes[0].result.code == ResultCode.CONFIG_ERROR.value
    logs = await orchestrator.sync_logs.recent(conn["_id"])
    assert logs[0]["code"] == "CONFIG_ERROR"
    assert await orchestrator.outbox.list_for_connection(conn["_id"]) == []
    assert await _status(orchestrator, conn) == "ACTIVE"


@pytest.mark.anyio
async def test_consecutive_failures_degrade_and_revalidation_restores(
    orchestrator: ChannelOrchestrator, fake_booking_com: FakeChannelProvider
) -> None:
    from channel_hub.services.channels.connections import revalidate_connection

    bc = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={"R1": "EXT-1"})

    fake_booking_com.push_code = ResultCode.PROVIDER_UNAVAILABLE.value
    await orchestrator.push_inventory(HOTEL, [_inv("R1", 1)])
    await orchestrator.push_inventory(HOTEL, [_inv("R1", 2)])
    fake_booking_com.push_code = None
    await orchestrator.push_inventory(HOTEL, [_inv("R1", 3)])
    fake_booking_com.push_code = ResultCode.PROVIDER_UNAVAILABLE.value
    await orchestrator.push_inventory(HOTEL, [_inv("R1", 4)])
    await orchestrator.push_inventory(HOTEL, [_inv("R1", 5)])
    assert await _status(orchestrator, bc) == "ACTIVE"

    await orchestrator.push_inventory(HOTEL, [_inv("R1", 6)])
    assert await _status(orchestrator, bc) == "DEGRADED"

    # degraded connections are left out of the fan-out
    assert await orchestrator.push_inventory(HOTEL, [_inv("R1", 7)]) == []
    assert len(fake_booking_com.pushes()) == 6

    fake_booking_com.push_code = None
    doc, check = await revalidate_connection(orchestrator, bc["_id"])
    assert check.valid is True
    assert doc["status"] == "ACTIVE"


@pytest.mark.anyio
async def test_failures_before_recovery_do_not_degrade_again(
    orchestrator: ChannelOrchestrator, fake_booking_com: FakeChannelProvider
) -> None:
    from channel_hub.services.channels.connections import revalidate_connection

    bc = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={"R1": "EXT-1"})
    fake_booking_com.push_code = ResultCode.PROVIDER_UNAVAILABLE.value
    for day in (1, 2, 3):
        await orchestrator.push_inventory(HOTEL, [_inv("R1", day)])
    assert await _status(orchestrator, bc) == "DEGRADED"

    doc, _ = await revalidate_connection(orchestrator, bc["_id"])
    assert doc["status"] == "ACTIVE"

    # the streak starts over at the recovery
    await orchestrator.push_inventory(HOTEL, [_inv("R1", 4)])
    assert await _status(orchestrator, bc) == "ACTIVE"
    await orchestrator.push_inventory(HOTEL, [_inv("R1", 5)])
    assert await _status(orchestrator, bc) == "ACTIVE"
    await orchestrator.push_inventory(HOTEL, [_inv("R1", 6)])
    assert await _status(orchestrator, bc) == "DEGRADED"

    checks = await orchestrator.sync_logs.recent(bc["_id"], operations=["VALIDATE_CREDENTIALS"])
    assert [r["outcome"] for r in checks] == ["RECOVERED"]


@pytest.mark.anyio
async def test_auth_hiccups_with_valid_credentials_still_degrade(
    orchestrator: ChannelOrchestrator, fake_expedia: FakeChannelProvider
) -> None:
    ex = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="EXPEDIA", property_id="EX-1", mappings={"R1": "EXT-1"})
    fake_expedia.push_code = ResultCode.AUTH_FAILED.value

    for day in (1, 2, 3):
        await orchestrator.push_inventory(HOTEL, [_inv("R1", day)])

    assert await _status(orchestrator, ex) == "DEGRADED"
    checks = await orchestrator.sync_logs.recent(ex["_id"], operations=["VALIDATE_CREDENTIALS"])
    assert [(r["success"], r["outcome"]) for r in checks] == [(True, None)] * 3


@pytest.mark.anyio
async def test_not_implemented_results_never_degrade(
    orchestrator: ChannelOrchestrator, fake_booking_com: FakeChannelProvider
) -> None:
    bc = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={"R1": "EXT-1"})
    fake_booking_com.push_code = ResultCode.NOT_IMPLEMENTED.value

    for day in (1, 2, 3, 4):
        await orchestrator.push_inventory(HOTEL, [_inv("R1", day)])

    assert await _status(orchestrator, bc) == "ACTIVE"
    assert await orchestrator.outbox.list_for_connection(bc["_id"]) == []


@pytest.mark.anyio
async def test_auth_failure_rechecks_credentials(
    orchestrator: ChannelOrchestrator, fake_booking_com: FakeChannelProvider, fake_expedia: FakeChannelProvider
) -> None:
    bc = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={"R1": "EXT-1"})
    ex = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="EXPEDIA", property_id="EX-1", mappings={"R1": "EXT-1"})

    # Booking.com: credentials really revoked -> INACTIVE, nothing retried
    fake_booking_com.push_code = ResultCode.AUTH_FAILED.value
    fake_booking_com.valid = False
    # Expedia: transient auth hiccup, credentials still good -> retry queued
    fake_expedia.push_code = ResultCode.AUTH_FAILED.value

    await orchestrator.push_inventory(HOTEL, [_inv("R1", 1)])

    bc_doc = await orchestrator.connections.get(bc["_id"])
    assert bc_doc["status"] == "INACTIVE"
    assert bc_doc["last_error"] == "credentials rejected"
    assert await orchestrator.outbox.list_for_connection(bc["_id"]) == []

    assert await _status(orchestrator, ex) == "ACTIVE"
    assert [q["kind"] for q in await orchestrator.outbox.list_for_connection(ex["_id"])] == ["push_inventory"]
    ops = [r["operation"] for r in await orchestrator.sync_logs.recent(bc["_id"])]
    assert ops == ["VALIDATE_CREDENTIALS", "PUSH_INVENTORY"]


@pytest.mark.anyio
async def test_successful_push_supersedes_queued_retry(
    orchestrator: ChannelOrchestrator, fake_booking_com: FakeChannelProvider
) -> None:
    bc = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={"R1": "EXT-1"})
    fake_booking_com.push_code = ResultCode.TIMEOUT.value
    await orchestrator.push_inventory(HOTEL, [_inv("R1", 1), _inv("R1", 2)])
    fake_booking_com.push_code = None

    await orchestrator.push_inventory(HOTEL, [_inv("R1", 1, available=True)])
    [item] = await orchestrator.outbox.list_for_connection(bc["_id"])
    assert item["status"] == "pending"
    assert [u["date"] for u in item["payload"]["updates"]] == ["2025-07-02"]

    await orchestrator.push_inventory(HOTEL, [_inv("R1", 2, available=True)])
    [item] = await orchestrator.outbox.list_for_connection(bc["_id"])
    assert item["status"] == "superseded"


@pytest.mark.anyio
async def test_sync_connection_pushes_ledger_availability_for_mapped_rooms(
    orchestrator: ChannelOrchestrator, fake_booking_com: FakeChannelProvider, fake_expedia: FakeChannelProvider
) -> None:
    bc = await seed_connection(
        orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={"R1": "EXT-1", "R2": "EXT-2"}
    )
    await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="EXPEDIA", property_id="EX-1", mappings={"R1": "EXT-1"})
    await orchestrator.reconciler.reserve_direct(HOTEL, "R1", date(2025, 7, 2), date(2025, 7, 3), guest_name="Walk In")

    outcome = await orchestrator.sync_connection(bc["_id"], date(2025, 7, 1), date(2025, 7, 4))

    assert outcome.result.success is True
    [batch] = fake_booking_com.pushes()
    assert [(u.room_id, u.date.day, u.available) for u in batch] == [
        ("R1", 1, True),
        ("R1", 2, False),
        ("R1", 3, True),
        ("R2", 1, True),
        ("R2", 2, True),
        ("R2", 3, True),
    ]
    assert fake_expedia.pushes() == []
    [log] = await orchestrator.sync_logs.recent(bc["_id"])
    assert (log["operation"], log["success"]) == ("PUSH_INVENTORY", True)

    # a failed sync is retried like any other push
    fake_booking_com.push_code = ResultCode.PROVIDER_UNAVAILABLE.value
    failed = await orchestrator.sync_connection(bc["_id"], date(2025, 7, 1), date(2025, 7, 2))
    assert failed.result.code == "PROVIDER_UNAVAILABLE"
    [queued] = await orchestrator.outbox.list_for_connection(bc["_id"])
    assert [(u["room_id"], u["date"]) for u in queued["payload"]["updates"]] == [("R1", "2025-07-01"), ("R2", "2025-07-01")]


@pytest.mark.anyio
async def test_sync_connection_guards(orchestrator: ChannelOrchestrator, fake_booking_com: FakeChannelProvider) -> None:
    degraded = await seed_connection(
        orchestrator,
        hotel_id=HOTEL,
        channel_type="BOOKING_COM",
        property_id="BC-1",
        mappings={"R1": "EXT-1"},
        status=ConnectionStatus.DEGRADED,
    )
    skipped = await orchestrator.sync_connection(degraded["_id"], date(2025, 7, 1), date(2025, 7, 2))
    assert skipped.result.code == CONNECTION_INACTIVE
    assert fake_booking_com.pushes() == []

    unmapped = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="EXPEDIA", property_id="EX-1", mappings={})
    with pytest.raises(AppError) as exc:
        await orchestrator.sync_connection(unmapped["_id"], date(2025, 7, 1), date(2025, 7, 2))
    assert exc.value.code == "no_room_mappings"

    with pytest.raises(AppError) as exc:
        await orchestrator.sync_connection(unmapped["_id"], date(2025, 1, 1), date(2026, 6, 1))
    assert exc.value.code == "date_range_too_long"

    with pytest.raises(AppError) as exc:
        await orchestrator.sync_connection("missing", date(2025, 7, 1), date(2025, 7, 2))
    assert exc.value.status_code == 404


@pytest.mark.anyio
async def test_push_rates_fills_rate_plan_from_mapping(
    orchestrator: ChannelOrchestrator, fake_booking_com: FakeChannelProvider
) -> None:
    bc = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={})
    await orchestrator.mappings.replace(
        bc["_id"],
        [
            {"local_room_id": "R1", "external_room_type_id": "EXT-1", "external_rate_plan_id": "BAR"},
            {"local_room_id": "R2", "external_room_type_id": "EXT-2", "external_rate_plan_id": "BAR2"},
        ],
    )
    updates = [
        RateUpdate(room_id="R1", date=date(2025, 7, 1), price=99.0, currency="USD"),
        RateUpdate(room_id="R2", date=date(2025, 7, 1), price=79.0, currency="USD", external_rate_plan_id="PROMO"),
    ]

    outcomes = await orchestrator.push_rates(HOTEL, updates)

    assert outcomes[0].result.success is True
    [pushed] = fake_booking_com.pushes("PUSH_RATES")
    assert [(u.room_id, u.external_rate_plan_id) for u in pushed] == [("R1", "BAR"), ("R2", "PROMO")]
    logs = await orchestrator.sync_logs.recent(bc["_id"])
    assert logs[0]["operation"] == "PUSH_RATES"


@pytest.mark.anyio
async def test_booking_propagates_to_other_channels_only(
    test_db: Any,
    orchestrator: ChannelOrchestrator,
    fake_booking_com: FakeChannelProvider,
    fake_expedia: FakeChannelProvider,
) -> None:
    await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={"R1": "EXT-1"})
    await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="EXPEDIA", property_id="EX-1", mappings={"R1": "EX-R1"})

    result = await orchestrator.ingest_webhook(
        "booking_com",
        {"id": "BC-77", "property": "BC-1", "room_type": "EXT-1", "check_in": "2025-07-01", "check_out": "2025-07-03"},
    )

    assert result.status == "processed"
    assert result.outcome == "COMMITTED"
    assert fake_booking_com.pushes() == []
    [pushed] = fake_expedia.pushes()
    assert [(u.room_id, u.date.isoformat(), u.available) for u in pushed] == [
        ("R1", "2025-07-01", False),
        ("R1", "2025-07-02", False),
    ]
    assert await test_db.bookings.count_documents({"status": "CONFIRMED"}) == 1

    cancelled = await orchestrator.ingest_webhook(
        "BOOKING_COM",
        {
            "id": "BC-77",
            "property": "BC-1",
            "room_type": "EXT-1",
            "check_in": "2025-07-01",
            "check_out": "2025-07-03",
            "status": "CANCELLED",
        },
    )
    assert cancelled.outcome == "CANCELLED"
    assert [u.available for u in fake_expedia.pushes()[-1]] == [True, True]


@pytest.mark.anyio
async def test_webhook_booking_logs_and_rejections(orchestrator: ChannelOrchestrator) -> None:
    bc = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={"R1": "EXT-1"})
    ex = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="EXPEDIA", property_id="EX-1", mappings={"R1": "EXT-1"})
    orchestrator.propagate_bookings = False

    await orchestrator.ingest_webhook(
        "BOOKING_COM", {"id": "BC-1", "property": "BC-1", "check_in": "2025-07-01", "check_out": "2025-07-03"}
    )
    lost = await orchestrator.ingest_webhook(
        "EXPEDIA", {"id": "EX-1", "property": "EX-1", "check_in": "2025-07-02", "check_out": "2025-07-04"}
    )

    assert lost.outcome == "CONFLICTED"
    [row] = await orchestrator.sync_logs.for_booking(ex["_id"], "EX-1")
    assert row["scope"] == "booking"
    assert row["operation"] == "WEBHOOK"
    assert row["success"] is False
    assert row["code"] == "ROOM_NIGHT_CONFLICT"
    assert row["outcome"] == "CONFLICTED"

    # booking-scope rejections never count towards connection health
    assert await _status(orchestrator, ex) == "ACTIVE"
    [won] = await orchestrator.sync_logs.for_booking(bc["_id"], "BC-1")
    assert (won["outcome"], won["success"]) == ("COMMITTED", True)


@pytest.mark.anyio
async def test_unmapped_room_type_is_logged_and_discarded(test_db: Any, orchestrator: ChannelOrchestrator) -> None:
    bc = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={"R1": "EXT-1"})

    result = await orchestrator.ingest_webhook(
        "BOOKING_COM",
        {"id": "BC-5", "property": "BC-1", "room_type": "EXT-RETIRED", "check_in": "2025-07-01", "check_out": "2025-07-02"},
    )

    assert result.status == "discarded"
    assert result.reason == "unmapped_room_type"
    [row] = await orchestrator.sync_logs.for_booking(bc["_id"], "BC-5")
    assert row["code"] == UNMAPPED_ROOM_TYPE
    assert await test_db.bookings.count_documents({}) == 0


@pytest.mark.anyio
async def test_webhook_for_unknown_or_unlinked_property(orchestrator: ChannelOrchestrator) -> None:
    bc = await seed_connection(
        orchestrator,
        hotel_id=HOTEL,
        channel_type="BOOKING_COM",
        property_id="BC-1",
        mappings={"R1": "EXT-1"},
        status=ConnectionStatus.INACTIVE,
    )
    payload = {"id": "BC-5", "property": "BC-1", "room_type": "EXT-1", "check_in": "2025-07-01", "check_out": "2025-07-02"}

    unlinked = await orchestrator.ingest_webhook("BOOKING_COM", payload)
    unknown = await orchestrator.ingest_webhook("BOOKING_COM", dict(payload, property="BC-404"))
    malformed = await orchestrator.ingest_webhook("BOOKING_COM", {"garbage": True})

    assert (unlinked.status, unlinked.reason) == ("discarded", "connection_inactive")
    [row] = await orchestrator.sync_logs.for_booking(bc["_id"], "BC-5")
    assert row["code"] == CONNECTION_INACTIVE
    assert (unknown.status, unknown.reason) == ("discarded", "unknown_property")
    assert (malformed.status, malformed.reason) == ("discarded", "malformed_payload")


@pytest.mark.anyio
async def test_pull_deduplicates_overlapping_results(
    test_db: Any, orchestrator: ChannelOrchestrator, fake_booking_com: FakeChannelProvider
) -> None:
    bc = await seed_connection(
        orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={"R1": "EXT-1", "R2": "EXT-2"}
    )
    fake_booking_com.bookings = [
        make_booking("BC-1", channel_type="BOOKING_COM", property_id="BC-1", guest_name="Old Name"),
        make_booking("BC-2", channel_type="BOOKING_COM", property_id="BC-1", room_type="EXT-2"),
        make_booking("BC-1", channel_type="BOOKING_COM", property_id="BC-1", guest_name="New Name"),
    ]

    before = datetime.now(timezone.utc)
    summary = await orchestrator.pull_connection(bc["_id"])

    assert summary.success is True
    assert summary.fetched == 2
    assert summary.outcomes == {"COMMITTED": 2}
    assert await test_db.bookings.count_documents({}) == 2
    row = await test_db.bookings.find_one({"external_booking_id": "BC-1"})
    assert row["guest_name"] == "New Name"

    pull_log = (await orchestrator.sync_logs.recent(bc["_id"], operations=["PULL_BOOKINGS"], scope="connection"))[0]
    assert pull_log["success"] is True
    assert pull_log["raw_response"]["count"] == 3

    refreshed = await orchestrator.connections.get(bc["_id"])
    assert refreshed["last_pull_at"] is not None

    again = await orchestrator.pull_connection(bc["_id"])
    assert again.outcomes == {"DUPLICATE": 2}
    assert await test_db.bookings.count_documents({}) == 2

    first_since, second_since = [c[1] for c in fake_booking_com.calls if c[0] == "pull"]
    assert first_since < before - timedelta(hours=1)
    # the follow-up window overlaps the previous pull
    assert before - timedelta(minutes=10) < second_since < before


@pytest.mark.anyio
async def test_pull_failures_degrade_but_keep_pulling(
    orchestrator: ChannelOrchestrator, fake_booking_com: FakeChannelProvider
) -> None:
    bc = await seed_connection(orchestrator, hotel_id=HOTEL, channel_type="BOOKING_COM", property_id="BC-1", mappings={"R1": "EXT-1"})
    fake_booking_com.pull_code = ResultCode.PROVIDER_UNAVAILABLE.value

    for _ in range(3):
        summary = await orchestrator.pull_connection(bc["_id"])
        assert summary.success is False
        assert summary.code == "PROVIDER_UNAVAILABLE"
    assert await _status(orchestrator, bc) == "DEGRADED"

    fake_booking_com.pull_code = None
    summaries = await orchestrator.pull_all()
    assert [s.success for s in summaries] == [True]


@pytest.mark.anyio
async def test_pull_skips_inactive_and_rejects_unknown(orchestrator: ChannelOrchestrator) -> None:
    conn = await seed_connection(
        orchestrator,
        hotel_id=HOTEL,
        channel_type="BOOKING_COM",
        property_id="BC-1",
        mappings={},
        status=ConnectionStatus.PENDING,
    )

    summary = await orchestrator.pull_connection(conn["_id"])
    assert summary.skipped is True
    assert summary.code == CONNECTION_INACTIVE
    assert await orchestrator.pull_all() == []

    with pytest.raises(AppError) as exc:
        await orchestrator.pull_connection("missing")
    assert exc.value.status_code == 404
