import asyncio
import logging
from decimal import Decimal

import pytest

from huanale.models.ledger import InputSession, Transaction
from huanale.services.ai.common.errors import UpstreamRequestFailed
from huanale.services.ai.common.providers import BaseProvider, MockProvider, ProviderResult
from huanale.services.ai.common.providers.base import emit_delta
from huanale.services.ingestion.errors import InvalidInput, NoDataExtracted, PersistenceFailed
from huanale.services.ingestion.orchestrator import (
    SessionOrchestrator,
    drain_background_tasks,
    pending_background_tasks,
)
from huanale.services.ledger_store import LedgerStore, StoreError

IMAGE = "data:image/png;base64,AAAA"

BILL_OUTPUT = (
    '{"transactions": ['
    '{"title": "Milk", "amount": 12.5, "currency": "¥", "category": "Groceries", "merchant": "Mart"}, '
    '{"title": "Tape", "amount": 3, "category": "Office"}, '
    '{"title": "Bread", "amount": "6.8"}'
    "]}"
)


class ScriptedGateway(BaseProvider):
    """Streams *fragments* (optionally pausing) and returns *raw_text*."""

    name = "scripted"

    def __init__(self, fragments, raw_text=None, *, pause=0.0):
        self.fragments = list(fragments)
        self.raw_text = raw_text if raw_text is not None else "".join(self.fragments)
        self.pause = pause

    @property
    def is_configured(self):
        return True

    async def generate(self, messages, **kwargs):
        raise NotImplementedError

    async def generate_vision(self, prompt, image, **kwargs):
        raise NotImplementedError

    async def generate_vision_stream(self, prompt, image, on_delta, **kwargs):
        for fragment in self.fragments:
            if self.pause:
                await asyncio.sleep(self.pause)
            await emit_delta(on_delta, fragment)
        return ProviderResult(raw_text=self.raw_text, model="scripted-1", provider=self.name)


async def _image():
    return IMAGE


async def _collect(orchestrator, gateway, *, load_image=_image):
    events = []
    async for event in orchestrator.stream_bill(
        gateway=gateway, prompt="extract", load_image=load_image, raw_input="u/bill.png"
    ):
        events.append(event)
    return events


def _data_events(events):
    return [e for e in events if e is not None]


def _session_row(session_factory, session_id):
    db = session_factory()
    try:
        row = db.get(InputSession, session_id)
        count = db.query(Transaction).filter(Transaction.session_id == session_id).count()
        return row, count
    finally:
        db.close()


@pytest.mark.asyncio
async def test_stream_three_items_in_order(session_factory, user_id):
    orchestrator = SessionOrchestrator(user_id, session_factory, keepalive_seconds=30)

    events = _data_events(await _collect(orchestrator, MockProvider(BILL_OUTPUT, chunk_size=9)))

    assert [e["type"] for e in events] == [
        "session_created",
        "transaction_inserted",
        "transaction_inserted",
        "transaction_inserted",
        "completed",
    ]
    inserted = events[1:4]
    assert [e["progress"]["completed"] for e in inserted] == [1, 2, 3]
    assert [e["data"]["title"] for e in inserted] == ["Milk", "Tape", "Bread"]
    assert inserted[0]["data"]["merchant"] == "Mart"
    assert all(e["data"]["type"] == "expense" for e in inserted)
    assert all(e["data"]["note"] == "Scanned Receipt" for e in inserted)

    session_id = events[0]["session_id"]
    final = events[-1]
    assert final["session_id"] == session_id
    assert final["total_count"] == 3
    assert final["total_amount"] == pytest.approx(22.3)

    row, count = _session_row(session_factory, session_id)
    assert count == 3
    assert row.record_count == 3
    assert row.total_amount == Decimal("22.30")
    assert row.currency == "¥"
    assert row.raw_input == "u/bill.png"
    assert row.ai_raw_output["transactions"][0]["title"] == "Milk"


@pytest.mark.asyncio
async def test_stream_without_valid_items_ends_with_error(session_factory, user_id):
    output = '{"transactions": [{"title": "Subtotal", "amount": 0}, {"title": "?", "amount": "n/a"}]}'
    orchestrator = SessionOrchestrator(user_id, session_factory, keepalive_seconds=30)

    events = _data_events(await _collect(orchestrator, MockProvider(output, chunk_size=4)))

    assert [e["type"] for e in events] == ["session_created", "error"]
    assert events[-1]["message"] == "Could not extract transaction data"

    row, count = _session_row(session_factory, events[0]["session_id"])
    assert row is not None
    assert row.record_count == 0
    assert row.total_amount == Decimal("0")
    assert count == 0


@pytest.mark.asyncio
async def test_stream_reconciles_items_the_scanner_never_confirmed(session_factory, user_id):
    # The last fragment never arrives as a delta; only the final text carries it.
    gateway = ScriptedGateway(
        ['{"transactions": [{"title": "A", "amount": 1}, ', '{"title": "B", "amount": 2}'],
        raw_text='{"transactions": [{"title": "A", "amount": 1}, {"title": "B", "amount": 2}]}',
    )
    orchestrator = SessionOrchestrator(user_id, session_factory, keepalive_seconds=30)

    events = _data_events(await _collect(orchestrator, gateway))

    inserted = [e for e in events if e["type"] == "transaction_inserted"]
    assert [e["data"]["title"] for e in inserted] == ["A", "B"]
    assert [e["progress"]["completed"] for e in inserted] == [1, 2]
    assert events[-1]["total_count"] == 2
    assert events[-1]["total_amount"] == pytest.approx(3.0)


@pytest.mark.asyncio
async def test_stream_continues_after_single_insert_failure(session_factory, user_id, monkeypatch):
    original = LedgerStore.insert_transaction
    calls = {"n": 0}

    async def flaky(self, row):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StoreError("constraint")
        return await original(self, row)

    monkeypatch.setattr(LedgerStore, "insert_transaction", flaky)
    orchestrator = SessionOrchestrator(user_id, session_factory, keepalive_seconds=30)

    events = _data_events(await _collect(orchestrator, MockProvider(BILL_OUTPUT, chunk_size=11)))

    inserted = [e for e in events if e["type"] == "transaction_inserted"]
    assert [e["data"]["title"] for e in inserted] == ["Tape", "Bread"]
    assert [e["progress"]["completed"] for e in inserted] == [1, 2]
    assert events[-1]["type"] == "completed"
    assert events[-1]["total_amount"] == pytest.approx(9.8)

    row, count = _session_row(session_factory, events[0]["session_id"])
    assert row.record_count == count == 2
    # Currency comes from the first row that was actually stored.
    assert row.currency == "¥"


@pytest.mark.asyncio
async def test_stream_model_failure_becomes_error_event(session_factory, user_id):
    gateway = MockProvider(error=UpstreamRequestFailed(503, "busy"))
    orchestrator = SessionOrchestrator(user_id, session_factory, keepalive_seconds=30)

    events = _data_events(await _collect(orchestrator, gateway))

    assert [e["type"] for e in events] == ["session_created", "error"]
    assert events[-1]["message"] == "AI service unavailable"


@pytest.mark.asyncio
async def test_stream_image_failure_becomes_error_event(session_factory, user_id):
    async def broken_image():
        raise InvalidInput("Invalid storage_path")

    gateway = MockProvider(BILL_OUTPUT)
    orchestrator = SessionOrchestrator(user_id, session_factory, keepalive_seconds=30)

    events = _data_events(await _collect(orchestrator, gateway, load_image=broken_image))

    assert events[-1] == {"type": "error", "message": "Invalid storage_path"}
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_stream_session_insert_failure(session_factory, user_id, monkeypatch):
    async def fail(self, values):
        raise StoreError("down")

    monkeypatch.setattr(LedgerStore, "insert_session", fail)
    gateway = MockProvider(BILL_OUTPUT)
    orchestrator = SessionOrchestrator(user_id, session_factory, keepalive_seconds=30)

    events = _data_events(await _collect(orchestrator, gateway))

    assert events == [{"type": "error", "message": "Failed to create session"}]
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_keepalive_ticks_during_slow_stream_and_stops_after(session_factory, user_id):
    gateway = ScriptedGateway(
        ['{"transactions": [{"title": "A", "amount": 1}', "]}"],
        pause=0.05,
    )
    orchestrator = SessionOrchestrator(user_id, session_factory, keepalive_seconds=0.01)

    events = await _collect(orchestrator, gateway)

    assert None in events
    assert _data_events(events)[-1]["type"] == "completed"
    others = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
    assert others == []


@pytest.mark.asyncio
async def test_closing_stream_early_still_completes_session(session_factory, user_id):
    gateway = ScriptedGateway(
        [
            '{"transactions": [',
            '{"title": "A", "amount": 1}, ',
            '{"title": "B", "amount": 2}, ',
            '{"title": "C", "amount": 4}',
            "]}",
        ],
        pause=0.05,
    )
    orchestrator = SessionOrchestrator(user_id, session_factory, keepalive_seconds=0.01)

    stream = orchestrator.stream_bill(gateway=gateway, prompt="p", load_image=_image)
    seen = []
    while len(seen) < 2:
        event = await stream.__anext__()
        if event is not None:
            seen.append(event)
    assert [e["type"] for e in seen] == ["session_created", "transaction_inserted"]
    before = pending_background_tasks()
    await stream.aclose()

    # The worker outlives the consumer and finishes the session on its own.
    assert pending_background_tasks() == before + 1
    await drain_background_tasks()
    assert pending_background_tasks() == before

    row, count = _session_row(session_factory, seen[0]["session_id"])
    assert count == 3
    assert row.record_count == 3
    assert row.total_amount == Decimal("7.00")
    others = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
    assert others == []


@pytest.mark.asyncio
async def test_stream_drops_amounts_that_round_to_zero(session_factory, user_id):
    output = '{"transactions": [{"title": "Crumb", "amount": 0.004}, {"title": "Tea", "amount": 2}]}'
    orchestrator = SessionOrchestrator(user_id, session_factory, keepalive_seconds=30)

    events = _data_events(await _collect(orchestrator, MockProvider(output, chunk_size=5)))

    inserted = [e for e in events if e["type"] == "transaction_inserted"]
    assert [e["data"]["title"] for e in inserted] == ["Tea"]
    assert [e["data"]["amount"] for e in inserted] == [2.0]
    assert events[-1]["total_count"] == 1

    row, count = _session_row(session_factory, events[0]["session_id"])
    assert row.record_count == count == 1


@pytest.mark.asyncio
async def test_stream_ignores_arrays_before_the_transactions_key(session_factory, user_id):
    output = (
        '{"merchant_tags": [{"k": "mart"}], '
        '"transactions": [{"title": "A", "amount": 5}, {"title": "B", "amount": 6}, {"title": "C", "amount": 7}]}'
    )
    orchestrator = SessionOrchestrator(user_id, session_factory, keepalive_seconds=30)

    events = _data_events(await _collect(orchestrator, MockProvider(output, chunk_size=1)))

    inserted = [e for e in events if e["type"] == "transaction_inserted"]
    assert [e["data"]["title"] for e in inserted] == ["A", "B", "C"]
    assert events[-1]["total_amount"] == pytest.approx(18.0)


def test_build_batch_synthesizes_session_and_rows(session_factory, user_id):
    orchestrator = SessionOrchestrator(user_id, session_factory)

    session, rows = orchestrator.build_batch(
        "voice",
        "coffee 5 and cake 12",
        [
            {"title": "Coffee", "amount": 5, "currency": "$"},
            {"title": "Cake", "amount": "12.255", "type": "income"},
            {"title": "Refund?", "amount": -3},
            {"title": "Free sample", "amount": 0},
        ],
        ai_raw_output={"transactions": []},
    )

    assert [r["title"] for r in rows] == ["Coffee", "Cake", "Free sample"]
    assert {r["session_id"] for r in rows} == {session["id"]}
    assert len({r["id"] for r in rows}) == 3
    assert rows[1]["type"] == "income"
    assert rows[1]["amount"] == Decimal("12.26")
    assert rows[0]["description"] == "coffee 5 and cake 12"
    assert rows[0]["note"] == "Voice input"
    assert rows[0]["icon"] == "receipt"
    assert session["record_count"] == 3
    assert session["total_amount"] == Decimal("17.26")
    assert session["currency"] == "$"


def test_build_batch_without_items_raises(session_factory, user_id):
    orchestrator = SessionOrchestrator(user_id, session_factory)

    with pytest.raises(NoDataExtracted):
        orchestrator.build_batch("text", "hello", [{"amount": -1}])
    with pytest.raises(NoDataExtracted):
        orchestrator.build_batch("text", "hello", [])


@pytest.mark.asyncio
async def test_persist_batch_writes_session_then_transactions(session_factory, user_id):
    orchestrator = SessionOrchestrator(user_id, session_factory)
    session, rows = orchestrator.build_batch("text", "tea 3", [{"title": "Tea", "amount": 3}])

    inserted = await orchestrator.persist_batch(session, rows)

    assert [r["id"] for r in inserted] == [r["id"] for r in rows]
    row, count = _session_row(session_factory, session["id"])
    assert row.user_id is not None
    assert row.record_count == 1
    assert count == 1


@pytest.mark.asyncio
async def test_persist_batch_store_failure(session_factory, user_id, monkeypatch):
    async def fail(self, values):
        raise StoreError("down")

    monkeypatch.setattr(LedgerStore, "insert_session", fail)
    orchestrator = SessionOrchestrator(user_id, session_factory)
    session, rows = orchestrator.build_batch("text", "tea 3", [{"title": "Tea", "amount": 3}])

    with pytest.raises(PersistenceFailed):
        await orchestrator.persist_batch(session, rows)


@pytest.mark.asyncio
async def test_dispatch_batch_persists_in_background(session_factory, user_id):
    orchestrator = SessionOrchestrator(user_id, session_factory)
    session, rows = orchestrator.build_batch("voice", "bus 2", [{"title": "Bus", "amount": 2}])

    before = pending_background_tasks()
    task = orchestrator.dispatch_batch(session, rows)
    assert pending_background_tasks() == before + 1
    await task

    assert pending_background_tasks() == before
    row, count = _session_row(session_factory, session["id"])
    assert row is not None
    assert count == 1


@pytest.mark.asyncio
async def test_dispatch_batch_failure_is_logged_not_raised(session_factory, user_id, monkeypatch, caplog):
    async def fail(self, values):
        raise StoreError("down")

    monkeypatch.setattr(LedgerStore, "insert_session", fail)
    orchestrator = SessionOrchestrator(user_id, session_factory)
    session, rows = orchestrator.build_batch("voice", "bus 2", [{"title": "Bus", "amount": 2}])

    with caplog.at_level(logging.ERROR, logger="huanale.services.ingestion.orchestrator"):
        await orchestrator.dispatch_batch(session, rows)

    assert "Background persist failed" in caplog.text
    row, _ = _session_row(session_factory, session["id"])
    assert row is None
