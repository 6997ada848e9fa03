"""Session orchestration: turns extracted items into a session and its transactions.

Two modes:

* batch (text, voice, non-streaming bill): all items are known up front; the
  session row is written first, then every transaction row in one insert.
  ``persist_batch`` awaits the writes, ``dispatch_batch`` detaches them.
* streaming (bill): the session row is written before the model is called and
  each transaction is written as soon as the incremental scanner confirms it.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterator, Optional

from sqlalchemy.orm import Session

from huanale.core.config import get_settings
from huanale.models.ledger import utcnow
from huanale.services.ai.common.errors import AIError, JsonParseFailed
from huanale.services.ai.common.json_tools import (
    items_from_payload,
    object_elements,
    parse_complete,
    parse_incremental,
)
from huanale.services.ai.common.providers import BaseProvider
from huanale.services.ledger_store import LedgerStore, StoreError

from .contracts import IngestState, NormalizedItem, Source, SourceDefaults
from .errors import AIServiceUnavailable, IngestionError, NoDataExtracted, PersistenceFailed
from .normalizer import defaults_for, has_valid_amount, is_persistable, normalize, to_money

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]
DefaultsFactory = Callable[[Source], SourceDefaults]
ImageLoader = Callable[[], Awaitable[str]]

# Detached persistence tasks; held here so they are not garbage-collected mid-write.
_background_tasks: set[asyncio.Task] = set()

_DONE = object()

DEFAULT_ICON = {"icon": "receipt", "icon_bg": "bg-slate-50", "icon_color": "text-slate-500"}


@dataclass
class _StreamProgress:
    buffer: str = ""
    cursor: int = 0
    inserted: list[dict[str, Any]] = field(default_factory=list)
    total: Decimal = Decimal("0")

    @property
    def currency(self) -> Optional[str]:
        return self.inserted[0]["currency"] if self.inserted else None


def pending_background_tasks() -> int:
    """Number of detached writes and abandoned streams still running."""
    return len(_background_tasks)


async def drain_background_tasks() -> None:
    """Wait for every detached unit of work to finish; called on shutdown."""
    loop = asyncio.get_running_loop()
    while True:
        pending = [task for task in _background_tasks if task.get_loop() is loop]
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)


class SessionOrchestrator:
    def __init__(
        self,
        user_id: str,
        session_factory: SessionFactory,
        defaults_for_source: Optional[DefaultsFactory] = None,
        *,
        keepalive_seconds: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.user_id = str(user_id)
        self._session_factory = session_factory
        self._defaults_for_source = defaults_for_source or (
            lambda source: defaults_for(source, settings.default_currency)
        )
        self._keepalive_seconds = (
            keepalive_seconds if keepalive_seconds is not None else settings.stream_keepalive_seconds
        )

    @contextmanager
    def _store(self) -> Iterator[LedgerStore]:
        db = self._session_factory()
        try:
            yield LedgerStore(db, self.user_id)
        finally:
            db.close()

    def _transition(self, session_id: str, state: IngestState, **extra: Any) -> None:
        logger.info(
            "Ingest session=%s user=%s state=%s %s",
            session_id,
            self.user_id,
            state.value,
            " ".join(f"{k}={v}" for k, v in extra.items()),
        )

    def _transaction_row(
        self,
        session_id: str,
        item: NormalizedItem,
        defaults: SourceDefaults,
        raw_input: Optional[str],
    ) -> dict[str, Any]:
        return {
            "id": str(uuid.uuid4()),
            "user_id": self.user_id,
            "session_id": session_id,
            "title": item.title,
            "amount": to_money(item.amount),
            "currency": item.currency,
            "category": item.category,
            **DEFAULT_ICON,
            "type": item.type,
            "source": defaults.source,
            "note": defaults.note,
            "merchant": item.merchant,
            "description": defaults.description or raw_input,
        }

    # ------------------------------------------------------------------
    # Batch mode
    # ------------------------------------------------------------------

    def build_batch(
        self,
        source: Source,
        raw_input: Optional[str],
        raw_items: list[Any],
        ai_raw_output: Any = None,
    ) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        """Synthesize a session and its transaction rows with client-side ids.

        Raises ``NoDataExtracted`` when no item survives normalization.
        """
        defaults = self._defaults_for_source(source)
        items = [normalize(raw, defaults) for raw in raw_items]
        items = [item for item in items if is_persistable(item.amount)]
        if not items:
            raise NoDataExtracted()

        now = utcnow()
        session_id = str(uuid.uuid4())
        rows = [self._transaction_row(session_id, item, defaults, raw_input) for item in items]
        for row in rows:
            row["created_at"] = now
            row["updated_at"] = now

        session = {
            "id": session_id,
            "user_id": self.user_id,
            "source": source,
            "raw_input": raw_input,
            "ai_raw_output": ai_raw_output,
            "record_count": len(rows),
            "total_amount": sum((row["amount"] for row in rows), Decimal("0")),
            "currency": rows[0]["currency"],
            "created_at": now,
        }
        self._transition(session_id, IngestState.CREATED, items=len(rows))
        return session, rows

    async def persist_batch(
        self, session: dict[str, Any], rows: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Write the session, then its transactions. Raises ``PersistenceFailed``."""
        session_id = session["id"]
        self._transition(session_id, IngestState.PERSISTING)
        with self._store() as store:
            try:
                await store.insert_session(session)
                inserted = await store.insert_transactions(rows)
            except StoreError as exc:
                self._transition(session_id, IngestState.FAILED, reason="store")
                raise PersistenceFailed() from exc
        self._transition(session_id, IngestState.COMPLETED, records=len(inserted))
        return inserted

    async def _persist_detached(self, session: dict[str, Any], rows: list[dict[str, Any]]) -> None:
        try:
            await self.persist_batch(session, rows)
        except PersistenceFailed:
            # The caller already holds the synthesized rows; they are not in storage.
            logger.error(
                "Background persist failed session=%s user=%s rows=%d",
                session["id"],
                self.user_id,
                len(rows),
            )

    def dispatch_batch(self, session: dict[str, Any], rows: list[dict[str, Any]]) -> asyncio.Task:
        """Schedule ``persist_batch`` without waiting for it.

        Callers get the synthesized rows immediately; storage may lag behind
        them, and a failed write is only logged.
        """
        # TODO: record failed background writes so clients can be told their
        # returned session_id was never stored.
        task = asyncio.create_task(self._persist_detached(session, rows))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Streaming mode
    # ------------------------------------------------------------------

    async def _keepalive(self, queue: asyncio.Queue) -> None:
        while True:
            await asyncio.sleep(self._keepalive_seconds)
            queue.put_nowait(None)

    async def _insert_streamed(
        self,
        store: LedgerStore,
        session_id: str,
        raw: Any,
        defaults: SourceDefaults,
        raw_input: Optional[str],
        progress: _StreamProgress,
        emit: Callable[[Any], None],
    ) -> None:
        item = normalize(raw, defaults)
        if not has_valid_amount(item.amount):
            logger.debug("Dropping streamed item without a valid amount: %s", raw)
            return
        row = self._transaction_row(session_id, item, defaults, raw_input)
        try:
            inserted = await store.insert_transaction(row)
        except StoreError:
            logger.error("Streamed transaction insert failed session=%s title=%r", session_id, item.title)
            return
        progress.inserted.append(inserted)
        progress.total += row["amount"]
        emit(
            {
                "type": "transaction_inserted",
                "data": inserted,
                "progress": {"completed": len(progress.inserted)},
            }
        )

    async def _run_stream(
        self,
        emit: Callable[[Any], None],
        *,
        gateway: BaseProvider,
        prompt: str,
        load_image: ImageLoader,
        raw_input: Optional[str],
        call_kwargs: dict[str, Any],
        on_result: Optional[Callable[[Any], None]],
    ) -> None:
        defaults = self._defaults_for_source("bill_scan")
        with self._store() as store:
            try:
                session = await store.insert_session(
                    {
                        "source": "bill_scan",
                        "raw_input": raw_input,
                        "record_count": 0,
                        "total_amount": Decimal("0"),
                    }
                )
            except StoreError:
                emit({"type": "error", "message": "Failed to create session"})
                return

            session_id = session["id"]
            self._transition(session_id, IngestState.CREATED)
            emit({"type": "session_created", "session_id": session_id})

            progress = _StreamProgress()

            async def on_delta(fragment: str) -> None:
                progress.buffer += fragment
                new_items, progress.cursor = parse_incremental(progress.buffer, progress.cursor)
                for raw in new_items:
                    await self._insert_streamed(store, session_id, raw, defaults, raw_input, progress, emit)

            error_message: Optional[str] = None
            ai_raw_output: Any = None
            try:
                image = await load_image()
                self._transition(session_id, IngestState.EXTRACTING)
                result = await gateway.generate_vision_stream(prompt, image, on_delta, **call_kwargs)
                if on_result is not None:
                    on_result(result)

                self._transition(session_id, IngestState.PERSISTING, confirmed=progress.cursor)
                full_text = result.raw_text or progress.buffer
                try:
                    parsed = parse_complete(full_text)
                except JsonParseFailed:
                    logger.warning("Reconciliation parse failed session=%s", session_id)
                    ai_raw_output = full_text
                else:
                    ai_raw_output = parsed
                    for raw in object_elements(items_from_payload(parsed))[progress.cursor :]:
                        await self._insert_streamed(store, session_id, raw, defaults, raw_input, progress, emit)
            except IngestionError as exc:
                error_message = exc.message
            except AIError as exc:
                logger.error("Bill stream model call failed session=%s: %s", session_id, exc)
                error_message = AIServiceUnavailable.message
            except Exception:
                logger.exception("Bill stream failed session=%s", session_id)
                error_message = AIServiceUnavailable.message

            final: dict[str, Any] = {"ai_raw_output": ai_raw_output if ai_raw_output is not None else progress.buffer}
            if progress.inserted:
                final.update(
                    record_count=len(progress.inserted),
                    total_amount=progress.total,
                    currency=progress.currency,
                )
            try:
                await store.update_session(session_id, **final)
            except StoreError:
                logger.error("Final aggregate update failed session=%s", session_id)

            if not progress.inserted:
                self._transition(session_id, IngestState.FAILED, reason=error_message or "no_items")
                emit({"type": "error", "message": error_message or NoDataExtracted.message})
                return

            self._transition(session_id, IngestState.COMPLETED, records=len(progress.inserted))
            emit(
                {
                    "type": "completed",
                    "session_id": session_id,
                    "total_count": len(progress.inserted),
                    "total_amount": float(progress.total),
                }
            )

    async def stream_bill(
        self,
        *,
        gateway: BaseProvider,
        prompt: str,
        load_image: ImageLoader,
        raw_input: Optional[str] = None,
        call_kwargs: Optional[dict[str, Any]] = None,
        on_result: Optional[Callable[[Any], None]] = None,
    ) -> AsyncIterator[Optional[dict[str, Any]]]:
        """Yield stream events for one bill image.

        Event dicts are ``session_created``, ``transaction_inserted``
        (repeated), then exactly one ``completed`` or ``error``. ``None`` is
        yielded for each keep-alive tick and carries no data.
        """
        queue: asyncio.Queue = asyncio.Queue()
        listening = True

        def emit(event: Any) -> None:
            if listening:
                queue.put_nowait(event)

        async def work() -> None:
            try:
                await self._run_stream(
                    emit,
                    gateway=gateway,
                    prompt=prompt,
                    load_image=load_image,
                    raw_input=raw_input,
                    call_kwargs=call_kwargs or {},
                    on_result=on_result,
                )
            except Exception:
                logger.exception("Bill stream aborted user=%s", self.user_id)
                emit({"type": "error", "message": AIServiceUnavailable.message})
            finally:
                emit(_DONE)

        worker = asyncio.create_task(work())
        keepalive = asyncio.create_task(self._keepalive(queue))
        try:
            while True:
                event = await queue.get()
                if event is _DONE:
                    break
                yield event
        finally:
            listening = False
            keepalive.cancel()
            await asyncio.gather(keepalive, return_exceptions=True)
            if not worker.done():
                # The consumer left early; the session still gets its rows and aggregates.
                logger.info("Bill stream consumer gone; finishing in background user=%s", self.user_id)
                _background_tasks.add(worker)
                worker.add_done_callback(_background_tasks.discard)
