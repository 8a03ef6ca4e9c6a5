"""Sync orchestrator: one audited sync run per (entity kind, source).

Run state machine:
    PENDING (log entry created) -> fetch all pages -> batches of
    [checkpoint -> concurrent detail fetch -> reconcile] -> SUCCESS | FAILED

Key behaviors:
- Detail fetches inside a batch fan out with asyncio.gather, so upstream
  concurrency never exceeds one batch width. Batches run strictly in
  sequence with ``batch_delay`` between them (not after the last).
- Per-item retry via tenacity: TransientUpstreamError (429 / 5xx / network)
  is retried up to ``max_retries`` times with exponential backoff
  (``base``, ``2*base``, ``4*base`` ...). Permanent errors and exhausted
  retries fall back to the list record; the batch continues.
- A cooperative checkpoint before each batch honors the run deadline and an
  optional stop event. Batches already reconciled stay committed.
- The run is SUCCESS only when no record errored and the run was not
  interrupted; per-record successes stay committed either way.
- AuthError marks the run FAILED and propagates. Upstream list-fetch
  failures produce a FAILED result. Anything unexpected is logged and
  re-raised as SyncRunError with a generic message.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.synchub.connectors.base import RecordSource
from src.synchub.core.errors import (
    AuthError,
    SyncRunError,
    TransientUpstreamError,
    UpstreamError,
)
from src.synchub.core.monitoring import (
    records_reconciled_total,
    sync_run_duration_seconds,
    sync_runs_total,
    upstream_retries_total,
)
from src.synchub.sync.reconciler import EntityReconciler
from src.synchub.sync.schemas import (
    BatchResult,
    EntityKind,
    InboundAction,
    ReconcileContext,
    RecordOutcome,
    SyncRunParams,
    SyncRunResult,
    SyncSource,
    SyncStatus,
)
from src.synchub.sync.sync_log import SyncLogRepository

logger = structlog.get_logger(__name__)

SYNC_ACTION = "SYNC"
GENERIC_FAILURE = "Sync run failed unexpectedly"


class SyncOrchestrator:
    """Sequences sync runs and webhook ingestion through the reconcilers.

    Args:
        reconcilers: One EntityReconciler per entity kind.
        sources: RecordSource per external system.
        sync_log: Audit log repository.
        batch_size: Default records per batch (fan-out width).
        batch_delay: Default pause in seconds between batches.
        max_retries: Retries after the first detail-fetch attempt.
        base_retry_delay: First backoff delay in seconds; doubles per retry.
        sleep: Awaitable sleep (injectable so tests run instantly).
        clock: Monotonic clock for durations and deadlines.
    """

    def __init__(
        self,
        reconcilers: Mapping[EntityKind, EntityReconciler],
        sources: Mapping[SyncSource, RecordSource],
        sync_log: SyncLogRepository,
        *,
        batch_size: int = 10,
        batch_delay: float = 0.5,
        max_retries: int = 3,
        base_retry_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._reconcilers = dict(reconcilers)
        self._sources = dict(sources)
        self._sync_log = sync_log
        self._batch_size = batch_size
        self._batch_delay = batch_delay
        self._max_retries = max_retries
        self._base_retry_delay = base_retry_delay
        self._sleep = sleep
        self._clock = clock

    def _reconciler(self, kind: EntityKind) -> EntityReconciler:
        try:
            return self._reconcilers[kind]
        except KeyError:
            raise ValueError(f"No reconciler configured for {kind.value}") from None

    def _source(self, source: SyncSource, kind: EntityKind) -> RecordSource:
        record_source = self._sources.get(source)
        if record_source is None or not record_source.supports(kind):
            raise ValueError(f"{source.value} cannot supply {kind.value} records")
        return record_source

    # ── Full Sync Run ───────────────────────────────────────────────────────

    async def run_sync(
        self,
        kind: EntityKind,
        params: SyncRunParams,
        stop_event: asyncio.Event | None = None,
    ) -> SyncRunResult:
        """Run one audited sync of ``kind`` from ``params.source``.

        Args:
            kind: Entity kind to sync.
            params: Source, filters and batching overrides.
            stop_event: Optional external stop signal checked between batches.

        Returns:
            SyncRunResult mirroring the terminal sync log entry.

        Raises:
            ValueError: If the kind/source pair is not supported.
            AuthError: If the source has no usable credential.
            SyncRunError: On an unexpected internal failure.
        """
        reconciler = self._reconciler(kind)
        source = self._source(params.source, kind)
        params_payload = params.model_dump(mode="json")

        started = self._clock()
        log_id = await self._sync_log.create_pending(
            params.source.value, kind.value, SYNC_ACTION, {"params": params_payload}
        )
        log = logger.bind(log_id=log_id, entity_kind=kind.value, source=params.source.value)
        log.info("orchestrator.run_started")

        try:
            totals, interrupted = await self._execute(
                kind, params, source, reconciler, log_id, started, stop_event
            )
        except AuthError as exc:
            await self._finish_failed(kind, params, log_id, started, str(exc))
            log.error("orchestrator.run_auth_failed", error=str(exc))
            raise
        except UpstreamError as exc:
            message = f"Upstream fetch failed: {exc}"
            result = await self._finish_failed(kind, params, log_id, started, message)
            log.error("orchestrator.run_upstream_failed", error=str(exc), status_code=exc.status_code)
            return result
        except asyncio.CancelledError:
            await self._finish_failed(kind, params, log_id, started, "Sync run cancelled")
            log.warning("orchestrator.run_cancelled")
            raise
        except Exception as exc:
            log.exception("orchestrator.run_unexpected_error", error=str(exc))
            await self._finish_failed(kind, params, log_id, started, GENERIC_FAILURE)
            raise SyncRunError(GENERIC_FAILURE) from exc

        duration_ms = int((self._clock() - started) * 1000)
        status = SyncStatus.FAILED if totals.errors or interrupted else SyncStatus.SUCCESS
        error = "Run interrupted at a batch boundary" if interrupted else None
        result = SyncRunResult(
            log_id=log_id,
            status=status,
            total=totals.total,
            created=totals.created,
            updated=totals.updated,
            skipped=totals.skipped,
            errors=totals.errors,
            interrupted=interrupted,
            duration_ms=duration_ms,
            error=error,
        )

        error_message = None
        if totals.errors:
            error_message = json.dumps([e.model_dump() for e in totals.errors])
        elif error:
            error_message = error

        await self._sync_log.complete(
            log_id,
            status,
            payload={
                "params": params_payload,
                **result.model_dump(mode="json", exclude={"log_id", "errors"}),
                "skips": [s.model_dump() for s in totals.skips],
            },
            error_message=error_message,
        )
        self._observe(kind, params.source, status, duration_ms)
        log.info(
            "orchestrator.run_complete",
            status=status.value,
            total=totals.total,
            created=totals.created,
            updated=totals.updated,
            skipped=totals.skipped,
            errors=len(totals.errors),
            interrupted=interrupted,
            duration_ms=duration_ms,
        )
        return result

    async def _execute(
        self,
        kind: EntityKind,
        params: SyncRunParams,
        source: RecordSource,
        reconciler: EntityReconciler,
        log_id: str,
        started: float,
        stop_event: asyncio.Event | None,
    ) -> tuple[BatchResult, bool]:
        records = await self._fetch_all(kind, params, source)

        batch_size = params.batch_size or self._batch_size
        batch_delay = (
            params.batch_delay_seconds
            if params.batch_delay_seconds is not None
            else self._batch_delay
        )
        deadline = started + params.deadline_seconds if params.deadline_seconds else None
        context = ReconcileContext(source=params.source, action=InboundAction.UPDATE, run_id=log_id)

        batches = [records[i:i + batch_size] for i in range(0, len(records), batch_size)]
        totals = BatchResult()

        for index, batch in enumerate(batches):
            if self._should_stop(deadline, stop_event):
                logger.warning(
                    "orchestrator.run_interrupted",
                    log_id=log_id,
                    completed_batches=index,
                    total_batches=len(batches),
                )
                return totals, True

            if params.fetch_details:
                batch = await self._fetch_details(source, kind, reconciler, batch)

            result = await reconciler.reconcile_batch(batch, context)
            totals.merge(result)
            self._count_records(kind, result)

            if index < len(batches) - 1 and batch_delay > 0:
                await self._sleep(batch_delay)

        return totals, False

    async def _fetch_all(
        self, kind: EntityKind, params: SyncRunParams, source: RecordSource
    ) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        page_token: str | None = None
        pages = 0
        while True:
            page = await source.list_page(kind, params.filters, page_token)
            records.extend(page.records)
            pages += 1
            page_token = page.next_page_token
            if page_token is None or (params.max_pages and pages >= params.max_pages):
                break
        logger.info(
            "orchestrator.records_fetched",
            entity_kind=kind.value,
            source=params.source.value,
            pages=pages,
            records=len(records),
        )
        return records

    def _should_stop(self, deadline: float | None, stop_event: asyncio.Event | None) -> bool:
        if stop_event is not None and stop_event.is_set():
            return True
        return deadline is not None and self._clock() >= deadline

    async def _fetch_details(
        self,
        source: RecordSource,
        kind: EntityKind,
        reconciler: EntityReconciler,
        batch: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        """Fetch details for one batch concurrently.

        If any fetch raises, such as AuthError, the rest are cancelled and awaited
        before the error propagates, so nothing outlives the run.
        """
        tasks = [
            asyncio.ensure_future(self._fetch_detail(source, kind, reconciler, record))
            for record in batch
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    # ── Per-Item Retry ──────────────────────────────────────────────────────

    async def _fetch_detail(
        self,
        source: RecordSource,
        kind: EntityKind,
        reconciler: EntityReconciler,
        record: dict[str, Any],
    ) -> dict[str, Any]:
        """Detail fetch with bounded retry; falls back to the list record."""
        key = reconciler.external_key(record, source.source)

        def _before_sleep(retry_state: RetryCallState) -> None:
            upstream_retries_total.labels(source=source.source.value).inc()
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.info(
                "orchestrator.detail_retry",
                key=key,
                attempt=retry_state.attempt_number,
                delay=retry_state.next_action.sleep if retry_state.next_action else None,
                status_code=getattr(exc, "status_code", None),
            )

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_retries + 1),
                wait=wait_exponential(multiplier=self._base_retry_delay),
                retry=retry_if_exception_type(TransientUpstreamError),
                sleep=self._sleep,
                before_sleep=_before_sleep,
                reraise=True,
            ):
                with attempt:
                    detail = await source.fetch_detail(kind, record)
        except UpstreamError as exc:
            logger.warning(
                "orchestrator.detail_fallback",
                key=key,
                status_code=exc.status_code,
                error=str(exc),
            )
            return record

        return detail if detail is not None else record

    # ── Webhook Ingestion ───────────────────────────────────────────────────

    async def ingest(
        self,
        kind: EntityKind,
        source: SyncSource,
        action: InboundAction,
        record: dict[str, Any],
    ) -> RecordOutcome:
        """Reconcile a single pushed record under its own audit log entry."""
        reconciler = self._reconciler(kind)
        key = reconciler.external_key(record, source)
        log_id = await self._sync_log.create_pending(
            source.value, kind.value, action.value.upper(), {"key": key, "record": record}
        )

        context = ReconcileContext(source=source, action=action, run_id=log_id)
        outcome = await reconciler.reconcile_isolated(record, context)
        records_reconciled_total.labels(entity_kind=kind.value, action=outcome.action.value).inc()

        status = SyncStatus.FAILED if outcome.error else SyncStatus.SUCCESS
        await self._sync_log.complete(
            log_id,
            status,
            payload={"key": key, "outcome": outcome.model_dump(mode="json")},
            error_message=outcome.error,
        )
        logger.info(
            "orchestrator.ingested",
            log_id=log_id,
            entity_kind=kind.value,
            source=source.value,
            action=action.value,
            outcome=outcome.action.value,
            key=outcome.key,
        )
        return outcome

    # ── Helpers ─────────────────────────────────────────────────────────────

    async def _finish_failed(
        self,
        kind: EntityKind,
        params: SyncRunParams,
        log_id: str,
        started: float,
        message: str,
    ) -> SyncRunResult:
        duration_ms = int((self._clock() - started) * 1000)
        await self._sync_log.complete(
            log_id,
            SyncStatus.FAILED,
            payload={"params": params.model_dump(mode="json"), "duration_ms": duration_ms},
            error_message=message,
        )
        self._observe(kind, params.source, SyncStatus.FAILED, duration_ms)
        return SyncRunResult(
            log_id=log_id,
            status=SyncStatus.FAILED,
            duration_ms=duration_ms,
            error=message,
        )

    @staticmethod
    def _observe(kind: EntityKind, source: SyncSource, status: SyncStatus, duration_ms: int) -> None:
        sync_runs_total.labels(entity_kind=kind.value, source=source.value, status=status.value).inc()
        sync_run_duration_seconds.labels(entity_kind=kind.value, source=source.value).observe(
            duration_ms / 1000
        )

    @staticmethod
    def _count_records(kind: EntityKind, result: BatchResult) -> None:
        for action, count in (
            ("created", result.created),
            ("updated", result.updated),
            ("skipped", result.skipped),
        ):
            if count:
                records_reconciled_total.labels(entity_kind=kind.value, action=action).inc(count)
