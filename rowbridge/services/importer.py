"""Batch import engine."""

import asyncio
import logging
import time
import uuid
from collections import Counter
from typing import Callable, Dict, List, Optional, Sequence

from rowbridge.core.config import Settings, settings as default_settings
from rowbridge.core.datastore import DatastoreClient
from rowbridge.core.errors import (
    AuthenticationFailed,
    DatastoreError,
    ImportCancelled,
    RecordCreateFailed,
)
from rowbridge.core.metrics import metrics
from rowbridge.core.tokens import CredentialManager
from rowbridge.models.import_models import (
    BatchOutcome,
    FailedRecord,
    FailureSummary,
    ImportOutcome,
    ProgressSnapshot,
)
from rowbridge.services.csv_parser import clean_header, parse_line

logger = logging.getLogger(__name__)

ImportRecord = Dict[str, str]
ProgressSink = Callable[[ProgressSnapshot], None]


class ImportStrategy:
    BULK = "bulk"
    STANDARD = "standard"
    INDIVIDUAL = "individual"


class ImportRun:
    """
    State scoped to one import run.

    Holds the cooperative cancellation signal and the bulk circuit breaker.
    Once ``bulk_disabled`` is set it stays set for the rest of the run.
    """

    def __init__(self, run_id: Optional[str] = None):
        self.run_id = run_id or str(uuid.uuid4())
        self._cancel_event = asyncio.Event()
        self.bulk_disabled = False
        self.bulk_failures = 0

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def check_cancelled(self, processed: int = 0) -> None:
        """Raise ImportCancelled when cancellation was requested."""
        if self.cancelled:
            self.reset_breaker()
            logger.info(f"Import {self.run_id[:8]}... cancelled after {processed} records")
            raise ImportCancelled(processed=processed)

    def record_bulk_failure(self, limit: int) -> None:
        self.bulk_failures += 1
        if not self.bulk_disabled and self.bulk_failures >= limit:
            self.bulk_disabled = True
            metrics.record_breaker_trip()
            logger.warning(
                f"Bulk creation disabled after {self.bulk_failures} failures",
                extra={"run_id": self.run_id},
            )

    def reset_breaker(self) -> None:
        self.bulk_disabled = False
        self.bulk_failures = 0


def prepare_records(
    lines: Sequence[str],
    header: Sequence[str],
    mapping: Dict[str, str],
    field_map: Dict[str, int],
    run: Optional[ImportRun] = None,
) -> List[ImportRecord]:
    """
    Turn data lines into records keyed ``field_<id>``.

    ``mapping`` maps source columns to target fields and ``field_map`` maps
    target fields to field ids. Ignored or unmapped columns and empty values
    are left out. A row is kept when at least one mapped value is non-empty.
    """
    columns = [clean_header(name) for name in header]
    keys = []
    for index, column in enumerate(columns):
        target = mapping.get(column)
        if target is not None and target in field_map:
            keys.append((index, f"field_{field_map[target]}"))

    records: List[ImportRecord] = []
    for line in lines:
        if run is not None:
            run.check_cancelled()
        values = parse_line(line)
        record: ImportRecord = {}
        for index, key in keys:
            if index < len(values):
                value = values[index].strip()
                if value:
                    record[key] = value
        if record:
            records.append(record)
    return records


def summarize_failures(failed_records: Sequence[FailedRecord]) -> FailureSummary:
    """Group failures by the first 100 characters of their error message."""
    reasons = Counter(record.error[:100] for record in failed_records)
    return FailureSummary(
        by_reason=dict(reasons.most_common()),
        sample=failed_records[0] if failed_records else None,
    )


class _ProgressTracker:
    def __init__(
        self,
        total: int,
        total_batches: int,
        strategy: str,
        run: ImportRun,
        sink: Optional[ProgressSink],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.total = total
        self.total_batches = total_batches
        self.strategy = strategy
        self.run = run
        self.sink = sink
        self.clock = clock
        self.started = clock()
        self.created = 0
        self.failed = 0
        self.current_batch = 0
        self.failed_records: List[FailedRecord] = []

    @property
    def processed(self) -> int:
        return self.created + self.failed

    def add(self, outcome: BatchOutcome) -> None:
        self.created += outcome.success_count
        self.failed += outcome.failed_count
        self.failed_records.extend(outcome.failed_records)
        self.current_batch += 1
        strategy = self.current_strategy
        metrics.record_rows("created", strategy, outcome.success_count)
        metrics.record_rows("failed", strategy, outcome.failed_count)

    @property
    def current_strategy(self) -> str:
        return ImportStrategy.INDIVIDUAL if self.run.bulk_disabled else self.strategy

    def snapshot(self) -> ProgressSnapshot:
        processed = self.processed
        elapsed = self.clock() - self.started
        speed = processed / elapsed if elapsed > 0 else 0.0
        remaining = max(self.total - processed, 0)
        return ProgressSnapshot(
            current=processed,
            total=self.total,
            percentage=int(100 * processed / self.total + 0.5) if self.total else 100,
            speed=round(speed, 2),
            remaining=remaining,
            estimated_time_remaining=round(remaining / speed, 1) if speed > 0 else None,
            current_batch=self.current_batch,
            total_batches=self.total_batches,
            failed=self.failed,
            strategy=self.current_strategy,
        )

    def emit(self) -> None:
        if self.sink is not None:
            self.sink(self.snapshot())

    def outcome(self) -> ImportOutcome:
        return ImportOutcome(
            attempted=self.processed,
            created=self.created,
            failed=self.failed,
            failed_records=self.failed_records,
            strategy=self.strategy,
        )


class BatchImportEngine:
    """
    Loads prepared records into a provisioned table.

    Files with more data rows than ``large_file_threshold`` go through the
    parallel-bulk strategy: cohorts of ``parallel_batches`` batches awaited
    together with a short pause in between. Smaller files go batch by batch.

    Each batch is first sent to the bulk endpoint, then once more without
    the field-naming flag. Bulk failures accumulate on the run; at
    ``bulk_failure_limit`` bulk creation is switched off for the rest of the
    run and every batch is created record by record. Row failures are
    collected, never raised. Credential failures abort the run.
    """

    def __init__(
        self,
        client: DatastoreClient,
        credentials: CredentialManager,
        config: Optional[Settings] = None,
    ):
        self.client = client
        self.credentials = credentials
        self.config = config or default_settings

    def choose_strategy(self, data_rows: int) -> str:
        if data_rows > self.config.large_file_threshold:
            return ImportStrategy.BULK
        return ImportStrategy.STANDARD

    def make_batches(self, records: List[ImportRecord]) -> List[List[ImportRecord]]:
        size = self.config.batch_size
        return [records[i:i + size] for i in range(0, len(records), size)]

    async def run(
        self,
        lines: Sequence[str],
        header: Sequence[str],
        mapping: Dict[str, str],
        field_map: Dict[str, int],
        table_id: int,
        run: ImportRun,
        progress: Optional[ProgressSink] = None,
    ) -> ImportOutcome:
        records = prepare_records(lines, header, mapping, field_map, run)
        strategy = self.choose_strategy(len(lines))
        batches = self.make_batches(records)
        tracker = _ProgressTracker(len(records), len(batches), strategy, run, progress)

        logger.info(
            f"Importing {len(records)} records into table {table_id} ({strategy})",
            extra={
                "run_id": run.run_id,
                "table_id": table_id,
                "records": len(records),
                "batches": len(batches),
                "strategy": strategy,
            },
        )
        tracker.emit()

        if strategy == ImportStrategy.BULK:
            await self._run_parallel(batches, table_id, run, tracker)
        else:
            await self._run_sequential(batches, table_id, run, tracker)

        outcome = tracker.outcome()
        logger.info(
            f"Import into table {table_id} finished: {outcome.created} created, {outcome.failed} failed",
            extra={"run_id": run.run_id, "created": outcome.created, "failed": outcome.failed},
        )
        return outcome

    async def _run_sequential(
        self,
        batches: List[List[ImportRecord]],
        table_id: int,
        run: ImportRun,
        tracker: _ProgressTracker,
    ) -> None:
        throttle = self.config.failure_throttle_ms / 1000
        for batch in batches:
            run.check_cancelled(tracker.processed)
            outcome = await self._import_batch(batch, table_id, run)
            tracker.add(outcome)
            tracker.emit()
            if tracker.processed and tracker.failed / tracker.processed > self.config.failure_throttle_ratio:
                await asyncio.sleep(throttle)

    async def _run_parallel(
        self,
        batches: List[List[ImportRecord]],
        table_id: int,
        run: ImportRun,
        tracker: _ProgressTracker,
    ) -> None:
        size = self.config.parallel_batches
        cohorts = [batches[i:i + size] for i in range(0, len(batches), size)]
        pause = self.config.cohort_pause_ms / 1000
        refresh_every = self.config.token_refresh_every_cohorts

        for index, cohort in enumerate(cohorts):
            run.check_cancelled(tracker.processed)
            if index and refresh_every and index % refresh_every == 0:
                await self.credentials.ensure_fresh()

            results = await asyncio.gather(
                *(self._import_batch(batch, table_id, run) for batch in cohort),
                return_exceptions=True,
            )
            for batch, result in zip(cohort, results):
                if isinstance(result, BatchOutcome):
                    tracker.add(result)
                    continue
                if isinstance(result, (AuthenticationFailed, ImportCancelled)) or not isinstance(result, Exception):
                    raise result
                logger.error(f"Batch of {len(batch)} records failed: {result}")
                tracker.add(
                    BatchOutcome(
                        failed_count=len(batch),
                        failed_records=[FailedRecord(data=r, error=str(result)) for r in batch],
                    )
                )
            tracker.emit()

            if index < len(cohorts) - 1:
                await asyncio.sleep(pause)

    async def _import_batch(
        self, batch: List[ImportRecord], table_id: int, run: ImportRun
    ) -> BatchOutcome:
        if not run.bulk_disabled:
            for user_field_names in (True, False):
                try:
                    await self.credentials.call_with_refresh(
                        lambda t, flag=user_field_names: self.client.batch_create_rows(
                            t, table_id, batch, user_field_names=flag
                        )
                    )
                    return BatchOutcome(success_count=len(batch))
                except DatastoreError as e:
                    stage = "with_field_names" if user_field_names else "without_field_names"
                    metrics.record_bulk_fallback(stage)
                    logger.warning(
                        f"Bulk create of {len(batch)} records failed ({stage}): {e.message}",
                        extra={"run_id": run.run_id, "upstream_status": e.upstream_status},
                    )
                    run.record_bulk_failure(self.config.bulk_failure_limit)
                    if run.bulk_disabled:
                        break

        return await self._create_individually(batch, table_id)

    async def _create_individually(
        self, batch: List[ImportRecord], table_id: int
    ) -> BatchOutcome:
        semaphore = asyncio.Semaphore(self.config.individual_concurrency)

        async def create_one(record: ImportRecord) -> Optional[FailedRecord]:
            async with semaphore:
                try:
                    await self._create_row(record, table_id)
                except RecordCreateFailed as e:
                    return FailedRecord(data=record, error=e.message)
                return None

        tasks = [asyncio.ensure_future(create_one(r)) for r in batch]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # Stop the rest of the batch on a fatal error
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        failures = [f for f in results if f]
        return BatchOutcome(
            success_count=len(batch) - len(failures),
            failed_count=len(failures),
            failed_records=failures,
        )

    async def _create_row(self, record: ImportRecord, table_id: int) -> None:
        try:
            await self.credentials.call_with_refresh(
                lambda t: self.client.create_row(t, table_id, record)
            )
        except DatastoreError as e:
            raise RecordCreateFailed(e.message, record) from e
