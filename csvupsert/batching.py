from collections.abc import Callable, Iterator
import logging
import math
import time
from typing import Protocol

from csvupsert.pacing import IntervalPacer
from csvupsert.schemas import BatchReport, IndexedError, IndexedResult, Record, UpsertOutcome


logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 200


class UpsertConnection(Protocol):
    def login(self) -> object: ...

    def upsert(
        self,
        object_type: str,
        records: list[Record],
        external_id_field: str | None,
    ) -> list[UpsertOutcome]: ...


def chunked(records: list[Record], batch_size: int) -> Iterator[tuple[int, list[Record]]]:
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    for start in range(0, len(records), batch_size):
        yield start, records[start : start + batch_size]


def batch_upsert(
    connection: UpsertConnection,
    object_type: str,
    records: list[Record],
    external_id_field: str | None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    *,
    pacer: IntervalPacer | None = None,
    on_batch: Callable[[BatchReport], None] | None = None,
) -> tuple[list[IndexedResult], list[IndexedError]]:
    """Upsert ``records`` in sequential batches.

    Every record ends up in exactly one of the returned lists, indexed by
    its position in ``records``. A batch whose remote call fails as a
    whole contributes one error per record and the remaining batches
    are still attempted.
    """
    pacer = pacer or IntervalPacer()
    results: list[IndexedResult] = []
    errors: list[IndexedError] = []
    total_batches = math.ceil(len(records) / batch_size) if batch_size > 0 else 0

    for start, batch in chunked(records, batch_size):
        batch_number = start // batch_size + 1
        logger.info("processing batch %d/%d", batch_number, total_batches, extra={"start_index": start, "size": len(batch)})
        started = time.perf_counter()
        succeeded = 0
        failed = 0
        transport_error: str | None = None

        try:
            outcomes = connection.upsert(object_type, batch, external_id_field)
            if len(outcomes) != len(batch):
                raise RuntimeError(f"remote returned {len(outcomes)} outcomes for {len(batch)} records")
        except Exception as exc:
            transport_error = str(exc)
            logger.error("batch %d failed: %s", batch_number, transport_error, extra={"start_index": start})
            for offset, record in enumerate(batch):
                errors.append(IndexedError(index=start + offset, messages=(transport_error,), record=record))
            failed = len(batch)
        else:
            for offset, (record, outcome) in enumerate(zip(batch, outcomes)):
                index = start + offset
                if outcome.success:
                    results.append(
                        IndexedResult(index=index, record_id=outcome.record_id, created=outcome.created, record=record)
                    )
                    succeeded += 1
                    logger.info(
                        "record %d %s id=%s",
                        index + 1,
                        "created" if outcome.created else "updated",
                        outcome.record_id,
                    )
                else:
                    errors.append(IndexedError(index=index, messages=outcome.messages, record=record))
                    failed += 1
                    logger.warning("record %d failed: %s", index + 1, "; ".join(outcome.messages))

        if on_batch is not None:
            on_batch(
                BatchReport(
                    batch_number=batch_number,
                    start_index=start,
                    size=len(batch),
                    succeeded=succeeded,
                    failed=failed,
                    duration_ms=(time.perf_counter() - started) * 1000,
                    error=transport_error,
                )
            )

        pacer.pause()

    return results, errors
