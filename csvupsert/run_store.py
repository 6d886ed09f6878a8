import json

from sqlalchemy import select
from sqlalchemy.orm import Session

from csvupsert.db_models import BatchRun, FailedRecord, UpsertRun, utc_now
from csvupsert.schemas import BatchReport, IndexedError, RunSummary


def get_run(db: Session, run_id: int) -> UpsertRun | None:
    return db.get(UpsertRun, run_id)


def create_run(db: Session, *, sobject_type: str, source_path: str, trigger_source: str) -> UpsertRun:
    run = UpsertRun(
        sobject_type=sobject_type,
        source_path=source_path,
        trigger_source=trigger_source,
        status="queued",
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def mark_run_running(db: Session, run: UpsertRun) -> None:
    run.status = "running"
    run.started_at = utc_now()
    run.error = None
    db.commit()


def _apply_summary(run: UpsertRun, summary: RunSummary) -> None:
    run.total_records = summary.total
    run.succeeded_records = summary.succeeded
    run.created_records = summary.created
    run.updated_records = summary.updated
    run.failed_records = summary.failed


def mark_run_succeeded(
    db: Session,
    run: UpsertRun,
    *,
    summary: RunSummary,
    error_report_path: str | None,
) -> None:
    run.status = "succeeded"
    _apply_summary(run, summary)
    run.error_report_path = error_report_path
    run.completed_at = utc_now()
    run.error = None
    db.commit()


def mark_run_empty(db: Session, run: UpsertRun) -> None:
    run.status = "empty"
    _apply_summary(run, RunSummary.empty())
    run.completed_at = utc_now()
    db.commit()


def mark_run_failed(db: Session, run: UpsertRun, *, error: str) -> None:
    run.status = "failed"
    run.error = error
    run.completed_at = utc_now()
    db.commit()


def record_batch(db: Session, *, run_id: int, report: BatchReport) -> BatchRun:
    batch = BatchRun(
        run_id=run_id,
        batch_number=report.batch_number,
        start_index=report.start_index,
        size=report.size,
        succeeded=report.succeeded,
        failed=report.failed,
        status=report.status,
        duration_ms=report.duration_ms,
        error=report.error,
    )
    db.add(batch)
    db.commit()
    return batch


def store_failed_records(db: Session, *, run_id: int, errors: list[IndexedError]) -> None:
    for error in errors:
        db.add(
            FailedRecord(
                run_id=run_id,
                record_index=error.index,
                messages="; ".join(error.messages),
                raw_record=json.dumps(error.record, default=str),
            )
        )
    db.commit()


def list_batches(db: Session, run_id: int) -> list[BatchRun]:
    stmt = select(BatchRun).where(BatchRun.run_id == run_id).order_by(BatchRun.batch_number)
    return list(db.execute(stmt).scalars().all())
