import logging
from pathlib import Path

from sqlalchemy.orm import Session, sessionmaker

from csvupsert.batching import UpsertConnection, batch_upsert
from csvupsert.config import Settings
from csvupsert.db_models import UpsertRun
from csvupsert.pacing import IntervalPacer
from csvupsert.run_store import (
    create_run,
    mark_run_empty,
    mark_run_failed,
    mark_run_running,
    mark_run_succeeded,
    record_batch,
    store_failed_records,
)
from csvupsert.schemas import BatchReport, PipelineResult, Record, RunOptions, RunSummary
from csvupsert.step_logic import (
    build_error_report,
    filter_by_external_id,
    limit_records,
    read_csv_records,
    transform_records,
    write_error_report,
)


logger = logging.getLogger(__name__)


class UpsertPipeline:
    def __init__(
        self,
        settings: Settings,
        connection: UpsertConnection,
        session_factory: sessionmaker[Session],
        *,
        pacer: IntervalPacer | None = None,
    ) -> None:
        self.settings = settings
        self.connection = connection
        self.session_factory = session_factory
        self.pacer = pacer or IntervalPacer(settings.batch_pause_seconds)

    def run(self, options: RunOptions, *, trigger_source: str = "manual") -> PipelineResult:
        with self.session_factory() as db:
            run = create_run(
                db,
                sobject_type=options.sobject_type,
                source_path=options.csv_file_path,
                trigger_source=trigger_source,
            )
            mark_run_running(db, run)

            try:
                self.connection.login()

                logger.info("reading csv file", extra={"path": options.csv_file_path})
                records = read_csv_records(Path(options.csv_file_path))
                records = self._prepare(records, options)

                if not records:
                    logger.info("no valid records to process", extra={"run_id": run.id})
                    mark_run_empty(db, run)
                    return PipelineResult(
                        run_id=run.id,
                        status=run.status,
                        summary=RunSummary.empty(),
                        results=[],
                        errors=[],
                        error_report_path=None,
                    )

                logger.info("starting upsert of %d records", len(records), extra={"run_id": run.id})
                results, errors = batch_upsert(
                    self.connection,
                    options.sobject_type,
                    records,
                    options.external_id_field,
                    options.batch_size,
                    pacer=self.pacer,
                    on_batch=lambda report: self._record_batch(db, run, report),
                )

                summary = RunSummary.from_outcomes(results, errors)
                logger.info(
                    "upsert summary total=%d succeeded=%d created=%d updated=%d failed=%d",
                    summary.total,
                    summary.succeeded,
                    summary.created,
                    summary.updated,
                    summary.failed,
                    extra={"run_id": run.id},
                )

                report_path: str | None = None
                if errors:
                    if write_error_report(Path(options.error_report_path), build_error_report(errors)):
                        report_path = options.error_report_path
                    store_failed_records(db, run_id=run.id, errors=errors)
            except Exception as exc:
                mark_run_failed(db, run, error=str(exc))
                logger.exception("upsert run failed", extra={"run_id": run.id})
                raise

            mark_run_succeeded(db, run, summary=summary, error_report_path=report_path)
            return PipelineResult(
                run_id=run.id,
                status=run.status,
                summary=summary,
                results=results,
                errors=errors,
                error_report_path=report_path,
            )

    def _prepare(self, records: list[Record], options: RunOptions) -> list[Record]:
        if options.field_mapping:
            logger.info("transforming records with field mapping", extra={"fields": len(options.field_mapping)})
            records = transform_records(
                records,
                options.field_mapping,
                offset_hours=self.settings.datetime_offset_hours,
            )

        original_count = len(records)
        records = limit_records(records, options.record_limit)
        if len(records) != original_count:
            logger.info("limited records from %d to %d", original_count, len(records))

        if options.external_id_field:
            records = filter_by_external_id(records, options.external_id_field)
            logger.info("filtered to %d records with %s", len(records), options.external_id_field)
        return records

    def _record_batch(self, db: Session, run: UpsertRun, report: BatchReport) -> None:
        record_batch(db, run_id=run.id, report=report)
