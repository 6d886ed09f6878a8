import logging

from apscheduler.schedulers.blocking import BlockingScheduler

from csvupsert.config import Settings
from csvupsert.pipeline import UpsertPipeline
from csvupsert.schemas import RunOptions


logger = logging.getLogger(__name__)


def _run_scheduled_upsert(pipeline: UpsertPipeline, options: RunOptions) -> None:
    try:
        result = pipeline.run(options, trigger_source="scheduled")
    except Exception:
        # The pipeline already recorded the failure on the ledger run.
        logger.error("scheduled upsert run failed", extra={"source_path": options.csv_file_path})
        return
    logger.info(
        "scheduled upsert run completed",
        extra={
            "run_id": result.run_id,
            "status": result.status,
            "failed_records": result.summary.failed,
        },
    )


def start_scheduler(
    settings: Settings,
    pipeline: UpsertPipeline,
    options: RunOptions,
    *,
    run_now: bool = False,
) -> None:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_scheduled_upsert,
        "cron",
        args=[pipeline, options],
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="daily_upsert",
        replace_existing=True,
    )

    logger.info(
        "scheduler started",
        extra={
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
        },
    )

    if run_now:
        _run_scheduled_upsert(pipeline, options)

    scheduler.start()
