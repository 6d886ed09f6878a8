import argparse
from dataclasses import replace
import logging
import sys

from csvupsert.config import (
    ConfigurationError,
    Settings,
    get_settings,
    parse_field_mapping,
    validate_batch_size,
)
from csvupsert.db_models import build_session_factory
from csvupsert.pipeline import UpsertPipeline
from csvupsert.salesforce import SalesforceConnection
from csvupsert.scheduler import start_scheduler
from csvupsert.schemas import RunOptions


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Upsert CSV records into Salesforce")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="run one upsert from a csv file")
    run_parser.add_argument("--csv", dest="csv_file_path", help="CSV file to read (default: CSV_FILE_PATH)")
    run_parser.add_argument("--sobject", dest="sobject_type", help="Salesforce object type, e.g. Invoice__c")
    run_parser.add_argument("--external-id", dest="external_id_field", help="external id field to upsert on")
    run_parser.add_argument("--mapping", help="JSON object of csv column to salesforce field")
    run_parser.add_argument("--batch-size", type=int, help="records per upsert call")
    run_parser.add_argument("--limit", dest="record_limit", type=int, help="process only the first N records, -1 for all")
    run_parser.add_argument("--error-report", dest="error_report_path", help="where to write the failed record csv")

    schedule_parser = subparsers.add_parser("schedule", help="start daily scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    return parser.parse_args(argv)


def build_options(settings: Settings, args: argparse.Namespace) -> RunOptions:
    options = RunOptions.from_settings(settings)
    overrides = {
        name: getattr(args, name)
        for name in ("csv_file_path", "sobject_type", "external_id_field", "batch_size", "record_limit", "error_report_path")
        if getattr(args, name, None) is not None
    }
    if getattr(args, "mapping", None) is not None:
        overrides["field_mapping"] = parse_field_mapping(args.mapping)
    options = replace(options, **overrides)
    validate_batch_size(options.batch_size)
    return options


def build_pipeline(settings: Settings) -> UpsertPipeline:
    connection = SalesforceConnection(
        settings.credentials(),
        login_url=settings.login_url,
        api_version=settings.api_version,
    )
    return UpsertPipeline(settings, connection, build_session_factory(settings.database_url))


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    try:
        settings = get_settings()
        options = build_options(settings, args)
    except ConfigurationError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    try:
        pipeline = build_pipeline(settings)
    except ConfigurationError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        print(
            "set SALESFORCE_USERNAME, SALESFORCE_PASSWORD and SALESFORCE_SECURITY_TOKEN "
            "(SALESFORCE_LOGIN_URL is optional) in the environment or a .env file",
            file=sys.stderr,
        )
        raise SystemExit(1) from exc

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command == "schedule":
        start_scheduler(settings, pipeline, options, run_now=args.run_now)
        return

    try:
        result = pipeline.run(options)
    except Exception as exc:
        print(f"status=failed error={exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    print(
        "run_id={run_id} status={status} total={total} succeeded={succeeded} created={created} updated={updated} failed={failed} report={report}".format(
            run_id=result.run_id,
            status=result.status,
            total=result.summary.total,
            succeeded=result.summary.succeeded,
            created=result.summary.created,
            updated=result.summary.updated,
            failed=result.summary.failed,
            report=result.error_report_path,
        )
    )


if __name__ == "__main__":
    main()
