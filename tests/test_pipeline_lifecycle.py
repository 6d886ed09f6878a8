import csv
from dataclasses import replace
from pathlib import Path

import pytest
from sqlalchemy import select

from csvupsert.db_models import FailedRecord, UpsertRun
from csvupsert.run_store import get_run, list_batches
from csvupsert.salesforce import AuthenticationError
from csvupsert.schemas import RunOptions, UpsertOutcome
from csvupsert.step_logic import SourceReadError


INVOICE_ROWS = [
    "Document Number,D2,Amount",
    "INV-001,6/20/24 3:24,1500.00",
    "INV-002,6/21/24 14:00,20.00",
    ",6/22/24 9:00,5.00",
    "INV-004,6/23/24 10:30,99.99",
]


def reject_inv_002(record: dict[str, object]) -> UpsertOutcome:
    if record.get("Invoice_NS_Id__c") == "INV-002":
        return UpsertOutcome(success=False, messages=("DUPLICATE_VALUE",))
    return UpsertOutcome(success=True, record_id=f"a0X-{record['Invoice_NS_Id__c']}", created=True)


@pytest.fixture()
def options(test_settings, csv_writer) -> RunOptions:
    csv_writer(Path(test_settings.csv_file_path), INVOICE_ROWS)
    return RunOptions.from_settings(test_settings)


def test_full_run_upserts_mapped_records_and_writes_report(pipeline, connection, options) -> None:
    connection.respond = reject_inv_002

    result = pipeline.run(options)

    assert result.status == "succeeded"
    assert connection.logins == 1
    assert result.summary.total == 3
    assert result.summary.succeeded == 2
    assert result.summary.created == 2
    assert result.summary.updated == 0
    assert result.summary.failed == 1

    submitted = [record for _, batch, _ in connection.calls for record in batch]
    assert submitted[0] == {"Invoice_NS_Id__c": "INV-001", "NS_Created_Date__c": "2024-06-20T09:24:00"}
    assert [record["Invoice_NS_Id__c"] for record in submitted] == ["INV-001", "INV-002", "INV-004"]
    assert [len(batch) for _, batch, _ in connection.calls] == [2, 1]

    assert result.error_report_path == options.error_report_path
    with Path(options.error_report_path).open(newline="", encoding="utf-8") as infile:
        rows = list(csv.DictReader(infile))
    assert len(rows) == 1
    assert rows[0]["Record Index"] == "2"
    assert rows[0]["Error Messages"] == "DUPLICATE_VALUE"
    assert "INV-002" in rows[0]["Failed Record"]

    with pipeline.session_factory() as db:
        run = get_run(db, result.run_id)
        assert run.status == "succeeded"
        assert run.trigger_source == "manual"
        assert (run.total_records, run.succeeded_records, run.failed_records) == (3, 2, 1)
        assert run.error_report_path == options.error_report_path

        batches = list_batches(db, run.id)
        assert [(b.batch_number, b.start_index, b.size, b.status) for b in batches] == [
            (1, 0, 2, "partial"),
            (2, 2, 1, "succeeded"),
        ]

        failures = db.execute(select(FailedRecord).where(FailedRecord.run_id == run.id)).scalars().all()
        assert [(f.record_index, f.messages) for f in failures] == [(1, "DUPLICATE_VALUE")]


def test_clean_run_writes_no_report(pipeline, options) -> None:
    result = pipeline.run(options)

    assert result.summary.failed == 0
    assert result.error_report_path is None
    assert not Path(options.error_report_path).exists()


def test_record_limit_applies_before_external_id_filter(pipeline, connection, options) -> None:
    result = pipeline.run(replace(options, record_limit=3))

    submitted = [record["Invoice_NS_Id__c"] for _, batch, _ in connection.calls for record in batch]
    assert submitted == ["INV-001", "INV-002"]
    assert result.summary.total == 2


def test_without_mapping_records_pass_through(pipeline, connection, options) -> None:
    pipeline.run(replace(options, field_mapping={}, external_id_field="Document Number"))

    first = connection.calls[0][1][0]
    assert first == {"Document Number": "INV-001", "D2": "6/20/24 3:24", "Amount": "1500.00"}


def test_no_valid_records_short_circuits(pipeline, connection, options) -> None:
    result = pipeline.run(replace(options, external_id_field="Missing_Field__c"))

    assert result.status == "empty"
    assert result.summary.total == 0
    assert connection.calls == []

    with pipeline.session_factory() as db:
        assert get_run(db, result.run_id).status == "empty"


def test_transport_failure_continues_with_next_batch(pipeline, connection, options) -> None:
    connection.fail_batches = {1}

    result = pipeline.run(options)

    assert result.status == "succeeded"
    assert [error.index for error in result.errors] == [0, 1]
    assert all(error.messages == ("socket hang up",) for error in result.errors)
    assert [r.index for r in result.results] == [2]

    with pipeline.session_factory() as db:
        batches = list_batches(db, result.run_id)
        assert [b.status for b in batches] == ["failed", "succeeded"]
        assert batches[0].error == "socket hang up"


def test_authentication_failure_propagates_and_is_recorded(pipeline, connection, options) -> None:
    connection.login_error = AuthenticationError("INVALID_LOGIN")

    with pytest.raises(AuthenticationError):
        pipeline.run(options)

    assert connection.calls == []
    with pipeline.session_factory() as db:
        run = db.execute(select(UpsertRun)).scalar_one()
        assert run.status == "failed"
        assert run.error == "INVALID_LOGIN"


def test_missing_csv_propagates_source_error(pipeline, connection, options) -> None:
    with pytest.raises(SourceReadError):
        pipeline.run(replace(options, csv_file_path=str(Path(options.csv_file_path).with_name("nope.csv"))))

    assert connection.calls == []


def test_scheduled_trigger_source_is_persisted(pipeline, options) -> None:
    result = pipeline.run(options, trigger_source="scheduled")

    with pipeline.session_factory() as db:
        assert get_run(db, result.run_id).trigger_source == "scheduled"
