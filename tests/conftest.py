from collections.abc import Callable
from pathlib import Path

import pytest

from csvupsert.config import Settings
from csvupsert.db_models import build_session_factory
from csvupsert.pacing import IntervalPacer
from csvupsert.pipeline import UpsertPipeline
from csvupsert.schemas import Record, UpsertOutcome


class FakeConnection:
    """In-memory stand-in for SalesforceConnection.

    ``respond`` decides the outcome of each record; ``fail_batches`` holds
    the 1-based batch numbers whose call raises as a whole.
    """

    def __init__(
        self,
        respond: Callable[[Record], UpsertOutcome] | None = None,
        *,
        fail_batches: set[int] | None = None,
        login_error: Exception | None = None,
    ) -> None:
        self.respond = respond or (lambda record: UpsertOutcome(success=True, record_id="a0X", created=True))
        self.fail_batches = fail_batches or set()
        self.login_error = login_error
        self.logins = 0
        self.calls: list[tuple[str, list[Record], str | None]] = []

    def login(self) -> object:
        self.logins += 1
        if self.login_error is not None:
            raise self.login_error
        return {"user_id": "005xx"}

    def upsert(self, object_type: str, records: list[Record], external_id_field: str | None) -> list[UpsertOutcome]:
        self.calls.append((object_type, list(records), external_id_field))
        if len(self.calls) in self.fail_batches:
            raise ConnectionError("socket hang up")
        return [self.respond(record) for record in records]


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "data").mkdir(parents=True, exist_ok=True)
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        username="user@example.com",
        password="secret",
        security_token="token",
        login_url="https://login.salesforce.com",
        api_version="59.0",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        csv_file_path=str(temp_workspace / "data" / "invoice.csv"),
        sobject_type="Invoice__c",
        external_id_field="Invoice_NS_Id__c",
        field_mapping={"Document Number": "Invoice_NS_Id__c", "D2": "NS_Created_Date__c"},
        batch_size=2,
        record_limit=-1,
        error_report_path=str(temp_workspace / "outputs" / "upsert_errors.csv"),
        batch_pause_seconds=0,
    )


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def pacer(sleeps: list[float]) -> IntervalPacer:
    return IntervalPacer(0.1, sleep=sleeps.append)


@pytest.fixture()
def connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture()
def pipeline(test_settings: Settings, connection: FakeConnection, pacer: IntervalPacer) -> UpsertPipeline:
    session_factory = build_session_factory(test_settings.database_url)
    return UpsertPipeline(test_settings, connection, session_factory, pacer=pacer)


def write_csv(path: Path, lines: list[str]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture()
def make_connection() -> type[FakeConnection]:
    return FakeConnection


@pytest.fixture()
def csv_writer() -> Callable[[Path, list[str]], Path]:
    return write_csv
