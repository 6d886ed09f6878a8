from dataclasses import dataclass, field

from csvupsert.config import Settings


Record = dict[str, object]


@dataclass(frozen=True)
class UpsertOutcome:
    success: bool
    record_id: str | None = None
    created: bool = False
    messages: tuple[str, ...] = ()

    @classmethod
    def from_response(cls, payload: dict[str, object]) -> "UpsertOutcome":
        """Build an outcome from one element of a collections upsert response."""
        if payload.get("success"):
            return cls(success=True, record_id=str(payload.get("id")), created=bool(payload.get("created")))

        messages: list[str] = []
        for error in payload.get("errors") or []:
            if isinstance(error, dict):
                messages.append(str(error.get("message") or error.get("statusCode") or error))
            else:
                messages.append(str(error))
        return cls(success=False, messages=tuple(messages))


@dataclass(frozen=True)
class IndexedResult:
    index: int
    record_id: str | None
    created: bool
    record: Record


@dataclass(frozen=True)
class IndexedError:
    index: int
    messages: tuple[str, ...]
    record: Record


@dataclass(frozen=True)
class BatchReport:
    batch_number: int
    start_index: int
    size: int
    succeeded: int
    failed: int
    duration_ms: float
    error: str | None = None

    @property
    def status(self) -> str:
        if self.error is not None or self.succeeded == 0:
            return "failed"
        if self.failed:
            return "partial"
        return "succeeded"


@dataclass(frozen=True)
class RunSummary:
    total: int
    succeeded: int
    created: int
    updated: int
    failed: int

    @classmethod
    def from_outcomes(cls, results: list[IndexedResult], errors: list[IndexedError]) -> "RunSummary":
        created = sum(1 for result in results if result.created)
        return cls(
            total=len(results) + len(errors),
            succeeded=len(results),
            created=created,
            updated=len(results) - created,
            failed=len(errors),
        )

    @classmethod
    def empty(cls) -> "RunSummary":
        return cls(total=0, succeeded=0, created=0, updated=0, failed=0)


@dataclass(frozen=True)
class RunOptions:
    csv_file_path: str
    sobject_type: str
    external_id_field: str | None = None
    field_mapping: dict[str, str] = field(default_factory=dict)
    batch_size: int = 200
    record_limit: int = -1
    error_report_path: str = "upsert_errors.csv"

    @classmethod
    def from_settings(cls, settings: Settings) -> "RunOptions":
        return cls(
            csv_file_path=settings.csv_file_path,
            sobject_type=settings.sobject_type,
            external_id_field=settings.external_id_field,
            field_mapping=dict(settings.field_mapping),
            batch_size=settings.batch_size,
            record_limit=settings.record_limit,
            error_report_path=settings.error_report_path,
        )


@dataclass(frozen=True)
class PipelineResult:
    run_id: int
    status: str
    summary: RunSummary
    results: list[IndexedResult]
    errors: list[IndexedError]
    error_report_path: str | None
