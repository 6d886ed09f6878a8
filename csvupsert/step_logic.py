import csv
from datetime import datetime, timedelta
import json
import logging
from pathlib import Path

from dateutil import parser as date_parser

from csvupsert.schemas import IndexedError, Record


logger = logging.getLogger(__name__)

# Source systems export wall-clock values that sit this many hours behind the target org.
DATETIME_OFFSET_HOURS = 6

ERROR_REPORT_COLUMNS = ("Record Index", "Error Messages", "Failed Record")


class SourceReadError(RuntimeError):
    pass


def read_csv_records(input_path: Path) -> list[Record]:
    """Read a CSV file into records keyed by trimmed header names.

    Empty cells are dropped from each record and rows without any
    remaining value are skipped entirely.
    """
    if not input_path.is_file():
        raise SourceReadError(f"input file not found: {input_path}")

    records: list[Record] = []
    try:
        with input_path.open("r", encoding="utf-8-sig", newline="") as infile:
            for row in csv.DictReader(infile):
                cleaned: Record = {}
                for key, value in row.items():
                    # Cells past the header row land under a None key.
                    if key is None or value is None or value == "":
                        continue
                    cleaned[key.strip()] = value.strip() if isinstance(value, str) else value
                if cleaned:
                    records.append(cleaned)
    except (csv.Error, UnicodeDecodeError, OSError) as exc:
        raise SourceReadError(f"could not read {input_path}: {exc}") from exc

    logger.info("parsed %d records from csv", len(records), extra={"path": str(input_path)})
    return records


def _parse_slash_datetime(value: str) -> datetime:
    parts = value.split(" ")
    date_fields = parts[0].split("/")
    time_fields = parts[1].split(":")
    if len(date_fields) < 3 or len(time_fields) < 2:
        raise ValueError(f"not a M/D/YY H:mm value: {value!r}")

    month, day, year = date_fields[:3]
    if len(year) == 2:
        year = f"20{year}"

    # Out-of-range fields carry into the next unit: 2/30 is March 1, 24:00 is the next day.
    month_index = int(month) - 1
    start = datetime(int(year) + month_index // 12, month_index % 12 + 1, 1)
    return start + timedelta(
        days=int(day) - 1,
        hours=int(time_fields[0]),
        minutes=int(time_fields[1]),
    )


def _parse_iso_wall_clock(value: str) -> datetime:
    text = value[:-1] if value.endswith("Z") else value
    text = text.split(".", 1)[0]
    return datetime.fromisoformat(text).replace(tzinfo=None)


def _parse_generic(value: str) -> datetime:
    # ParserError subclasses ValueError.
    return date_parser.parse(value).replace(tzinfo=None)


def format_datetime(value: datetime) -> str:
    return (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )


def normalize_datetime(value: object, offset_hours: float = DATETIME_OFFSET_HOURS) -> object:
    """Shift a date/time value by ``offset_hours`` and render it as YYYY-MM-DDTHH:MM:SS.

    Values that cannot be parsed are returned unchanged. Normalizing an
    already normalized value shifts it again.
    """
    if not value or not isinstance(value, str):
        return value

    try:
        if "/" in value and " " in value:
            parsed = _parse_slash_datetime(value)
        elif "T" in value:
            # The UTC designator is dropped and the digits are read as wall clock.
            parsed = _parse_iso_wall_clock(value)
        else:
            parsed = _parse_generic(value)
        shifted = parsed + timedelta(hours=offset_hours)
    except (ValueError, TypeError, OverflowError, IndexError):
        logger.debug("leaving unparseable datetime value unchanged", extra={"value": value})
        return value

    return format_datetime(shifted)


def is_datetime_field(source_field: str, destination_field: str) -> bool:
    source = source_field.lower()
    destination = destination_field.lower()
    return (
        "date" in source
        or "time" in source
        or source_field == "D2"
        or "date" in destination
        or "time" in destination
    )


def transform_records(
    records: list[Record],
    field_mapping: dict[str, str],
    *,
    offset_hours: float = DATETIME_OFFSET_HOURS,
) -> list[Record]:
    transformed: list[Record] = []
    for record in records:
        mapped: Record = {}
        for source_field, destination_field in field_mapping.items():
            if source_field not in record:
                continue

            value = record[source_field]
            if (
                is_datetime_field(source_field, destination_field)
                and isinstance(value, str)
                and ("T" in value or "-" in value or "/" in value)
            ):
                value = normalize_datetime(value, offset_hours)
            mapped[destination_field] = value
        transformed.append(mapped)
    return transformed


def limit_records(records: list[Record], record_limit: int | None) -> list[Record]:
    if record_limit is None or record_limit <= 0:
        return list(records)
    return records[:record_limit]


def filter_by_external_id(records: list[Record], external_id_field: str | None) -> list[Record]:
    if not external_id_field:
        return list(records)
    return [record for record in records if record.get(external_id_field)]


def build_error_report(errors: list[IndexedError]) -> list[dict[str, object]]:
    return [
        {
            "Record Index": error.index + 1,
            "Error Messages": "; ".join(error.messages),
            "Failed Record": json.dumps(error.record, default=str),
        }
        for error in errors
    ]


def write_error_report(path: Path, rows: list[dict[str, object]]) -> bool:
    if not rows:
        logger.info("no errors to report")
        return False

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as outfile:
        writer = csv.DictWriter(outfile, fieldnames=ERROR_REPORT_COLUMNS, quoting=csv.QUOTE_ALL)
        writer.writeheader()
        writer.writerows(rows)

    logger.info("error report saved", extra={"path": str(path), "rows": len(rows)})
    return True
