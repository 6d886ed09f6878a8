from dataclasses import dataclass, field
import json
import os

from dotenv import load_dotenv


load_dotenv()

DEFAULT_FIELD_MAPPING = {
    "Document Number": "Invoice_NS_Id__c",
    "D2": "NS_Created_Date__c",
}

# sObject Collections reject calls carrying more records than this.
MAX_BATCH_SIZE = 200


class ConfigurationError(RuntimeError):
    pass


@dataclass(frozen=True)
class SalesforceCredentials:
    username: str
    password: str
    security_token: str


@dataclass(frozen=True)
class Settings:
    username: str | None
    password: str | None
    security_token: str | None
    login_url: str
    api_version: str
    database_url: str
    log_level: str
    csv_file_path: str
    sobject_type: str
    external_id_field: str | None
    field_mapping: dict[str, str] = field(default_factory=dict)
    batch_size: int = 200
    record_limit: int = -1
    error_report_path: str = "upsert_errors.csv"
    batch_pause_seconds: float = 0.1
    datetime_offset_hours: float = 6
    schedule_hour_utc: int = 2
    schedule_minute_utc: int = 0

    def credentials(self) -> SalesforceCredentials:
        required = {
            "SALESFORCE_USERNAME": self.username,
            "SALESFORCE_PASSWORD": self.password,
            "SALESFORCE_SECURITY_TOKEN": self.security_token,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigurationError(f"missing required environment variables: {', '.join(missing)}")
        return SalesforceCredentials(
            username=str(self.username),
            password=str(self.password),
            security_token=str(self.security_token),
        )


def parse_field_mapping(raw: str | None) -> dict[str, str]:
    if raw is None:
        return dict(DEFAULT_FIELD_MAPPING)
    if not raw.strip():
        return {}
    try:
        mapping = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"FIELD_MAPPING is not valid JSON: {exc}") from exc
    if not isinstance(mapping, dict):
        raise ConfigurationError("FIELD_MAPPING must be a JSON object of source column to destination field")
    return {str(source): str(destination) for source, destination in mapping.items()}


def validate_batch_size(batch_size: int) -> int:
    if not 1 <= batch_size <= MAX_BATCH_SIZE:
        raise ConfigurationError(f"batch size must be between 1 and {MAX_BATCH_SIZE}, got {batch_size}")
    return batch_size


def get_settings() -> Settings:
    return Settings(
        username=os.getenv("SALESFORCE_USERNAME"),
        password=os.getenv("SALESFORCE_PASSWORD"),
        security_token=os.getenv("SALESFORCE_SECURITY_TOKEN"),
        login_url=os.getenv("SALESFORCE_LOGIN_URL", "https://login.salesforce.com"),
        api_version=os.getenv("SALESFORCE_API_VERSION", "59.0"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./upsert_runs.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        csv_file_path=os.getenv("CSV_FILE_PATH", "invoice.csv"),
        sobject_type=os.getenv("SOBJECT_TYPE", "Invoice__c"),
        external_id_field=os.getenv("EXTERNAL_ID_FIELD", "Invoice_NS_Id__c") or None,
        field_mapping=parse_field_mapping(os.getenv("FIELD_MAPPING")),
        batch_size=validate_batch_size(int(os.getenv("BATCH_SIZE", "200"))),
        record_limit=int(os.getenv("RECORD_LIMIT", "-1")),
        error_report_path=os.getenv("ERROR_REPORT_PATH", "upsert_errors.csv"),
        batch_pause_seconds=float(os.getenv("BATCH_PAUSE_SECONDS", "0.1")),
        datetime_offset_hours=float(os.getenv("DATETIME_OFFSET_HOURS", "6")),
        schedule_hour_utc=int(os.getenv("SCHEDULE_HOUR_UTC", "2")),
        schedule_minute_utc=int(os.getenv("SCHEDULE_MINUTE_UTC", "0")),
    )
