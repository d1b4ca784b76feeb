from functools import lru_cache
import json
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_list_value(value: str) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except ValueError:
            pass
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: str = ""
    supabase_jwt_secret: str = ""
    supabase_jwt_audience: str = Field(
        default="authenticated",
        validation_alias=AliasChoices("SUPABASE_JWT_AUDIENCE"),
    )
    database_url: str = ""

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = Field(
        default=False,
        validation_alias=AliasChoices("EXPOSE_ERROR_DETAILS"),
    )
    public_base_url: str = Field(
        default="http://localhost:8000",
        validation_alias=AliasChoices("PUBLIC_BASE_URL", "APP_BASE_URL"),
    )

    # Inbound email pipeline
    email_ingest_secret: str = Field(
        default="",
        validation_alias=AliasChoices("EMAIL_INGEST_SECRET", "INGEST_WEBHOOK_SECRET"),
    )
    invoice_storage_bucket: str = Field(
        default="invoices",
        validation_alias=AliasChoices("INVOICE_STORAGE_BUCKET"),
    )
    ocr_service_url: str = ""
    ocr_api_key: str = ""
    ocr_timeout_seconds: float = 15.0
    ocr_max_pages: int = 50

    # Participant approval tokens
    approval_token_secret: str = Field(
        default="",
        validation_alias=AliasChoices("APPROVAL_TOKEN_SECRET"),
    )
    approval_token_ttl_hours: int = Field(
        default=72,
        validation_alias=AliasChoices("APPROVAL_TOKEN_TTL_HOURS"),
    )

    # Fund quarantine ledger
    quarantine_threshold_percent: int = 80
    budget_line_retry_attempts: int = 3

    # Rule engine (domain events)
    rule_engine_url: str = ""
    rule_engine_api_key: str = ""
    rule_engine_timeout_seconds: float = 5.0

    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    enable_twilio: bool = False

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_from_email: str = ""

    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED"),
    )
    pii_redaction_fields: list[str] = Field(
        default_factory=lambda: [
            "phone",
            "email",
            "source_email",
            "address",
            "ndis_number",
            "first_name",
            "last_name",
        ],
        validation_alias=AliasChoices("PII_REDACTION_FIELDS"),
    )

    rate_limit_public_enabled: bool = True
    rate_limit_approval_ip_per_min: int = 20
    rate_limit_ingest_ip_per_min: int = 600
    trusted_proxy_cidrs: list[str] = Field(default_factory=list)

    enable_recurring_jobs: bool = False
    enable_notification_outbox: bool = True
    enable_event_outbox: bool = True
    notification_worker_interval_seconds: int = 30
    notification_worker_batch_size: int = 50
    notification_worker_max_attempts: int = 5
    event_worker_interval_seconds: int = 15
    event_worker_batch_size: int = 100
    event_worker_max_attempts: int = 8
    approval_expiry_interval_seconds: int = 300

    security_headers_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("SECURITY_HEADERS_ENABLED", "SECURE_HEADERS_ENABLED"),
    )

    cors_allow_origins: list[str] = Field(default_factory=list)
    cors_allow_methods: list[str] = Field(default_factory=lambda: [
        "GET",
        "POST",
        "PATCH",
        "DELETE",
        "OPTIONS",
    ])
    cors_allow_headers: list[str] = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
    ])

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        "pii_redaction_fields",
        "trusted_proxy_cidrs",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return _parse_list_value(value)
        return value

    @property
    def is_sqlite(self) -> bool:
        return (self.database_url or "").startswith("sqlite")

@lru_cache

def get_settings() -> Settings:
    return Settings()
