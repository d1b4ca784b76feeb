import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from supabase import create_client

from claimflow.core.config import get_settings
from claimflow.services.errors import StorageUnavailable

logger = logging.getLogger(__name__)

INBOUND_PREFIX = "inbound/"
NO_ATTACHMENT_PREFIX = "inbound/no-attachment/"


def build_invoice_pdf_path(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"invoices/{now.year}/{now.month:02d}/{uuid.uuid4()}.pdf"


def build_no_attachment_path(key: str) -> str:
    if key.startswith(NO_ATTACHMENT_PREFIX):
        return key
    if key.startswith(INBOUND_PREFIX):
        return NO_ATTACHMENT_PREFIX + key[len(INBOUND_PREFIX):]
    return NO_ATTACHMENT_PREFIX + key.lstrip("/")


def get_storage_client():
    settings = get_settings()
    key = settings.supabase_service_role_key or settings.supabase_key
    if not settings.supabase_url or not key:
        raise RuntimeError("Supabase storage credentials are not configured")
    return create_client(settings.supabase_url, key)


def build_object_url(bucket: str, path: str) -> str:
    settings = get_settings()
    return f"{settings.supabase_url}/storage/v1/object/{bucket}/{path}"


def _raise_on_error(result, message: str) -> None:
    if isinstance(result, dict):
        error = result.get("error")
    else:
        error = getattr(result, "error", None)
    if error:
        raise StorageUnavailable(message)


class InvoiceStorage:
    """Inbound email artifacts and invoice PDFs held in Supabase Storage."""

    def __init__(self, client=None, *, pdf_bucket: Optional[str] = None) -> None:
        self._client = client
        self.pdf_bucket = pdf_bucket or get_settings().invoice_storage_bucket

    @property
    def client(self):
        if self._client is None:
            self._client = get_storage_client()
        return self._client

    def download(self, bucket: str, key: str) -> bytes:
        try:
            data = self.client.storage.from_(bucket).download(key)
        except Exception as exc:
            raise StorageUnavailable(f"Could not read {bucket}/{key}") from exc
        if not data:
            raise StorageUnavailable(f"Object {bucket}/{key} has no body")
        return data

    def exists(self, bucket: str, key: str) -> bool:
        folder, _, name = key.rpartition("/")
        try:
            entries = self.client.storage.from_(bucket).list(folder, {"search": name})
        except Exception as exc:
            raise StorageUnavailable(f"Could not list {bucket}/{folder}") from exc
        return any(entry.get("name") == name for entry in entries or [])

    def copy_to_no_attachment(self, bucket: str, key: str) -> str:
        destination = build_no_attachment_path(key)
        if destination == key or self.exists(bucket, destination):
            return destination
        try:
            result = self.client.storage.from_(bucket).copy(key, destination)
        except Exception as exc:
            raise StorageUnavailable(f"Could not copy {bucket}/{key}") from exc
        _raise_on_error(result, f"Could not copy {bucket}/{key}")
        return destination

    def upload_pdf(self, content: bytes) -> tuple[str, str]:
        path = build_invoice_pdf_path()
        try:
            result = self.client.storage.from_(self.pdf_bucket).upload(
                path,
                content,
                {"content-type": "application/pdf"},
            )
        except Exception as exc:
            raise StorageUnavailable("Could not upload invoice PDF") from exc
        _raise_on_error(result, "Could not upload invoice PDF")
        logger.info("Invoice PDF stored at %s/%s", self.pdf_bucket, path)
        return self.pdf_bucket, path


def get_invoice_storage() -> InvoiceStorage:
    return InvoiceStorage()
