"""Utilities for reading contacts from uploaded CSV and vCard files."""
from __future__ import annotations

import csv
import io
from pathlib import PurePath
from typing import Any

import vobject

from contacthub.core.errors import ValidationError
from contacthub.models import ImportSource
from contacthub.services.normalizer import FIELD_ALIASES

# A CSV must carry at least one identifier column to be importable.
IDENTIFIER_COLUMNS = frozenset(FIELD_ALIASES["phone"]) | frozenset(FIELD_ALIASES["email"])

VCF_EXTENSIONS = {".vcf", ".vcard"}
VCF_CONTENT_TYPES = {"text/vcard", "text/x-vcard", "text/directory"}


class ContactFileReader:
    """Turn an uploaded file into raw contact rows for the normalizer.

    Rows keep the spelling of the source (CSV headers, vCard properties
    mapped to snake_case); header aliases are resolved by the normalizer.
    Unreadable files raise ``ValidationError`` before any row is processed.
    """

    def __init__(self, filename: str | None, content_type: str | None = None) -> None:
        self.filename = filename or ""
        self.content_type = (content_type or "").split(";")[0].strip().lower()

    @property
    def source(self) -> ImportSource:
        suffix = PurePath(self.filename).suffix.lower()
        if suffix in VCF_EXTENSIONS or self.content_type in VCF_CONTENT_TYPES:
            return ImportSource.VCF
        return ImportSource.CSV

    def read(self, file_bytes: bytes) -> list[dict[str, Any]]:
        text = self._decode(file_bytes)
        if self.source is ImportSource.VCF:
            return self._read_vcards(text)
        return self._read_csv(text)

    def _decode(self, file_bytes: bytes) -> str:
        if not file_bytes.strip():
            raise ValidationError("Uploaded file is empty", code="EMPTY_FILE")
        try:
            return file_bytes.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ValidationError("Uploaded file must be UTF-8 encoded", code="INVALID_FILE") from exc

    def _read_csv(self, text: str) -> list[dict[str, Any]]:
        reader = csv.DictReader(io.StringIO(text))
        raw_header = reader.fieldnames
        if raw_header is None:
            raise ValidationError("CSV file must include a header row", code="MISSING_HEADER")
        header = [column.strip() for column in raw_header if column]
        if not IDENTIFIER_COLUMNS & set(header):
            raise ValidationError(
                "CSV header must include a phone or email column",
                code="MISSING_HEADER",
                details={"header": header},
            )

        rows: list[dict[str, Any]] = []
        try:
            for raw_row in reader:
                rows.append({(key or "").strip(): value for key, value in raw_row.items()})
        except csv.Error as exc:
            raise ValidationError(f"Malformed CSV: {exc}", code="INVALID_FILE") from exc
        return rows

    def _read_vcards(self, text: str) -> list[dict[str, Any]]:
        try:
            cards = list(vobject.readComponents(text))
        except vobject.base.ParseError as exc:
            raise ValidationError(f"Failed to parse vCard content: {exc}", code="INVALID_FILE") from exc

        rows: list[dict[str, Any]] = []
        for card in cards:
            if card.name != "VCARD":
                continue
            rows.append(self._vcard_row(card))
        if not rows:
            raise ValidationError("No vCard entries found", code="INVALID_FILE")
        return rows

    def _vcard_row(self, card: Any) -> dict[str, Any]:
        row: dict[str, Any] = {}
        if hasattr(card, "n"):
            row["first_name"] = _join(card.n.value.given)
            row["last_name"] = _join(card.n.value.family)
        if not row.get("first_name") and hasattr(card, "fn"):
            parts = str(card.fn.value).strip().split(" ", 1)
            row["first_name"] = parts[0]
            if len(parts) > 1 and not row.get("last_name"):
                row["last_name"] = parts[1]
        if hasattr(card, "tel_list"):
            row["phone"] = card.tel_list[0].value
        if hasattr(card, "email_list"):
            row["email"] = card.email_list[0].value
        if hasattr(card, "org"):
            row["company"] = _join(card.org.value)
        if hasattr(card, "title"):
            row["job_title"] = card.title.value
        return row


def _join(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        joined = " ".join(str(part) for part in value if part)
    else:
        joined = str(value)
    return joined.strip() or None
