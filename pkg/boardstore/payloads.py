"""
Versioned backup and export envelopes.

Each envelope carries a `version` tag; parsing reads the tag first and
hands the document to the schema registered for that version. Unknown
versions and missing or mistyped fields are rejected with
InvalidOperationError instead of being deserialized permissively.

The board set inside an envelope stays a plain mapping: it is untrusted
and goes through validation.repair() before anything uses it.
"""
import json
from datetime import datetime
from typing import Any, Dict, Literal, Type, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as SchemaError
from pydantic.alias_generators import to_camel

from .errors import InvalidOperationError

FORMAT_VERSION = "1.0"

M = TypeVar("M", bound=BaseModel)


class _Envelope(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)


class BackupPayload(_Envelope):
    """{context, data, backupDate, version} for a single context."""
    context: str
    data: Dict[str, Any]
    backup_date: datetime
    version: Literal["1.0"] = FORMAT_VERSION


class ExportPayload(_Envelope):
    """{exportDate, version, contexts} covering every known context."""
    export_date: datetime
    version: Literal["1.0"] = FORMAT_VERSION
    contexts: Dict[str, Dict[str, Any]]


BACKUP_SCHEMAS: Dict[str, Type[BackupPayload]] = {"1.0": BackupPayload}
EXPORT_SCHEMAS: Dict[str, Type[ExportPayload]] = {"1.0": ExportPayload}


def _parse(text: str, schemas: Dict[str, Type[M]], kind: str) -> M:
    if not text or not text.strip():
        raise InvalidOperationError(f"{kind} is empty")
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidOperationError(f"{kind} is not valid JSON: {e.msg}") from e
    if not isinstance(document, dict):
        raise InvalidOperationError(f"{kind} must be a JSON object")

    version = document.get("version")
    schema = schemas.get(version) if isinstance(version, str) else None
    if schema is None:
        raise InvalidOperationError(
            f"{kind} has unsupported version {version!r}. "
            f"Supported: {', '.join(sorted(schemas))}"
        )
    try:
        return schema.model_validate(document)
    except SchemaError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise InvalidOperationError(f"{kind} is missing or has invalid fields: {fields}") from e


def parse_backup(text: str) -> BackupPayload:
    return _parse(text, BACKUP_SCHEMAS, "Backup")


def parse_export(text: str) -> ExportPayload:
    return _parse(text, EXPORT_SCHEMAS, "Import snapshot")
