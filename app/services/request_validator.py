"""
Validation and normalisation of export and deletion request parameters.

Scopes are closed tagged unions discriminated on ``type``. Everything
downstream of these functions receives a parsed scope model, never the raw
request payload.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from app.errors import ValidationError


EXPORT_FORMATS = ("json", "csv")
DELETION_TYPES = ("soft", "hard")

ExportDataType = Literal["profile", "sessions", "consents", "settings", "subscriptions"]
DeletionDataType = Literal["sessions", "consents", "settings", "subscriptions"]


class _Scope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class AllScope(_Scope):
    type: Literal["all"] = "all"


class DateRangeScope(_Scope):
    type: Literal["dateRange"]
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")


class SpecificExportScope(_Scope):
    type: Literal["specific"]
    data_types: list[ExportDataType] = Field(alias="dataTypes", min_length=1)


class SpecificDeletionScope(_Scope):
    type: Literal["specific"]
    data_types: list[DeletionDataType] = Field(alias="dataTypes", min_length=1)


ExportScope = Annotated[
    AllScope | DateRangeScope | SpecificExportScope,
    Field(discriminator="type"),
]

DeletionScope = Annotated[
    AllScope | SpecificDeletionScope,
    Field(discriminator="type"),
]

_export_scope_adapter = TypeAdapter(ExportScope)
_deletion_scope_adapter = TypeAdapter(DeletionScope)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _field_from_error(exc: PydanticValidationError) -> str:
    """Map the first pydantic error location onto a ``scope.<field>`` path."""
    loc = exc.errors()[0].get("loc", ())
    # loc[0] is the union tag; the field name, if any, follows it
    if len(loc) > 1:
        return f"scope.{loc[1]}"
    return "scope"


def _parse_scope(adapter: TypeAdapter, scope: Any):
    if scope is None:
        return AllScope()
    if not isinstance(scope, dict):
        raise ValidationError("Scope must be an object with a 'type' field", field="scope")
    try:
        return adapter.validate_python(scope)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid scope: {e.errors()[0].get('msg', 'invalid value')}",
            field=_field_from_error(e),
        ) from e


def parse_export_scope(scope: Any) -> AllScope | DateRangeScope | SpecificExportScope:
    """Parse a raw or stored export scope."""
    parsed = _parse_scope(_export_scope_adapter, scope)
    if isinstance(parsed, DateRangeScope):
        parsed.start_date = _as_utc(parsed.start_date)
        parsed.end_date = _as_utc(parsed.end_date)
        if parsed.start_date and parsed.end_date and parsed.start_date > parsed.end_date:
            raise ValidationError("startDate must not be after endDate", field="scope.endDate")
    return parsed


def parse_deletion_scope(scope: Any) -> AllScope | SpecificDeletionScope:
    """Parse a raw or stored deletion scope."""
    return _parse_scope(_deletion_scope_adapter, scope)


def validate_export_request(format: Optional[str] = None, scope: Any = None):
    """
    Validate export parameters.

    Args:
        format: 'json' or 'csv'; defaults to 'json'
        scope: raw scope object; defaults to ``{"type": "all"}``

    Returns:
        Tuple of (format, parsed scope)

    Raises:
        ValidationError: naming the offending field
    """
    export_format = (format or "json").lower()
    if export_format not in EXPORT_FORMATS:
        raise ValidationError(
            f"Invalid format '{format}'. Must be one of: {', '.join(EXPORT_FORMATS)}",
            field="format",
        )
    return export_format, parse_export_scope(scope)


def validate_deletion_request(type: Optional[str] = None, scope: Any = None):
    """
    Validate deletion parameters.

    Returns:
        Tuple of (deletion type, parsed scope)
    """
    deletion_type = (type or "soft").lower()
    if deletion_type not in DELETION_TYPES:
        raise ValidationError(
            f"Invalid deletion type '{type}'. Must be one of: {', '.join(DELETION_TYPES)}",
            field="type",
        )
    return deletion_type, parse_deletion_scope(scope)
