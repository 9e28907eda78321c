"""Value type tags, field configuration and record validation for Stowage."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, create_model
from pydantic import Field as PydanticField

from stowage.errors import DefinitionError, ValidationError


class DataType(str, Enum):
    """Type tags usable in a store schema."""

    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING = "string"
    DATE = "date"
    ARRAY = "array"
    OBJECT = "object"
    BYTES = "bytes"
    ANY = "any"


_ANNOTATIONS: dict[DataType, Any] = {
    DataType.BOOLEAN: bool,
    DataType.NUMBER: Union[int, float],
    DataType.STRING: str,
    DataType.DATE: datetime,
    DataType.ARRAY: list,
    DataType.OBJECT: dict,
    DataType.BYTES: bytes,
    DataType.ANY: Any,
}


@dataclass(frozen=True)
class Field:
    """Configured schema entry: a type tag plus key/index flags.

    A bare ``DataType`` in a schema is shorthand for ``Field(type)``.
    """

    type: DataType
    key: bool = False
    index: bool = False
    unique: bool = False

    @property
    def annotation(self) -> Any:
        return _ANNOTATIONS[self.type]


def normalize_field(name: str, spec: Any) -> Field:
    """Resolve a schema entry (type tag or ``Field``) to a ``Field``."""
    if isinstance(spec, Field):
        if not isinstance(spec.type, DataType):
            try:
                return Field(DataType(spec.type), spec.key, spec.index, spec.unique)
            except ValueError:
                raise DefinitionError(f"Unknown type tag {spec.type!r} for field '{name}'")
        return spec
    if isinstance(spec, DataType):
        return Field(spec)
    if isinstance(spec, str):
        try:
            return Field(DataType(spec))
        except ValueError:
            pass
    raise DefinitionError(f"Unknown type tag {spec!r} for field '{name}'")


def _build_pydantic_model(
    model_name: str,
    fields: Mapping[str, Field],
    *,
    partial: bool,
    optional: frozenset[str] = frozenset(),
) -> type[BaseModel]:
    """Build a strict pydantic model from Field definitions.

    Field names are aliased so that store fields may use any identifier,
    including names that clash with BaseModel attributes.
    """
    pydantic_fields: dict[str, Any] = {}
    for position, (name, f) in enumerate(fields.items()):
        ann = Optional[f.annotation]
        if partial or name in optional:
            pydantic_fields[f"field_{position}"] = (ann, PydanticField(default=None, alias=name))
        else:
            pydantic_fields[f"field_{position}"] = (ann, PydanticField(..., alias=name))

    config = ConfigDict(strict=True, extra="forbid")
    return create_model(model_name, __config__=config, **pydantic_fields)  # type: ignore[call-overload]


class RecordValidator:
    """Validates record payloads against a store schema.

    Full validation requires exactly the declared field set. Partial
    validation accepts any subset. Both reject undeclared fields and values
    of the wrong type; ``None`` is accepted for every field.
    """

    def __init__(
        self,
        store_name: str,
        fields: Mapping[str, Field],
        *,
        optional: frozenset[str] = frozenset(),
    ) -> None:
        self.store_name = store_name
        self.fields = fields
        self._full = _build_pydantic_model(
            f"_{store_name}Record", fields, partial=False, optional=optional
        )
        self._partial = _build_pydantic_model(f"_{store_name}Patch", fields, partial=True)

    def validate(self, value: Any, *, partial: bool = False) -> None:
        if not isinstance(value, dict):
            raise ValidationError(
                f"Record for '{self.store_name}' must be a dict, got {type(value).__name__}"
            )
        model = self._partial if partial else self._full
        try:
            model.model_validate(value)
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Data not valid for '{self.store_name}': {e.error_count()} error(s)",
                errors=e.errors(include_url=False),
            ) from e

    def record(self, initial: dict[str, Any] | None = None) -> dict[str, Any]:
        """Return a record with every declared field.

        ``initial`` must be a complete record; with no ``initial`` every field
        is None.
        """
        if initial is not None:
            self.validate(initial)
        data = initial or {}
        return {name: data.get(name) for name in self.fields}
