"""Store declarations: ModelMeta and the per-version SchemaRegistry."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from stowage.errors import DefinitionError
from stowage.types import Field, RecordValidator, normalize_field


@dataclass(frozen=True)
class IndexConfig:
    """A secondary index, identified by the field it indexes."""

    key_path: str
    unique: bool = False


@dataclass(frozen=True)
class ModelMeta:
    """Declared structure of one store."""

    name: str
    schema: Mapping[str, Field]
    key_path: str | None = None
    auto_increment: bool = False
    indexes: tuple[IndexConfig, ...] = ()
    force: bool = False
    validator: RecordValidator = field(repr=False, compare=False, default=None)  # type: ignore[assignment]

    def index_map(self) -> dict[str, IndexConfig]:
        return {ix.key_path: ix for ix in self.indexes}


def build_meta(
    name: str,
    schema: Mapping[str, Any],
    *,
    auto_increment: bool = False,
    force: bool = False,
) -> ModelMeta:
    """Normalize a schema declaration into a ModelMeta.

    Raises DefinitionError for multiple in-line keys or ``unique`` without
    ``index``.
    """
    if not isinstance(name, str) or not name:
        raise DefinitionError("Store name must be a non-empty string")
    if not isinstance(schema, Mapping):
        raise DefinitionError(f"Schema for '{name}' must be a mapping of field name to type")

    fields: dict[str, Field] = {}
    key_path: str | None = None
    indexes: list[IndexConfig] = []

    for field_name, spec in schema.items():
        if not isinstance(field_name, str) or not field_name:
            raise DefinitionError(f"Invalid field name {field_name!r} in '{name}'")
        f = normalize_field(field_name, spec)

        if f.key:
            if key_path is not None:
                raise DefinitionError(
                    f"Cannot define multiple in-line keys on '{name}': {key_path}, {field_name}"
                )
            key_path = field_name

        if f.unique and not f.index:
            raise DefinitionError(
                f"Field '{field_name}' on '{name}': `unique` option requires `index`"
            )
        if f.index:
            indexes.append(IndexConfig(field_name, f.unique))
        fields[field_name] = f

    optional = frozenset({key_path}) if key_path is not None and auto_increment else frozenset()
    schema_view = MappingProxyType(fields)
    return ModelMeta(
        name=name,
        schema=schema_view,
        key_path=key_path,
        auto_increment=bool(auto_increment),
        indexes=tuple(indexes),
        force=bool(force),
        validator=RecordValidator(name, schema_view, optional=optional),
    )


class SchemaRegistry:
    """Declared stores, grouped by the database version they target."""

    def __init__(self) -> None:
        self._versions: dict[int, dict[str, ModelMeta]] = {}

    def register(self, version: int, meta: ModelMeta) -> None:
        stores = self._versions.setdefault(version, {})
        if meta.name in stores:
            raise DefinitionError(
                f"{meta.name} model already registered on target version {version}"
            )
        stores[meta.name] = meta

    def get(self, version: int, name: str) -> ModelMeta | None:
        return self._versions.get(version, {}).get(name)

    def entries(self, version: int) -> dict[str, ModelMeta]:
        return dict(self._versions.get(version, {}))

    def names(self, version: int) -> list[str]:
        return list(self._versions.get(version, {}))

    def versions(self) -> list[int]:
        return sorted(self._versions)
