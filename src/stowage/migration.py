"""Store reconciliation: diff declared models against live structure, then apply."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Mapping, Union

from stowage.engine.catalog import StoreStructure
from stowage.engine.transaction import UpgradeTransaction
from stowage.errors import DefinitionError
from stowage.schema import ModelMeta

__all__ = [
    "DeleteStore",
    "CreateStore",
    "CreateIndex",
    "DeleteIndex",
    "StructuralEdit",
    "MigrationPlan",
    "MigrationResult",
    "MigrationReconciler",
]

logger = logging.getLogger(__name__)


# --- Structural edits ---


@dataclass(frozen=True)
class DeleteStore:
    store: str


@dataclass(frozen=True)
class CreateStore:
    store: str
    key_path: str | None
    auto_increment: bool


@dataclass(frozen=True)
class CreateIndex:
    store: str
    key_path: str
    unique: bool

    @property
    def name(self) -> str:
        return self.key_path


@dataclass(frozen=True)
class DeleteIndex:
    store: str
    key_path: str

    @property
    def name(self) -> str:
        return self.key_path


StructuralEdit = Union[DeleteStore, CreateStore, CreateIndex, DeleteIndex]


# --- Data classes ---


@dataclass
class MigrationPlan:
    """Ordered structural edits produced by ``MigrationReconciler.plan``."""

    edits: list[StructuralEdit] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.edits)

    @property
    def plan_hash(self) -> str:
        """SHA-256 of the canonical JSON representation of the edits."""
        canonical = json.dumps(
            [{"op": type(e).__name__, **e.__dict__} for e in self.edits],
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode()).hexdigest()

    def stores_touched(self) -> list[str]:
        return sorted({e.store for e in self.edits})


@dataclass
class MigrationResult:
    """Result of ``MigrationReconciler.reconcile``."""

    old_version: int
    new_version: int
    plan: MigrationPlan
    stores_created: list[str] = field(default_factory=list)
    stores_deleted: list[str] = field(default_factory=list)
    duration_s: float = 0.0


# --- Reconciler ---


def _diff_store(
    live: StoreStructure, meta: ModelMeta, edits: list[StructuralEdit]
) -> None:
    if live.key_path != meta.key_path or live.auto_increment != meta.auto_increment:
        raise DefinitionError(
            f"Cannot change the key of '{meta.name}' "
            f"(key_path {live.key_path!r} -> {meta.key_path!r}, "
            f"auto_increment {live.auto_increment} -> {meta.auto_increment}) "
            "without force=True"
        )

    live_indexes = {ix.key_path: ix for ix in live.indexes.values()}
    declared = meta.index_map()

    for key_path, ix in declared.items():
        current = live_indexes.get(key_path)
        if current is None or current.unique == ix.unique:
            continue
        if ix.unique:
            raise DefinitionError(
                f"Index '{key_path}' on '{meta.name}' cannot become unique; "
                "existing records may hold duplicate values (use force=True to recreate the store)"
            )
        edits.append(DeleteIndex(meta.name, key_path))
        edits.append(CreateIndex(meta.name, key_path, False))

    for key_path in sorted(set(live_indexes) - set(declared)):
        edits.append(DeleteIndex(meta.name, key_path))
    for key_path, ix in declared.items():
        if key_path not in live_indexes:
            edits.append(CreateIndex(meta.name, key_path, ix.unique))


class MigrationReconciler:
    """Brings live store structure in line with the declared models.

    Runs once per version upgrade, inside the engine's upgrade transaction.
    Every illegal transition is detected while planning, before any edit is
    applied, and an error raised from ``reconcile`` rolls the whole upgrade
    back.
    """

    def plan(
        self, live: Mapping[str, StoreStructure], metas: Mapping[str, ModelMeta]
    ) -> MigrationPlan:
        edits: list[StructuralEdit] = []
        to_create: list[ModelMeta] = []

        for name in sorted(live):
            if name not in metas:
                edits.append(DeleteStore(name))

        for name, meta in metas.items():
            structure = live.get(name)
            if structure is None:
                to_create.append(meta)
            elif meta.force:
                edits.append(DeleteStore(name))
                to_create.append(meta)
            else:
                _diff_store(structure, meta, edits)

        for meta in to_create:
            edits.append(CreateStore(meta.name, meta.key_path, meta.auto_increment))
            for ix in meta.indexes:
                edits.append(CreateIndex(meta.name, ix.key_path, ix.unique))

        return MigrationPlan(edits)

    async def apply(self, tx: UpgradeTransaction, plan: MigrationPlan) -> None:
        for edit in plan.edits:
            if isinstance(edit, DeleteStore):
                await tx.delete_store(edit.store)
            elif isinstance(edit, CreateStore):
                await tx.create_store(edit.store, edit.key_path, edit.auto_increment)
            elif isinstance(edit, CreateIndex):
                await tx.create_index(edit.store, edit.name, edit.key_path, edit.unique)
            elif isinstance(edit, DeleteIndex):
                await tx.delete_index(edit.store, edit.name)
            else:
                raise TypeError(f"Unknown structural edit: {edit!r}")
            logger.info("Applied %s", edit)

    async def reconcile(
        self, tx: UpgradeTransaction, metas: Mapping[str, ModelMeta]
    ) -> MigrationResult:
        start = time.monotonic()
        live = await tx.snapshot()
        plan = self.plan(live, metas)
        if not plan.has_changes:
            logger.debug("Stores already match version %d; nothing to do", tx.new_version)
        await self.apply(tx, plan)
        return MigrationResult(
            old_version=tx.old_version,
            new_version=tx.new_version,
            plan=plan,
            stores_created=[e.store for e in plan.edits if isinstance(e, CreateStore)],
            stores_deleted=[e.store for e in plan.edits if isinstance(e, DeleteStore)],
            duration_s=time.monotonic() - start,
        )
