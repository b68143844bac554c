"""Engine: the schema registry that owns every entity of one database."""

from __future__ import annotations

import json
import logging
from typing import Any

from docstore.config import DocstoreConfig
from docstore.entity import Entity
from docstore.errors import NotFoundError, SchemaError
from docstore.relation import Relation
from docstore.storage import Repository

logger = logging.getLogger(__name__)


class Engine:
    """Loads entity definitions from the database and creates/drops entities.

    The registry is a single JSON document in the ``_desc`` table together
    with a version number. Every schema change bumps the version inside the
    same write transaction as its DDL, so concurrent engines on one database
    never lose each other's changes; ``refresh()`` picks up changes made
    elsewhere.
    """

    def __init__(self, repo: Repository, config: DocstoreConfig | None = None) -> None:
        self._repo = repo
        self._config = config or repo.config
        self._desc_table = self._config.desc_table
        self._entities: dict[str, Entity] = {}
        self._version = 0
        self._repo.ensure_desc_table(self._desc_table)
        self._load()

    @classmethod
    def open(cls, db_path: str, config: DocstoreConfig | None = None) -> Engine:
        """Open (creating if needed) the database at db_path."""
        return cls(Repository(db_path, config), config)

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Engine({self._repo.db_path!r}, version={self._version})"

    @property
    def repo(self) -> Repository:
        return self._repo

    @property
    def version(self) -> int:
        return self._version

    def close(self) -> None:
        self._repo.close()

    # --- Registry loading ---

    def _load(self) -> None:
        desc = self._repo.read_desc(self._desc_table)
        if desc is None:
            self._version = 0
            self._entities = {}
            return
        version, text = desc
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise SchemaError(f"Corrupt schema registry in {self._desc_table!r}: {exc}") from exc
        definitions = parsed.get("entities", {}) if isinstance(parsed, dict) else None
        if not isinstance(definitions, dict):
            raise SchemaError(f"Corrupt schema registry in {self._desc_table!r}: no entities")
        self._entities = {
            name: Entity(name, definition, repo=self._repo, registry=self)
            for name, definition in definitions.items()
        }
        self._version = version
        logger.info("Loaded schema version %d with %d entities", version, len(self._entities))

    def refresh(self) -> bool:
        """Reload the registry if another engine changed it; True if reloaded."""
        stored = self._repo.read_desc_version(self._desc_table) or 0
        if stored == self._version:
            return False
        logger.info("Schema version moved from %d to %d, reloading", self._version, stored)
        self._load()
        return True

    def _persist(self, entities: dict[str, Entity]) -> int:
        version = self._version + 1
        registry: dict[str, Any] = {
            "version": version,
            "entities": {name: e.to_definition() for name, e in entities.items()},
        }
        self._repo.write_desc(
            self._desc_table, version, json.dumps(registry, sort_keys=True, separators=(",", ":"))
        )
        return version

    # --- Lookups ---

    def entity(self, name: str) -> Entity | None:
        return self._entities.get(name)

    def entity_or_fail(self, name: str) -> Entity:
        entity = self._entities.get(name)
        if entity is None:
            raise NotFoundError(f"Entity {name!r} not found")
        return entity

    def entities(self) -> list[Entity]:
        return list(self._entities.values())

    def entity_names(self) -> list[str]:
        return list(self._entities)

    def back_relations(self, name: str) -> list[Relation]:
        """Relations of any registered entity whose target is name."""
        return [r for e in self._entities.values() for r in e.relations if r.target == name]

    # --- Schema changes ---

    def entity_create(self, name: str, definition: dict[str, Any]) -> Entity:
        """Create an entity and its tables, then bump the registry version."""
        with self._repo.transaction():
            self.refresh()
            if name in self._entities:
                raise SchemaError(f"Entity {name!r} already exists")
            entity = Entity(name, definition, repo=self._repo, registry=self)
            self._check_table_names(entity)
            for rel in entity.relations:
                if not rel.self_referencing and rel.target not in self._entities:
                    logger.warning(
                        "Relation %s.%s targets unknown entity %r", name, rel.name, rel.target
                    )
            for statement in entity.ddl():
                self._repo.execute(statement)
            entities = {**self._entities, name: entity}
            version = self._persist(entities)
        self._entities = entities
        self._version = version
        logger.info("Created entity %r (schema version %d)", name, version)
        return entity

    def _check_table_names(self, entity: Entity) -> None:
        tables = entity.table_names()
        seen: set[str] = set()
        taken = {t for e in self._entities.values() for t in e.table_names()}
        taken.add(self._desc_table)
        for table in tables:
            if table in seen:
                raise SchemaError(f"Entity {entity.name!r} would create table {table!r} twice")
            seen.add(table)
            if table in taken or self._repo.table_exists(table):
                raise SchemaError(
                    f"Entity {entity.name!r} needs table {table!r}, which already exists"
                )

    def entity_delete(self, name: str) -> None:
        """Drop an entity with all its tables; dependents are left dangling."""
        with self._repo.transaction():
            self.refresh()
            entity = self.entity_or_fail(name)
            for rel in self.back_relations(name):
                if rel.entity_name != name:
                    logger.warning(
                        "Deleting entity %r leaves relation %s.%s dangling",
                        name,
                        rel.entity_name,
                        rel.name,
                    )
            for table in entity.table_names():
                self._repo.drop_table(table)
            entities = {k: v for k, v in self._entities.items() if k != name}
            version = self._persist(entities)
        self._entities = entities
        self._version = version
        logger.info("Deleted entity %r (schema version %d)", name, version)
