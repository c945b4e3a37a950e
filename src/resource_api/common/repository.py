"""CRUD over one mapped entity type, including declared sub-relationships.

The repository flushes but never commits; the caller owns the transaction.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from sqlalchemy import inspect, select
from sqlalchemy.orm import Mapper, RelationshipProperty, Session

from resource_api.common.exceptions import (
    ConfigurationError,
    ErrorItem,
    NotFoundError,
    PersistenceError,
    ResourceError,
    ValidationError,
)
from resource_api.common.list_filters import coerce_to_column
from resource_api.common.query_builder import primary_key_column

ModelT = TypeVar("ModelT")


class SaveStrategy(str, Enum):
    CREATE = "create"
    CREATE_MANY = "create_many"
    ATTACH = "attach"
    SYNC = "sync"
    ASSOCIATE = "associate"


@dataclass(frozen=True)
class RelationshipDescriptor:
    """How a nested payload attribute is written onto a relationship.

    ``save_method`` is a :class:`SaveStrategy` applied through the relationship,
    or, with ``call_on_model``, the name of a method on the owning entity that
    receives the raw payload value.
    """

    name: str
    save_method: SaveStrategy | str
    attribute_name: str | None = None
    call_on_model: bool = False
    clear_before_saving: bool = False

    def __post_init__(self) -> None:
        if self.attribute_name is None:
            object.__setattr__(self, "attribute_name", self.name)
        if not self.call_on_model:
            try:
                object.__setattr__(self, "save_method", SaveStrategy(self.save_method))
            except ValueError as exc:
                raise ConfigurationError(
                    f"Unknown save strategy {self.save_method!r} for relationship {self.name!r}"
                ) from exc

    @property
    def key(self) -> str:
        return self.attribute_name or self.name


class EntityRepository(Generic[ModelT]):
    """get/create/update/delete for ``model`` with explicit sessions."""

    def __init__(self, model: type[ModelT]) -> None:
        self.model = model
        self._mapper: Mapper[Any] = inspect(model)
        self._pk = primary_key_column(model)
        self._columns = {attr.key for attr in self._mapper.column_attrs}

    @property
    def resource_name(self) -> str:
        return self.model.__name__

    def bind_relationships(self, relationships: Iterable[RelationshipDescriptor]) -> None:
        """Check that every descriptor names a relationship (or method) of the model."""

        for descriptor in relationships:
            if descriptor.call_on_model:
                if not callable(getattr(self.model, str(descriptor.save_method), None)):
                    raise ConfigurationError(
                        f"{self.resource_name} has no method {descriptor.save_method!r}"
                    )
            elif descriptor.name not in self._mapper.relationships:
                raise ConfigurationError(
                    f"{descriptor.name!r} is not a relationship of {self.resource_name}"
                )

    def get(self, session: Session, id_or_entity: Any, by_field: str | None = None) -> ModelT:
        if isinstance(id_or_entity, self.model):
            return id_or_entity

        if by_field:
            column = self._mapper.columns.get(by_field)
            if column is None:
                raise ConfigurationError(f"{by_field!r} is not a column of {self.resource_name}")
            try:
                value = coerce_to_column(column, id_or_entity)
            except ValueError:
                raise NotFoundError(self.resource_name, id_or_entity, field=by_field) from None
            entity = session.execute(
                select(self.model).where(column == value).limit(1)
            ).scalars().first()
            if entity is None:
                raise NotFoundError(self.resource_name, id_or_entity, field=by_field)
            return entity

        try:
            key = coerce_to_column(self._pk, id_or_entity)
        except ValueError:
            raise NotFoundError(self.resource_name, id_or_entity) from None
        entity = session.get(self.model, key)
        if entity is None:
            raise NotFoundError(self.resource_name, id_or_entity)
        return entity

    def create(
        self,
        session: Session,
        attributes: Mapping[str, Any],
        relationships: Sequence[RelationshipDescriptor] = (),
    ) -> ModelT:
        try:
            entity = self.model()
            self._assign(entity, self.plain_attributes(attributes, relationships))
            session.add(entity)
            session.flush()
            self._save_relationships(session, entity, attributes, relationships)
            return entity
        except ResourceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Could not create {self.resource_name}") from exc

    def update(
        self,
        session: Session,
        id_or_entity: Any,
        attributes: Mapping[str, Any],
        relationships: Sequence[RelationshipDescriptor] = (),
    ) -> ModelT:
        entity = self.get(session, id_or_entity)
        identifier = self.identity(entity)
        try:
            self._assign(entity, self.plain_attributes(attributes, relationships))
            session.flush()
            self._save_relationships(session, entity, attributes, relationships)
            return entity
        except ResourceError:
            raise
        except Exception as exc:
            raise PersistenceError(
                f"Could not update {self.resource_name} #{identifier}"
            ) from exc

    def delete(self, session: Session, id_or_entity: Any) -> bool:
        entity = self.get(session, id_or_entity)
        identifier = self.identity(entity)
        try:
            session.delete(entity)
            session.flush()
        except Exception as exc:
            raise PersistenceError(
                f"Could not delete {self.resource_name} #{identifier}"
            ) from exc
        return True

    def identity(self, entity: Any) -> Any:
        return getattr(entity, self._mapper.get_property_by_column(self._pk).key)

    @staticmethod
    def plain_attributes(
        attributes: Mapping[str, Any], relationships: Sequence[RelationshipDescriptor]
    ) -> dict[str, Any]:
        nested = {descriptor.key for descriptor in relationships}
        return {key: value for key, value in attributes.items() if key not in nested}

    def _assign(self, entity: Any, values: Mapping[str, Any]) -> None:
        unknown = sorted(key for key in values if key not in self._columns)
        if unknown:
            raise ValidationError(
                errors=[
                    ErrorItem(field=key, message=f"Unknown field '{key}'.", code="unknown_field")
                    for key in unknown
                ]
            )
        for key, value in values.items():
            setattr(entity, key, value)

    def _save_relationships(
        self,
        session: Session,
        entity: Any,
        attributes: Mapping[str, Any],
        relationships: Sequence[RelationshipDescriptor],
    ) -> None:
        for descriptor in relationships:
            data = attributes.get(descriptor.key)
            if data is None:
                continue
            if descriptor.clear_before_saving:
                self._clear(session, entity, descriptor.name)
            if descriptor.call_on_model:
                getattr(entity, str(descriptor.save_method))(data)
            else:
                self._apply(session, entity, descriptor, data)
            session.flush()
            if descriptor.name in self._mapper.relationships:
                session.refresh(entity, attribute_names=[descriptor.name])

    def _clear(self, session: Session, entity: Any, name: str) -> None:
        prop: RelationshipProperty[Any] = self._mapper.relationships[name]
        current = getattr(entity, name)
        if prop.uselist:
            for related in list(current):
                session.delete(related)
            current.clear()
        elif current is not None:
            session.delete(current)
            setattr(entity, name, None)
        session.flush()

    def _apply(
        self, session: Session, entity: Any, descriptor: RelationshipDescriptor, data: Any
    ) -> None:
        prop: RelationshipProperty[Any] = self._mapper.relationships[descriptor.name]
        target = prop.mapper.class_
        strategy = SaveStrategy(descriptor.save_method)

        if strategy is SaveStrategy.CREATE:
            related = target(**data)
            if prop.uselist:
                getattr(entity, descriptor.name).append(related)
            else:
                setattr(entity, descriptor.name, related)
        elif strategy is SaveStrategy.CREATE_MANY:
            collection = getattr(entity, descriptor.name)
            for item in data:
                collection.append(target(**item))
        elif strategy is SaveStrategy.ATTACH:
            collection = getattr(entity, descriptor.name)
            present = set(map(id, collection))
            for related in self._load_related(session, target, descriptor, data):
                if id(related) not in present:
                    collection.append(related)
        elif strategy is SaveStrategy.SYNC:
            setattr(entity, descriptor.name, self._load_related(session, target, descriptor, data))
        else:
            related = None
            if data not in ("", []):
                related = self._load_related(session, target, descriptor, [data])[0]
            setattr(entity, descriptor.name, related)

    @staticmethod
    def _load_related(
        session: Session, target: type[Any], descriptor: RelationshipDescriptor, data: Any
    ) -> list[Any]:
        ids = data if isinstance(data, (list, tuple, set)) else [data]
        pk = primary_key_column(target)
        found: list[Any] = []
        missing: list[ErrorItem] = []
        for index, raw in enumerate(ids):
            try:
                related = session.get(target, coerce_to_column(pk, raw))
            except ValueError:
                related = None
            if related is None:
                missing.append(
                    ErrorItem(
                        field=f"{descriptor.key}.{index}",
                        message=f"{target.__name__} #{raw} does not exist.",
                        code="unknown_related",
                    )
                )
            else:
                found.append(related)
        if missing:
            raise ValidationError(errors=missing)
        return found


__all__ = ["EntityRepository", "RelationshipDescriptor", "SaveStrategy"]
