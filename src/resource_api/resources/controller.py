"""Declarative resource controllers.

Subclass :class:`ResourceController`, point ``model`` at a mapped class and
declare filters, sorting, relationships and export settings as class
attributes. Hooks are plain methods to override.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any, ClassVar, Generic, TypeVar

import pydantic
from fastapi import Request
from fastapi.responses import StreamingResponse
from sqlalchemy import Select, inspect, select
from sqlalchemy.orm import Session, selectinload

from resource_api.common.casing import FieldCase, to_snake
from resource_api.common.encoding import model_to_dict
from resource_api.common.exceptions import (
    BusinessRuleError,
    ConfigurationError,
    PersistenceError,
    ResourceError,
    ValidationError,
    error_items_from_pydantic,
)
from resource_api.common.list_filters import FilterKind, FilterSpec
from resource_api.common.listing import ResponseEnvelope, parse_query_request, respond
from resource_api.common.logging import log_context
from resource_api.common.query_builder import BoundedQuery, QueryRequest, build_query
from resource_api.common.repository import EntityRepository, RelationshipDescriptor
from resource_api.common.responses import success_deleted, success_entity
from resource_api.common.workbook_export import (
    ColumnType,
    ExportMode,
    ExportSpec,
    TabularExporter,
    build_export_filename,
    export_headers,
)
from resource_api.db import transaction
from resource_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")


class ResourceController(Generic[ModelT]):
    model: ClassVar[type[Any]]
    name: ClassVar[str | None] = None
    path: ClassVar[str | None] = None
    get_by: ClassVar[str | None] = None

    filter_fields: ClassVar[Mapping[str, FilterKind | str]] = {}
    sort_fields: ClassVar[Sequence[str] | None] = None
    field_case: ClassVar[FieldCase | str | None] = FieldCase.SNAKE
    search_fields: ClassVar[Sequence[str]] = ()

    relationships: ClassVar[Sequence[RelationshipDescriptor]] = ()
    eager_load: ClassVar[Sequence[str]] = ()
    export_eager_load: ClassVar[Sequence[str]] = ()

    create_schema: ClassVar[type[pydantic.BaseModel] | None] = None
    update_schema: ClassVar[type[pydantic.BaseModel] | None] = None

    export_header: ClassVar[Sequence[Any]] = (("ID",),)
    export_column_types: ClassVar[Sequence[ColumnType | Mapping[str, Any]]] = ()
    export_auto_width: ClassVar[bool] = False
    export_chunk_size: ClassVar[int | None] = None
    export_mode: ClassVar[ExportMode | str] = ExportMode.XLSX

    def __init__(self, settings: Settings | None = None) -> None:
        if getattr(type(self), "model", None) is None:
            raise ConfigurationError(f"{type(self).__name__}.model is not defined")
        self.settings = settings or get_settings()
        self.repository: EntityRepository[ModelT] = EntityRepository(self.model)
        self.filters = FilterSpec(self.filter_fields).bind(self.model)
        self.repository.bind_relationships(self.relationships)
        self._check_columns("sort_fields", self.sort_fields or ())
        self._check_columns("search_fields", self.search_fields)
        self._list_options = self._loader_options(self.eager_load)
        self._export_options = self._loader_options(self.export_eager_load)
        self.export_spec = ExportSpec(
            header=self.export_header,
            column_types=self.export_column_types,
            auto_width=self.export_auto_width,
            chunk_size=self.export_chunk_size or self.settings.export_chunk_size,
            mode=self.export_mode,
        )

    @property
    def resource_name(self) -> str:
        return self.name or self.model.__name__

    @property
    def route_path(self) -> str:
        return (self.path or f"{to_snake(self.model.__name__)}s").strip("/")

    # --- Hooks --------------------------------------------------------------

    def map_entity(self, entity: ModelT) -> Any:
        return model_to_dict(entity)

    def map_single_entity(self, entity: ModelT) -> Any:
        data = model_to_dict(entity)
        for name in self.eager_load:
            related = getattr(entity, name)
            if related is None:
                data[name] = None
            elif isinstance(related, (list, set, tuple)):
                data[name] = [model_to_dict(item) for item in related]
            else:
                data[name] = model_to_dict(related)
        return data

    def map_export_row(self, entity: ModelT) -> Any:
        return list(model_to_dict(entity).values())

    def entity_access_hook(self, entity: ModelT, request: Request) -> None:
        """Raise to deny read access to ``entity``."""

    def entity_update_access_hook(self, entity: ModelT, request: Request) -> None:
        """Raise to deny write access to ``entity``."""

    def pre_create_hook(self, attributes: dict[str, Any], request: Request) -> None:
        pass

    def post_create_hook(self, entity: ModelT, response: dict[str, Any]) -> None:
        pass

    def pre_update_hook(self, attributes: dict[str, Any], entity: ModelT, request: Request) -> None:
        pass

    def post_update_hook(self, entity: ModelT, response: dict[str, Any]) -> None:
        pass

    def base_query(self) -> Select[Any]:
        return select(self.model)

    # --- Operations ---------------------------------------------------------

    def build_query(self, request: QueryRequest, *, options: Sequence[Any] = ()) -> BoundedQuery:
        return build_query(
            self.base_query(),
            self.model,
            self.filters,
            request,
            sort_fields=self.sort_fields,
            field_case=self.field_case,
            search_fields=self.search_fields,
            default_page_size=self.settings.default_page_size,
            max_page_size=self.settings.max_page_size,
            options=options,
        )

    def index(self, session: Session, params: Mapping[str, Any]) -> ResponseEnvelope:
        query_request = parse_query_request(params, self.filters.spec, self.settings)
        query = self.build_query(query_request, options=self._list_options)
        return respond(session, query_request, query, self.map_entity)

    def show(self, session: Session, identifier: Any, request: Request) -> Any:
        entity = self.repository.get(session, identifier, self.get_by)
        self.entity_access_hook(entity, request)
        return self.map_single_entity(entity)

    def store(
        self, session: Session, payload: Mapping[str, Any], request: Request
    ) -> dict[str, Any]:
        attributes = self._validate_payload(self.create_schema, payload)
        self._run_hook(self.pre_create_hook, attributes, request)

        with self._mutation(session, request, "create"):
            entity = self.repository.create(session, attributes, self.relationships)
            response = success_entity(self.map_single_entity(entity))
            self._run_hook(self.post_create_hook, entity, response)

        logger.info(
            "resource.create.success",
            extra=log_context(
                resource=self.resource_name,
                entity_id=self.repository.identity(entity),
                user_id=_actor_id(request),
            ),
        )
        return response

    def update(
        self,
        session: Session,
        identifier: Any,
        payload: Mapping[str, Any],
        request: Request,
    ) -> dict[str, Any]:
        entity = self.repository.get(session, identifier, self.get_by)
        self.entity_access_hook(entity, request)
        self.entity_update_access_hook(entity, request)

        attributes = self._validate_payload(self.update_schema or self.create_schema, payload)
        self._run_hook(self.pre_update_hook, attributes, entity, request)

        entity_id = self.repository.identity(entity)
        with self._mutation(session, request, "update", entity_id):
            entity = self.repository.update(session, entity, attributes, self.relationships)
            response = success_entity(self.map_single_entity(entity))
            self._run_hook(self.post_update_hook, entity, response)

        logger.info(
            "resource.update.success",
            extra=log_context(
                resource=self.resource_name, entity_id=entity_id, user_id=_actor_id(request)
            ),
        )
        return response

    def destroy(self, session: Session, identifier: Any, request: Request) -> dict[str, Any]:
        entity = self.repository.get(session, identifier, self.get_by)
        self.entity_access_hook(entity, request)
        self.entity_update_access_hook(entity, request)

        entity_id = self.repository.identity(entity)
        snapshot = self.map_single_entity(entity)
        with self._mutation(session, request, "delete", entity_id):
            self.repository.delete(session, entity)

        logger.info(
            "resource.delete.success",
            extra=log_context(
                resource=self.resource_name, entity_id=entity_id, user_id=_actor_id(request)
            ),
        )
        return success_deleted(entity_id, snapshot)

    def export(
        self,
        session: Session,
        session_factory: Callable[[], Session],
        params: Mapping[str, Any],
    ) -> StreamingResponse:
        query_request = parse_query_request(params, self.filters.spec, self.settings)
        query = self.build_query(query_request, options=self._export_options)
        exporter = TabularExporter(self.export_spec, self.map_export_row, tz=self.settings.tzinfo)
        total = exporter.prepare(session, query)

        mode = self.export_spec.mode
        logger.info(
            "resource.export.start",
            extra=log_context(resource=self.resource_name, rows=total, mode=mode.value),
        )
        filename = build_export_filename(self.resource_name, mode)
        return StreamingResponse(
            exporter.stream(session_factory, query),
            media_type=mode.media_type,
            headers=export_headers(filename),
        )

    # --- Internals ----------------------------------------------------------

    @contextmanager
    def _mutation(
        self,
        session: Session,
        request: Request,
        action: str,
        entity_id: Any | None = None,
    ) -> Iterator[None]:
        try:
            with transaction(session):
                yield
        except (ValidationError, BusinessRuleError):
            raise
        except Exception as exc:
            logger.error(
                "resource.mutation.failed",
                extra=log_context(
                    resource=self.resource_name,
                    entity_id=entity_id,
                    user_id=_actor_id(request),
                    url=str(request.url),
                    action=action,
                ),
                exc_info=exc,
            )
            if isinstance(exc, ResourceError):
                raise
            raise PersistenceError(f"Could not {action} {self.resource_name}") from exc

    @staticmethod
    def _run_hook(hook: Callable[..., None], *args: Any) -> None:
        try:
            hook(*args)
        except ResourceError:
            raise
        except Exception as exc:
            raise BusinessRuleError(str(exc) or "Request rejected") from exc

    @staticmethod
    def _validate_payload(
        schema: type[pydantic.BaseModel] | None, payload: Mapping[str, Any]
    ) -> dict[str, Any]:
        if schema is None:
            return dict(payload)
        try:
            validated = schema.model_validate(dict(payload))
        except pydantic.ValidationError as exc:
            raise ValidationError(errors=error_items_from_pydantic(exc.errors())) from exc
        return validated.model_dump(exclude_unset=True, by_alias=False)

    def _loader_options(self, names: Sequence[str]) -> list[Any]:
        relationships = inspect(self.model).relationships
        options: list[Any] = []
        for name in names:
            if name not in relationships:
                raise ConfigurationError(f"{name!r} is not a relationship of {self.resource_name}")
            options.append(selectinload(getattr(self.model, name)))
        return options

    def _check_columns(self, attribute: str, names: Sequence[str]) -> None:
        columns = inspect(self.model).columns
        unknown = [name for name in names if name not in columns]
        if unknown:
            raise ConfigurationError(
                f"{type(self).__name__}.{attribute} names unmapped columns: {', '.join(unknown)}"
            )


def _actor_id(request: Request) -> Any | None:
    user = getattr(request.state, "user", None)
    if user is not None:
        return getattr(user, "id", None)
    return getattr(request.state, "user_id", None)


__all__ = ["ResourceController"]
