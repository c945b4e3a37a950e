"""Mount a resource controller as a FastAPI router."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from resource_api.common.responses import JSONResponse
from resource_api.db import get_session, get_session_factory
from resource_api.resources.controller import ResourceController

SessionDep = Annotated[Session, Depends(get_session)]
PayloadBody = Annotated[dict[str, Any], Body()]


def build_resource_router(controller: ResourceController[Any]) -> APIRouter:
    """Return list/export/show/create/update/delete routes for ``controller``."""

    name = controller.resource_name
    router = APIRouter(tags=[name], default_response_class=JSONResponse)

    @router.get("", summary=f"List {name} entities")
    def list_entities(request: Request, session: SessionDep) -> JSONResponse:
        envelope = controller.index(session, request.query_params)
        return JSONResponse(envelope.as_dict())

    @router.get("/export", summary=f"Export {name} entities", response_class=StreamingResponse)
    def export_entities(request: Request, session: SessionDep) -> StreamingResponse:
        return controller.export(session, get_session_factory(request), request.query_params)

    @router.get("/{entity_id}", summary=f"Show one {name}")
    def show_entity(entity_id: str, request: Request, session: SessionDep) -> JSONResponse:
        return JSONResponse(controller.show(session, entity_id, request))

    @router.post("", summary=f"Create a {name}", status_code=status.HTTP_201_CREATED)
    def create_entity(payload: PayloadBody, request: Request, session: SessionDep) -> JSONResponse:
        body = controller.store(session, payload, request)
        return JSONResponse(body, status_code=status.HTTP_201_CREATED)

    @router.api_route("/{entity_id}", methods=["PUT", "PATCH"], summary=f"Update a {name}")
    def update_entity(
        entity_id: str, payload: PayloadBody, request: Request, session: SessionDep
    ) -> JSONResponse:
        return JSONResponse(controller.update(session, entity_id, payload, request))

    @router.delete("/{entity_id}", summary=f"Delete a {name}")
    def delete_entity(entity_id: str, request: Request, session: SessionDep) -> JSONResponse:
        return JSONResponse(controller.destroy(session, entity_id, request))

    return router


__all__ = ["build_resource_router"]
