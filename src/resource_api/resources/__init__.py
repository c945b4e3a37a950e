from resource_api.resources.controller import ResourceController
from resource_api.resources.router import build_resource_router

__all__ = ["ResourceController", "build_resource_router"]
