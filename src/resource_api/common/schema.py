"""Shared Pydantic schema utilities."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    """Base class for request/response schemas with resource-api defaults."""

    model_config = ConfigDict(
        populate_by_name=True,
        from_attributes=True,
        extra="forbid",
        use_enum_values=True,
    )

    def model_dump(self, *args: Any, **kwargs: Any) -> dict[str, Any]:  # type: ignore[override]
        """Ensure serialization defaults honor aliases."""

        kwargs.setdefault("by_alias", True)
        return super().model_dump(*args, **kwargs)

    def serializable_dict(self, *, exclude_none: bool = True, **kwargs: Any) -> dict[str, Any]:
        """Return a dict representation suited for JSON responses."""

        return self.model_dump(mode="json", exclude_none=exclude_none, **kwargs)


__all__ = ["BaseSchema"]
