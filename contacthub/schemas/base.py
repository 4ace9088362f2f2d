"""Shared schema configuration."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class RequestModel(BaseModel):
    """Request bodies accept both ``camelCase`` and ``snake_case`` keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
