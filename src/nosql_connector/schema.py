"""Model and property schema definitions consumed by the connector.

The schema only drives transcoding and id handling; it is read-only to the
coordinator and adapters.
"""

from __future__ import annotations

import keyword
import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

# Valid identifier: starts with letter, alphanumeric + underscores, max 64 chars.
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")

DEFAULT_ID_NAME = "id"


class PropertyType(str, Enum):
    """Semantic property types understood by the transcoders."""

    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    OPAQUE = "opaque"


class PropertySchema(BaseModel):
    """Schema definition for a single model property."""

    name: str = Field(min_length=1, description="Property name.")
    property_type: PropertyType = Field(default=PropertyType.OPAQUE, description="Semantic type.")
    primary_key: bool = Field(default=False, description="Whether this property is the identifier.")
    description: str | None = Field(default=None, description="Human-readable description.")

    model_config = {"extra": "forbid"}

    @field_validator("name")
    @classmethod
    def validate_property_name(cls, v: str) -> str:
        if not _IDENTIFIER_RE.match(v):
            raise ValueError(
                f"Property name {v!r} is not a valid identifier. "
                "Must contain only alphanumeric characters and underscores, "
                "not start with a digit, and be at most 64 characters."
            )
        if keyword.iskeyword(v):
            raise ValueError(f"Property name {v!r} is a Python reserved keyword.")
        return v


class ModelSchema(BaseModel):
    """Schema definition for a model (collection, key prefix, or type tag)."""

    name: str = Field(min_length=1, description="Model name (PascalCase recommended).")
    properties: list[PropertySchema] = Field(default_factory=list)
    collection_name: str | None = Field(
        default=None,
        description="Override for the storage collection / key prefix. Defaults to the model name.",
    )

    model_config = {"extra": "forbid"}

    @field_validator("name")
    @classmethod
    def validate_model_name(cls, v: str) -> str:
        if not _IDENTIFIER_RE.match(v):
            raise ValueError(f"Model name {v!r} is not a valid identifier.")
        return v

    @model_validator(mode="after")
    def validate_model_integrity(self) -> ModelSchema:
        """Validate unique property names and at most one primary key."""
        seen: set[str] = set()
        for prop in self.properties:
            if prop.name in seen:
                raise ValueError(f"Model '{self.name}' has duplicate property name '{prop.name}'")
            seen.add(prop.name)
        pk = [p.name for p in self.properties if p.primary_key]
        if len(pk) > 1:
            raise ValueError(f"Model '{self.name}' has multiple primary keys: {pk}")
        return self

    @property
    def storage_name(self) -> str:
        return self.collection_name or self.name

    @property
    def id_property(self) -> PropertySchema | None:
        for prop in self.properties:
            if prop.primary_key:
                return prop
        return None

    @property
    def id_name(self) -> str:
        prop = self.id_property
        return prop.name if prop else DEFAULT_ID_NAME

    @property
    def id_type(self) -> PropertyType:
        prop = self.id_property
        return prop.property_type if prop else PropertyType.NUMBER

    def get_property(self, name: str) -> PropertySchema | None:
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    def coerce_id(self, raw: Any) -> Any:
        """Convert an id read back from a backend key into the model's id type.

        Keys travel as strings on most backends; numeric ids are restored to
        ``int`` (or ``float``) and text ids to ``str``. Values that cannot be
        converted are returned unchanged.
        """
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        id_type = self.id_type
        if id_type == PropertyType.NUMBER:
            if isinstance(raw, (int, float)) and not isinstance(raw, bool):
                return raw
            try:
                return int(raw)
            except (TypeError, ValueError):
                pass
            try:
                return float(raw)
            except (TypeError, ValueError):
                return raw
        if id_type == PropertyType.TEXT:
            return str(raw)
        return raw


class ModelRegistry:
    """Property registry: maps model names to their schemas."""

    def __init__(self, models: list[ModelSchema] | None = None) -> None:
        self._models: dict[str, ModelSchema] = {}
        for model in models or []:
            self.register(model)

    def register(self, model: ModelSchema) -> None:
        self._models[model.name] = model

    def get_model(self, name: str) -> ModelSchema:
        if name not in self._models:
            raise KeyError(f"Model '{name}' is not registered. Available: {list(self._models.keys())}")
        return self._models[name]

    def get_property(self, model_name: str, field_name: str) -> PropertySchema | None:
        return self.get_model(model_name).get_property(field_name)

    def id_name(self, model_name: str) -> str:
        return self.get_model(model_name).id_name

    def __contains__(self, name: object) -> bool:
        return name in self._models
