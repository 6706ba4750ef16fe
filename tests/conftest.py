"""Shared fixtures: a small model registry and a connected in-memory coordinator."""

from __future__ import annotations

import pytest
from nosql_connector.adapters.memory import MemoryBackend, MemoryStore
from nosql_connector.coordinator import Coordinator
from nosql_connector.schema import ModelRegistry, ModelSchema, PropertySchema, PropertyType
from nosql_connector.settings import DataSourceSettings


@pytest.fixture
def widget_model() -> ModelSchema:
    return ModelSchema(
        name="Widget",
        properties=[
            PropertySchema(name="name", property_type=PropertyType.TEXT),
            PropertySchema(name="createdAt", property_type=PropertyType.DATE),
        ],
    )


@pytest.fixture
def gadget_model() -> ModelSchema:
    return ModelSchema(
        name="Gadget",
        properties=[
            PropertySchema(name="sku", property_type=PropertyType.TEXT, primary_key=True),
            PropertySchema(name="price", property_type=PropertyType.NUMBER),
            PropertySchema(name="active", property_type=PropertyType.BOOLEAN),
            PropertySchema(name="tags"),
        ],
    )


@pytest.fixture
def models(widget_model: ModelSchema, gadget_model: ModelSchema) -> ModelRegistry:
    return ModelRegistry([widget_model, gadget_model])


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def coordinator(models: ModelRegistry, store: MemoryStore) -> Coordinator:
    settings = DataSourceSettings(connector="memory", options={"store": store})
    return Coordinator(MemoryBackend(), settings, models)
