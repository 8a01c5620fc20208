"""Pytest configuration and fixtures for linq_engine tests."""

from __future__ import annotations

from typing import Any, Generator

import pytest
from prometheus_client import CollectorRegistry

from linq_engine.adapters.outbound.in_memory_source import InMemoryDataSource
from linq_engine.adapters.outbound.sqlalchemy_source import SQLAlchemyDataSource
from linq_engine.application.query_engine import QueryEngine
from linq_engine.domain.entities.entity import (
    EntityDescriptor,
    FieldDescriptor,
    RelationDescriptor,
)
from linq_engine.domain.services.registry import EntityRegistry
from linq_engine.domain.value_objects import RelationKind, SemanticType
from linq_engine.infrastructure.config import Config
from linq_engine.infrastructure.metrics import MetricsRegistry

MOVIES: list[dict[str, Any]] = [
    {"Id": 1, "Title": "Heat", "Release": 1995, "Rating": 8.3},
    {"Id": 2, "Title": "Inception", "Release": 2010, "Rating": 8.8},
    {"Id": 3, "Title": "The Matrix", "Release": 1999, "Rating": 8.7},
    {"Id": 4, "Title": "Tenet", "Release": 2020, "Rating": None},
]

ACTORS: list[dict[str, Any]] = [
    {"Id": 1, "Name": "Al Pacino", "MovieId": 1},
    {"Id": 2, "Name": "Robert De Niro", "MovieId": 1},
    {"Id": 3, "Name": "Leonardo DiCaprio", "MovieId": 2},
    {"Id": 4, "Name": "Keanu Reeves", "MovieId": 3},
    {"Id": 5, "Name": "Carrie-Anne Moss", "MovieId": 3},
    {"Id": 6, "Name": "Hugo Weaving", "MovieId": 3},
    {"Id": 7, "Name": "Uncredited Extra", "MovieId": None},
]


def movie_descriptor() -> EntityDescriptor:
    return EntityDescriptor(
        name="Movie",
        fields=(
            FieldDescriptor("Id", SemanticType.INTEGER),
            FieldDescriptor("Title", SemanticType.STRING),
            FieldDescriptor("Release", SemanticType.INTEGER),
            FieldDescriptor("Rating", SemanticType.FLOAT, nullable=True),
        ),
        relations=(
            RelationDescriptor("Actors", RelationKind.TO_MANY, "Actor", "MovieId"),
        ),
    )


def actor_descriptor() -> EntityDescriptor:
    return EntityDescriptor(
        name="Actor",
        fields=(
            FieldDescriptor("Id", SemanticType.INTEGER),
            FieldDescriptor("Name", SemanticType.STRING),
            FieldDescriptor("MovieId", SemanticType.INTEGER, nullable=True),
        ),
        relations=(
            RelationDescriptor("Movie", RelationKind.TO_ONE, "Movie", "MovieId", nullable=True),
        ),
    )


@pytest.fixture
def registry() -> EntityRegistry:
    """Provide a frozen registry with the Movie and Actor entities."""
    reg = EntityRegistry([movie_descriptor(), actor_descriptor()])
    reg.freeze()
    return reg


@pytest.fixture
def movies() -> list[dict[str, Any]]:
    return [dict(m) for m in MOVIES]


@pytest.fixture
def actors() -> list[dict[str, Any]]:
    return [dict(a) for a in ACTORS]


@pytest.fixture
def memory_source() -> InMemoryDataSource:
    """Provide an in-memory source holding the movie and actor rows."""
    return InMemoryDataSource({"Movie": MOVIES, "Actor": ACTORS})


@pytest.fixture
def sqlite_source() -> Generator[SQLAlchemyDataSource, None, None]:
    """Provide an in-memory SQLite database holding the same rows."""
    source = SQLAlchemyDataSource("sqlite://")
    with source.engine.begin() as conn:
        conn.exec_driver_sql(
            'CREATE TABLE "Movie" ("Id" INTEGER PRIMARY KEY, "Title" TEXT NOT NULL, '
            '"Release" INTEGER NOT NULL, "Rating" REAL)'
        )
        conn.exec_driver_sql(
            'CREATE TABLE "Actor" ("Id" INTEGER PRIMARY KEY, "Name" TEXT NOT NULL, '
            '"MovieId" INTEGER REFERENCES "Movie" ("Id"))'
        )
        conn.exec_driver_sql(
            'INSERT INTO "Movie" VALUES (?, ?, ?, ?)',
            [(m["Id"], m["Title"], m["Release"], m["Rating"]) for m in MOVIES],
        )
        conn.exec_driver_sql(
            'INSERT INTO "Actor" VALUES (?, ?, ?)',
            [(a["Id"], a["Name"], a["MovieId"]) for a in ACTORS],
        )
    yield source
    source.dispose()


@pytest.fixture
def test_config() -> Config:
    """Provide a default configuration."""
    return Config()


@pytest.fixture
def metrics_registry() -> MetricsRegistry:
    """Provide a fresh metrics registry for each test."""
    # Use a separate registry to avoid conflicts between tests
    registry = CollectorRegistry(auto_describe=True)
    return MetricsRegistry(registry=registry)


@pytest.fixture
def memory_engine(
    registry: EntityRegistry,
    memory_source: InMemoryDataSource,
    test_config: Config,
    metrics_registry: MetricsRegistry,
) -> QueryEngine:
    """Provide an engine evaluating queries in-process."""
    return QueryEngine(registry, memory_source, config=test_config, metrics=metrics_registry)


@pytest.fixture
def sqlite_engine(
    registry: EntityRegistry,
    sqlite_source: SQLAlchemyDataSource,
    test_config: Config,
    metrics_registry: MetricsRegistry,
) -> QueryEngine:
    """Provide an engine compiling queries to SQLite."""
    return QueryEngine(registry, sqlite_source, config=test_config, metrics=metrics_registry)


# Markers for test categories
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")
