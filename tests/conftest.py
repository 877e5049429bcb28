"""Shared fixtures: stores, services and embedding factories."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from attendx.domain import Embedding
from attendx.service import AttendanceService
from attendx.store.memory import MemoryStore
from attendx.store.sql import SqlStore

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

    from attendx.store.base import Store

EXTRACTOR = "test-extractor/v1"
DIM = 128


def make_embedding(values: object, extractor_version: str = EXTRACTOR) -> Embedding:
    return Embedding.from_values(np.asarray(values, dtype=np.float64), extractor_version)


def similar_samples(rng: np.random.Generator, count: int = 5, dim: int = DIM, noise: float = 0.1) -> list[Embedding]:
    """``count`` embeddings around one random direction (pairwise cosine well above 0.9)."""
    base = rng.normal(size=dim)
    base /= np.linalg.norm(base)
    return [make_embedding(base + noise * rng.normal(size=dim) / np.sqrt(dim)) for _ in range(count)]


@pytest.fixture()
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture()
def samples_factory(rng: np.random.Generator) -> Callable[..., list[Embedding]]:
    def factory(count: int = 5, dim: int = DIM) -> list[Embedding]:
        return similar_samples(rng, count=count, dim=dim)

    return factory


@pytest.fixture(params=["memory", "sqlite-memory", "sqlite-file"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[Store]:
    """Each backend in turn: in-memory, and SQLite through SQLAlchemy both in memory and on disk."""
    backend: Store
    if request.param == "memory":
        backend = MemoryStore()
    elif request.param == "sqlite-memory":
        backend = SqlStore.from_url("sqlite://")
    else:
        backend = SqlStore.from_url(f"sqlite:///{tmp_path / 'attendx.db'}")
    yield backend
    backend.close()


@pytest.fixture()
def service(store: Store) -> AttendanceService:
    svc = AttendanceService(store)
    svc.provision("U1", "User One")
    return svc
