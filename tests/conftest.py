"""
Shared fixtures: an engine wired to in-memory collaborators and a temp data dir.
"""

import pytest

from fakes import (
    FakeArtifactGenerator,
    FakeAssetLoader,
    FakeCommerce,
    FakeTransfers,
    RecordingDelegate,
)
from repositories.order_repository import OrderRepository
from services.order_processing_service import OrderProcessingEngine


@pytest.fixture
def store(tmp_path):
    return OrderRepository(tmp_path / "data")


@pytest.fixture
def transfers():
    return FakeTransfers()


@pytest.fixture
def loader():
    return FakeAssetLoader()


@pytest.fixture
def generator():
    return FakeArtifactGenerator()


@pytest.fixture
def commerce():
    return FakeCommerce()


@pytest.fixture
def delegate():
    return RecordingDelegate()


@pytest.fixture
def make_engine(tmp_path, store, loader, generator, commerce, delegate):
    def _make(transfers, **overrides):
        options = {
            "scratch_dir": tmp_path / "scratch",
            "delegate": delegate,
            "poll_interval": 0,
            "max_polls": 60,
        }
        options.update(overrides)
        return OrderProcessingEngine(
            options.pop("store", store),
            transfers,
            options.pop("asset_loader", loader),
            options.pop("artifact_generator", generator),
            options.pop("commerce", commerce),
            **options,
        )

    return _make


@pytest.fixture
def engine(make_engine, transfers):
    return make_engine(transfers)
