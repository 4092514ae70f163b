import pytest

from baton.backend import FileBackend, InMemoryBackend
from baton.config import BatonConfig


@pytest.fixture(autouse=True)
def baton_home(tmp_path, monkeypatch):
    """Point BATON_HOME at a temporary directory for every test."""
    home = tmp_path / "baton_home"
    monkeypatch.setenv("BATON_HOME", str(home))
    return home


@pytest.fixture
def config(tmp_path) -> BatonConfig:
    return BatonConfig(base_path=tmp_path / "store", auto_blob_threshold=16)


@pytest.fixture
def memory_backend() -> InMemoryBackend:
    return InMemoryBackend(BatonConfig(backend="memory", auto_blob_threshold=16))


@pytest.fixture
def file_backend(config) -> FileBackend:
    return FileBackend(config)


@pytest.fixture(params=["memory", "file"])
def backend(request, memory_backend, file_backend):
    """Run a test against both reference backends."""
    if request.param == "memory":
        return memory_backend
    return file_backend
