import os
import stat
from pathlib import Path

import pytest

from cumulus.config import ClusterConfig
from cumulus.errors import LockHeldError, StateCorruptedError, StateNotFoundError
from cumulus.state.local import LocalBackend
from cumulus.state.types import ClusterPhase, ClusterState, ClusterStatus


def new_state(name: str = "t1") -> ClusterState:
    return ClusterState(
        config=ClusterConfig(name=name, region="us-west-2"),
        status=ClusterStatus(phase=ClusterPhase.FAILED, message="boom"),
    )


@pytest.fixture
def backend(tmp_path: Path) -> LocalBackend:
    backend = LocalBackend(str(tmp_path / "states"))
    backend.initialize()
    return backend


def test_initialize_creates_directories(tmp_path: Path) -> None:
    backend = LocalBackend(str(tmp_path / "states"))

    backend.initialize()
    backend.initialize()

    assert (tmp_path / "states" / "clusters").is_dir()
    assert (tmp_path / "states" / "locks").is_dir()


def test_save_and_load(backend: LocalBackend, tmp_path: Path) -> None:
    backend.save("t1", new_state())

    assert (tmp_path / "states" / "clusters" / "t1.json").is_file()
    loaded = backend.load("t1")
    assert loaded.config.region == "us-west-2"
    assert loaded.status.phase == ClusterPhase.FAILED
    assert loaded.status.message == "boom"


def test_save_leaves_no_temporary_files(backend: LocalBackend, tmp_path: Path) -> None:
    backend.save("t1", new_state())
    backend.save("t1", new_state())

    assert os.listdir(tmp_path / "states" / "clusters") == ["t1.json"]


def test_load_missing_state(backend: LocalBackend) -> None:
    with pytest.raises(StateNotFoundError):
        backend.load("t1")


def test_load_corrupted_state(backend: LocalBackend, tmp_path: Path) -> None:
    (tmp_path / "states" / "clusters" / "t1.json").write_text("not json")

    with pytest.raises(StateCorruptedError):
        backend.load("t1")


def test_exists_list_and_delete(backend: LocalBackend) -> None:
    backend.save("b", new_state("b"))
    backend.save("a", new_state("a"))

    assert backend.list() == ["a", "b"]
    assert backend.exists("a")

    backend.delete("a")
    backend.delete("a")

    assert not backend.exists("a")
    assert backend.list() == ["b"]


def test_list_without_directory(tmp_path: Path) -> None:
    assert LocalBackend(str(tmp_path / "missing")).list() == []


def test_lock_is_exclusive(backend: LocalBackend, tmp_path: Path) -> None:
    other = LocalBackend(str(tmp_path / "states"))

    backend.lock("t1", "create")
    with pytest.raises(LockHeldError, match="create"):
        other.lock("t1", "update")

    backend.unlock("t1")
    other.lock("t1", "update")


def test_lock_file_is_private(backend: LocalBackend, tmp_path: Path) -> None:
    backend.lock("t1")

    path = tmp_path / "states" / "locks" / "cluster-t1.lock"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_unlock_requires_owner_token(backend: LocalBackend) -> None:
    stale = backend.lock("t1")
    backend.unlock("t1")
    backend.lock("t1")

    backend.unlock("t1", stale)

    with pytest.raises(LockHeldError):
        backend.lock("t1")


def test_unlock_without_lock_never_raises(backend: LocalBackend) -> None:
    backend.unlock("t1")


def test_get_info(backend: LocalBackend, tmp_path: Path) -> None:
    info = backend.get_info()

    assert info.type == "file"
    assert info.location == f"file://{tmp_path / 'states'}"
    assert not info.encrypted
