import pytest

from helpers import SourceRepo


@pytest.fixture
def source_repo(tmp_path):
    repo = SourceRepo(tmp_path / "origin")
    repo.commit("initial")
    return repo


@pytest.fixture
def state_dir(tmp_path):
    path = tmp_path / "state"
    path.mkdir()
    return path
