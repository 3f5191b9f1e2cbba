"""Unit tests for LocalArtifactStore."""

import pytest
from pytest_httpx import HTTPXMock

from services.artifact_store import ArtifactStoreError, LocalArtifactStore


@pytest.fixture
def store(tmp_path):
    return LocalArtifactStore(str(tmp_path))


class TestLocalArtifactStore:
    """Tests for downloading node outputs."""

    def test_init_requires_root_dir(self):
        with pytest.raises(ValueError, match="root_dir is required"):
            LocalArtifactStore("")

    def test_saves_download(self, store, tmp_path, httpx_mock: HTTPXMock):
        httpx_mock.add_response(url="https://cdn.test/out/frame.png", content=b"\x89PNG data")

        saved = store.save("wf-1", "img", "https://cdn.test/out/frame.png")

        assert saved.path == str(tmp_path / "wf-1" / "img" / "frame.png")
        assert saved.size == 9
        assert (tmp_path / "wf-1" / "img" / "frame.png").read_bytes() == b"\x89PNG data"

    def test_http_error_raises(self, store, httpx_mock: HTTPXMock):
        httpx_mock.add_response(url="https://cdn.test/gone.mp4", status_code=404)

        with pytest.raises(ArtifactStoreError, match="HTTP 404"):
            store.save("wf-1", "vid", "https://cdn.test/gone.mp4")

    def test_requires_url(self, store):
        with pytest.raises(ValueError, match="url is required"):
            store.save("wf-1", "img", "")
