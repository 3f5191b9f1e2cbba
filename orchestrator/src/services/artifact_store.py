"""Local persistence of generated media."""

import logging
import os
from typing import Protocol
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class ArtifactStoreError(Exception):
    """Raised when an artifact cannot be saved."""

    pass


class SavedArtifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    url: str
    size: int


class ArtifactStore(Protocol):
    def save(self, workflow_id: str, node_id: str, url: str) -> SavedArtifact: ...


class LocalArtifactStore:
    """Downloads remote outputs into ``<root>/<workflow_id>/<node_id>/``."""

    def __init__(self, root_dir: str, timeout: float = 120.0):
        if not root_dir:
            raise ValueError("root_dir is required")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._root_dir = root_dir
        self._timeout = timeout

    def save(self, workflow_id: str, node_id: str, url: str) -> SavedArtifact:
        if not workflow_id:
            raise ValueError("workflow_id is required")
        if not node_id:
            raise ValueError("node_id is required")
        if not url:
            raise ValueError("url is required")

        filename = os.path.basename(urlparse(url).path) or "output"
        directory = os.path.join(self._root_dir, workflow_id, node_id)
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, filename)

        try:
            with httpx.Client(timeout=self._timeout, follow_redirects=True) as client:
                with client.stream("GET", url) as response:
                    if response.status_code >= 400:
                        raise ArtifactStoreError(
                            f"HTTP {response.status_code} downloading {url}"
                        )
                    size = 0
                    with open(path, "wb") as f:
                        for chunk in response.iter_bytes():
                            f.write(chunk)
                            size += len(chunk)
        except httpx.HTTPError as e:
            raise ArtifactStoreError(f"Download failed: {e}") from e
        except OSError as e:
            raise ArtifactStoreError(f"Write failed: {e}") from e

        logger.info(f"Saved {url} to {path} ({size} bytes)")
        return SavedArtifact(path=path, url=url, size=size)
