import logging
import os
from functools import lru_cache

from .config import Settings, get_settings

logger = logging.getLogger(__name__)


class LocalArtifactStore:
    """Writes credential images under a directory served at ``public_url``."""

    def __init__(self, directory: str, public_url: str, prefix: str = "qrcodes"):
        self.directory = directory
        self.public_url = public_url.rstrip("/")
        self.prefix = prefix

    def upload(self, data: bytes, name: str) -> str:
        if "/" in name or "\\" in name or name.startswith("."):
            raise ValueError(f"invalid artifact name: {name!r}")
        folder = os.path.join(self.directory, self.prefix)
        os.makedirs(folder, exist_ok=True)
        path = os.path.join(folder, name)
        tmp = path + ".tmp"
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
        return f"{self.public_url}/{self.prefix}/{name}"


def build_artifact_store(settings: Settings):
    if settings.artifact_dir and settings.artifact_public_url:
        return LocalArtifactStore(settings.artifact_dir, settings.artifact_public_url)
    return None


@lru_cache
def get_artifact_store():
    return build_artifact_store(get_settings())
