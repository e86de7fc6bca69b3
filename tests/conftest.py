import hashlib
from pathlib import Path

import pytest

from core.config import RunConfig
from models.asset import Asset, ImageField
from repositories.content_store import ContentStore
from repositories.image_repo import ImageRepository
from repositories.manifest_repo import ManifestRepository
from tests.fakes import API_URL, MEDIA_URL, TOKEN


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def output_dir(tmp_path) -> Path:
    path = tmp_path / "output"
    path.mkdir()
    return path


@pytest.fixture
def make_config(output_dir):
    def _make(**overrides) -> RunConfig:
        values = dict(
            api_server_url=API_URL,
            media_server_url=MEDIA_URL,
            token=TOKEN,
            max_request_retries=3,
            max_download_retries=3,
            request_timeout=1.0,
            connection_timeout=2.0,
            download_timeout=0.5,
            output_dir=output_dir,
        )
        values.update(overrides)
        return RunConfig(**values)

    return _make


@pytest.fixture
def run_config(make_config) -> RunConfig:
    return make_config()


@pytest.fixture
def store() -> ContentStore:
    return ContentStore()


@pytest.fixture
def manifests(output_dir, store) -> ManifestRepository:
    return ManifestRepository(output_dir / ".attachments_map", store)


@pytest.fixture
def images(output_dir, store) -> ImageRepository:
    return ImageRepository(output_dir / "images", output_dir / "runs" / "run_test" / "images_deleted", store=store)


@pytest.fixture
def asset() -> Asset:
    return Asset(
        uid="aXk3",
        name="Field Survey",
        submission_count=2,
        image_fields=[ImageField(autoname="photo")],
    )


@pytest.fixture
def sha256():
    def _digest(data: bytes) -> bytes:
        return hashlib.sha256(data).digest()

    return _digest
