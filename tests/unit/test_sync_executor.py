"""
Unit tests for SyncExecutor.

Tests cover:
- Download / up-to-date / delete / skip transitions
- Hash verification before deletes (IntegrityException)
- Duplicate target detection within a submission
- Quarantine vs hard deletion, retirement of superseded files
"""
import aiohttp
import pytest

from models.asset import Asset, ImageField
from models.outcome import OutcomeStatus, SyncOp
from models.submission import Submission
from repositories.image_repo import ImageRepository
from services.components.action_map_builder import ActionMapBuilder
from services.components.image_downloader import ImageDownloader
from services.components.sync_executor import SyncExecutor
from services.network.fetcher import RetryingFetcher
from tests.fakes import FakeSession, attachment_record, image_response

CAT = b"cat image bytes"
CAT_V2 = b"cat image bytes, second upload"


def submission(sid, attachments=(), **images):
    return Submission.model_validate(
        {
            "_id": sid,
            "_attachments": list(attachments),
            "@images_map": {
                field: ([{"key": field, "value": value}] if value is not None else [])
                for field, value in images.items()
            },
        }
    )


def cat_submission(sid=101, att_id=7, name="cat.jpg"):
    return submission(sid, [attachment_record(att_id, f"user/attachments/{name}")], photo=name)


def url_of(att_id):
    return attachment_record(att_id, "any")["download_url"]


@pytest.fixture
def session():
    return FakeSession({url_of(7): [image_response(CAT)], url_of(8): [image_response(CAT_V2)]})


@pytest.fixture
def make_executor(run_config, store, manifests, images, session):
    def _make(image_repo=None):
        downloader = ImageDownloader(RetryingFetcher(session, run_config), run_config, store)
        return SyncExecutor(manifests, image_repo or images, downloader, store)

    return _make


async def sync(executor, asset, *submissions):
    return await executor.sync_asset(ActionMapBuilder().build(asset, list(submissions)))


class TestSyncExecutor:
    @pytest.mark.asyncio
    async def test_keep_and_delete_without_manifest(self, make_executor, asset, images, manifests):
        report = await sync(make_executor(), asset, cat_submission(), submission(102, [], photo=None))

        target = images.asset_dir(asset) / "101_cat.jpg"
        assert target.read_bytes() == CAT
        assert target.parent.name == "Field Survey"
        manifest = manifests.load(asset.uid, 101, "photo")
        assert manifest.attachment_id == 7
        assert manifest.original_name == "user/attachments/cat.jpg"

        download, skip = report.outcomes
        assert (download.op, download.status) == (SyncOp.DOWNLOAD, OutcomeStatus.OK)
        assert (skip.op, skip.status, skip.submission_id) == (SyncOp.SKIP_INCONSISTENT, OutcomeStatus.OK, 102)
        assert report.counters.downloaded == 1
        assert report.counters.skipped == 1
        assert report.counters.errors == 0

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, make_executor, asset, session):
        executor = make_executor()
        await sync(executor, asset, cat_submission())

        report = await sync(executor, asset, cat_submission())

        assert report.outcomes[0].op == SyncOp.UP_TO_DATE
        assert report.counters.downloaded == 0
        assert session.calls_to(url_of(7)) == 1

    @pytest.mark.asyncio
    async def test_altered_file_is_downloaded_again(self, make_executor, asset, images, session):
        executor = make_executor()
        await sync(executor, asset, cat_submission())
        target = images.asset_dir(asset) / "101_cat.jpg"
        target.write_bytes(b"edited locally")

        report = await sync(executor, asset, cat_submission())

        assert report.outcomes[0].op == SyncOp.DOWNLOAD
        assert target.read_bytes() == CAT
        assert session.calls_to(url_of(7)) == 2

    @pytest.mark.asyncio
    async def test_new_attachment_id_is_downloaded(self, make_executor, asset, images, manifests, session):
        executor = make_executor()
        await sync(executor, asset, cat_submission())
        session.add(url_of(9), image_response(CAT_V2))

        report = await sync(executor, asset, cat_submission(att_id=9))

        assert report.counters.downloaded == 1
        assert manifests.load(asset.uid, 101, "photo").attachment_id == 9
        assert (images.asset_dir(asset) / "101_cat.jpg").read_bytes() == CAT_V2

    @pytest.mark.asyncio
    async def test_delete_moves_file_to_quarantine(self, make_executor, asset, images, manifests):
        executor = make_executor()
        await sync(executor, asset, cat_submission())

        report = await sync(executor, asset, submission(101, [], photo=None))

        assert report.outcomes[0].op == SyncOp.DELETE
        assert report.counters.deleted == 1
        assert not (images.asset_dir(asset) / "101_cat.jpg").exists()
        assert images.quarantine_path(asset, "101_cat.jpg").read_bytes() == CAT
        assert manifests.load(asset.uid, 101, "photo") is None

    @pytest.mark.asyncio
    async def test_hard_delete(self, make_executor, asset, output_dir, store):
        hard = ImageRepository(output_dir / "images", output_dir / "deleted", hard_delete=True, store=store)
        executor = make_executor(hard)
        await sync(executor, asset, cat_submission())

        await sync(executor, asset, submission(101, [], photo=None))

        assert not (hard.asset_dir(asset) / "101_cat.jpg").exists()
        assert not (output_dir / "deleted").exists()

    @pytest.mark.asyncio
    async def test_delete_refuses_on_hash_mismatch(self, make_executor, asset, images, manifests):
        executor = make_executor()
        await sync(executor, asset, cat_submission())
        target = images.asset_dir(asset) / "101_cat.jpg"
        target.write_bytes(b"not the file we downloaded")

        report = await sync(executor, asset, submission(101, [], photo=None))

        outcome = report.outcomes[0]
        assert outcome.status == OutcomeStatus.ERROR
        assert "IntegrityException" in outcome.detail
        assert target.read_bytes() == b"not the file we downloaded"
        assert manifests.load(asset.uid, 101, "photo") is not None
        assert report.counters.errors == 1

    @pytest.mark.asyncio
    async def test_delete_with_file_already_gone(self, make_executor, asset, images, manifests):
        executor = make_executor()
        await sync(executor, asset, cat_submission())
        (images.asset_dir(asset) / "101_cat.jpg").unlink()

        report = await sync(executor, asset, submission(101, [], photo=None))

        assert report.outcomes[0].status == OutcomeStatus.OK
        assert report.outcomes[0].detail == "file already absent"
        assert manifests.load(asset.uid, 101, "photo") is None

    @pytest.mark.asyncio
    async def test_duplicate_targets(self, make_executor, images, session):
        asset = Asset(uid="aXk3", name="Survey", image_fields=[ImageField(autoname="photo"), ImageField(autoname="copy")])
        record = submission(101, [attachment_record(7, "user/attachments/cat.jpg")], photo="cat.jpg", copy="cat.jpg")

        report = await sync(make_executor(), asset, record)

        first, second = report.outcomes
        assert (first.field, first.status) == ("photo", OutcomeStatus.OK)
        assert (second.field, second.status) == ("copy", OutcomeStatus.ERROR)
        assert "DuplicateTargetException" in second.detail
        assert session.calls_to(url_of(7)) == 1
        assert (images.asset_dir(asset) / "101_cat.jpg").read_bytes() == CAT

    @pytest.mark.asyncio
    async def test_renamed_value_retires_previous_file(self, make_executor, asset, images):
        executor = make_executor()
        await sync(executor, asset, cat_submission())

        report = await sync(executor, asset, cat_submission(att_id=8, name="cat2.jpg"))

        ops = [o.op for o in report.outcomes]
        assert ops == [SyncOp.DOWNLOAD, SyncOp.RETIRE_SUPERSEDED]
        assert (images.asset_dir(asset) / "101_cat2.jpg").read_bytes() == CAT_V2
        assert not (images.asset_dir(asset) / "101_cat.jpg").exists()
        assert images.quarantine_path(asset, "101_cat.jpg").exists()

    @pytest.mark.asyncio
    async def test_failing_item_does_not_stop_siblings(self, make_executor, asset, session):
        session.routes[url_of(7)] = [aiohttp.ClientConnectionError("refused")]
        other = submission(102, [attachment_record(8, "user/attachments/cat.jpg")], photo="cat.jpg")

        report = await sync(make_executor(), asset, cat_submission(), other)

        assert [o.status for o in report.outcomes] == [OutcomeStatus.ERROR, OutcomeStatus.OK]
        assert report.counters.errors == 1
        assert report.counters.downloaded == 1

    @pytest.mark.asyncio
    async def test_unresolved_value_has_no_side_effect(self, make_executor, asset, images, session):
        report = await sync(make_executor(), asset, submission(101, [], photo="ghost.jpg"))

        assert report.outcomes[0].op == SyncOp.UNRESOLVED
        assert report.counters.warnings == 1
        assert session.get.call_count == 0
        assert list(images.asset_dir(asset).iterdir()) == []
