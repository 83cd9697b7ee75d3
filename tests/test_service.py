"""Tests for the archive service facade."""

import pytest

from conftest import wait_for
from video_archiver.core.errors import RemoteStateError
from video_archiver.core.registry import ProcessRegistry
from video_archiver.core.scheduler import INTERRUPTED_MESSAGE
from video_archiver.core.service import ApiResponse, ArchiveService
from video_archiver.core.state import ItemStatus, UploadTarget
from video_archiver.downloaders.ytdlp import DownloadOutcome, DownloadResult
from video_archiver.uploaders.responses import EncodingEntry, RemoteEncodingState
from video_archiver.utils.config import AUTO_UPLOAD, FILEMOON_API_KEY


class FileWritingDownloader:
    """Downloader double that writes a small video file."""

    def __init__(self):
        self.registry = ProcessRegistry()

    def download(self, item_id, url, output_dir, title=None, on_progress=None, should_cancel=None):
        output_dir.mkdir(parents=True, exist_ok=True)
        video = output_dir / f"{item_id}.mp4"
        video.write_bytes(b"\0" * 64)
        return DownloadResult(
            outcome=DownloadOutcome.SUCCESS,
            message=f"Download complete: {video.name}",
            title=title or "Clip",
            local_path=video,
        )


class FakeUploadClient:
    def __init__(self, code):
        self.code = code

    def upload_file(self, file_path):
        return self.code


class FakeFilemoon:
    def __init__(self):
        self.entries = []
        self.restarted = []
        self.error = None

    def list_encodings(self):
        return list(self.entries)

    def restart_encoding(self, file_code):
        if self.error is not None:
            raise self.error
        self.restarted.append(file_code)


@pytest.fixture
def filemoon():
    return FakeFilemoon()


@pytest.fixture
def service(config, clock, filemoon):
    codes = {UploadTarget.FILEMOON: "fm123", UploadTarget.FILES_VC: "fv456"}
    svc = ArchiveService(
        config,
        downloader=FileWritingDownloader(),
        upload_client_factory=lambda target, api_key: FakeUploadClient(codes[target]),
        filemoon_client_factory=lambda api_key: filemoon,
        clock=clock,
        env={},
    )
    svc.settings.set_setting(FILEMOON_API_KEY, "fm-key")
    yield svc
    if svc.is_running:
        svc.shutdown(timeout=5)
    else:
        svc.__exit__(None, None, None)


def make_item(service, url, status, **fields):
    item = service.db.enqueue(url).item
    code = fields.pop("filemoon_code", None)
    if code:
        service.db.set_remote_reference(item.id, UploadTarget.FILEMOON, code)
    service.db.update_status(item.id, status, fields.pop("message", None), **fields)
    return service.db.get_by_id(item.id)


class TestApiResponse:
    def test_to_dict_omits_missing_data(self):
        assert ApiResponse(True, "ok").to_dict() == {"success": True, "message": "ok"}
        assert ApiResponse(False, "no", []).to_dict() == {"success": False, "message": "no", "data": []}


class TestEnqueue:
    """Submitting URLs."""

    def test_enqueue(self, service):
        response = service.enqueue_url("  https://example.com/v/1  ")

        assert response.success is True
        assert response.message == "URL added to the queue."
        assert response.data["url"] == "https://example.com/v/1"
        assert response.data["status"] == "queued"

    def test_invalid_url(self, service):
        response = service.enqueue_url("ftp://example.com/file")

        assert response.success is False
        assert response.message == "Invalid URL: Unsupported URL scheme: ftp"
        assert service.db.list_all() == []

    def test_duplicate_describes_existing_item(self, service):
        service.enqueue_url("https://example.com/v/1")
        response = service.enqueue_url("https://example.com/v/1")

        assert response.success is False
        assert response.message == "This URL is already queued for download."

    def test_enqueue_many(self, service):
        response = service.enqueue_many(
            ["https://example.com/v/1", "not a url", "https://example.com/v/1"]
        )

        assert response.success is True
        assert response.message == "Added 1 URL(s), skipped 2."
        assert [entry["success"] for entry in response.data] == [True, False, False]
        assert response.data[1]["url"] == "not a url"


class TestQueries:
    """Listing and inspecting items."""

    def test_list_active_hides_finished_items(self, service):
        make_item(service, "https://example.com/v/1", ItemStatus.ENCODED)
        make_item(service, "https://example.com/v/2", ItemStatus.FAILED)
        queued = service.enqueue_url("https://example.com/v/3").data

        assert [i["id"] for i in service.list_active().data] == [queued["id"]]
        assert len(service.list_encoded().data) == 1
        assert len(service.list_all().data) == 3

    def test_get_by_id(self, service):
        item_id = service.enqueue_url("https://example.com/v/1").data["id"]

        assert service.get_by_id(item_id).data["id"] == item_id
        missing = service.get_by_id("nope")
        assert missing.success is False
        assert missing.message == "Item with ID nope not found."

    def test_stats(self, service):
        service.enqueue_url("https://example.com/v/1")
        stats = service.stats().data
        assert stats["queued"] == 1
        assert stats["total"] == 1


class TestCancel:
    """Cancelling items."""

    def test_queued_item_is_deleted(self, service):
        item_id = service.enqueue_url("https://example.com/v/1").data["id"]

        response = service.cancel_by_id(item_id)

        assert response.success is True
        assert response.message == "Queued item cancelled."
        assert service.db.get_by_id(item_id) is None

    def test_downloading_item_is_marked_cancelled(self, service):
        item = make_item(service, "https://example.com/v/1", ItemStatus.DOWNLOADING)

        response = service.cancel_by_id(item.id)

        assert response.message == "Downloading item cancelled."
        stored = service.db.get_by_id(item.id)
        assert stored.status == ItemStatus.CANCELLED
        assert stored.message == "Cancelled by user during download."

    def test_other_states_are_rejected(self, service):
        item = make_item(service, "https://example.com/v/1", ItemStatus.COMPLETED)

        response = service.cancel_by_id(item.id)

        assert response.success is False
        assert response.message == "Cannot cancel item in 'completed' state."

    def test_missing_item(self, service):
        assert service.cancel_by_id("nope").message == "Cancel failed: Item with ID nope not found."


class TestRetry:
    """Re-queueing failed items."""

    def test_failed_item_is_requeued(self, service):
        item = make_item(service, "https://example.com/v/1", ItemStatus.FAILED, message="boom")

        response = service.retry_by_id(item.id)

        assert response.success is True
        assert response.message == "Item re-queued for processing."
        stored = service.db.get_by_id(item.id)
        assert stored.status == ItemStatus.QUEUED
        assert stored.message is None

    def test_only_failed_items(self, service):
        item = make_item(service, "https://example.com/v/1", ItemStatus.COMPLETED)

        response = service.retry_by_id(item.id)

        assert response.success is False
        assert "current status: 'completed'" in response.message

    def test_hosted_item_is_rejected(self, service):
        item = make_item(service, "https://example.com/v/1", ItemStatus.FAILED, filemoon_code="fm1")

        response = service.retry_by_id(item.id)

        assert response.success is False
        assert response.message.startswith("Retry rejected: item already has a remote file code")
        assert service.db.get_by_id(item.id).status == ItemStatus.FAILED

    def test_missing_item(self, service):
        assert service.retry_by_id("nope").message == "Retry failed: Item with ID nope not found."


class TestClear:
    def test_clear_group(self, service):
        make_item(service, "https://example.com/v/1", ItemStatus.FAILED)
        make_item(service, "https://example.com/v/2", ItemStatus.UPLOADING)
        make_item(service, "https://example.com/v/3", ItemStatus.ENCODED)

        response = service.clear_by_status("failed")

        assert response.message == "Cleared 2 failed items."
        assert response.data == {"count": 2}
        assert len(service.db.list_all()) == 1

    def test_unknown_group(self, service):
        response = service.clear_by_status("encoded")

        assert response.success is False
        assert response.message.startswith("Cannot clear status 'encoded'")


class TestUploads:
    """Manual uploads."""

    @pytest.fixture
    def completed(self, service, temp_dir):
        video = temp_dir / "clip.mp4"
        video.write_bytes(b"\0" * 16)
        return make_item(service, "https://example.com/v/1", ItemStatus.COMPLETED, local_path=str(video))

    def test_upload_and_wait(self, service, completed):
        response = service.trigger_upload_by_id(completed.id, wait=True)

        assert response.success is True
        assert response.data == {"filemoon": "fm123"}
        assert service.db.get_by_id(completed.id).status == ItemStatus.TRANSFERRING

    def test_upload_in_background(self, service, completed):
        response = service.trigger_upload_by_id(completed.id, targets=[UploadTarget.FILES_VC])

        assert response.message == "Upload started."
        service.wait_for_uploads(timeout=5)
        stored = service.db.get_by_id(completed.id)
        assert stored.status == ItemStatus.UPLOADED
        assert stored.filesvc_code == "fv456"

    def test_item_not_completed(self, service):
        item_id = service.enqueue_url("https://example.com/v/1").data["id"]

        response = service.trigger_upload_by_id(item_id)

        assert response.success is False
        assert "not in 'completed' state" in response.message

    def test_unexpected_error_fails_item(self, service, completed):
        def broken(target, api_key):
            raise RuntimeError("client exploded")

        service.uploader._client_factory = broken

        response = service.trigger_upload_by_id(completed.id, wait=True)

        assert response.success is False
        stored = service.db.get_by_id(completed.id)
        assert stored.status == ItemStatus.FAILED
        assert stored.message == "Processing error: client exploded"


class TestEncoding:
    """Encoding restarts and polls."""

    def test_restart(self, service, filemoon):
        item = make_item(
            service, "https://example.com/v/1", ItemStatus.FAILED, filemoon_code="fm1", encoding_progress=40
        )

        response = service.restart_encoding_by_id(item.id)

        assert response.success is True
        assert filemoon.restarted == ["fm1"]
        stored = service.db.get_by_id(item.id)
        assert stored.status == ItemStatus.TRANSFERRING
        assert stored.encoding_progress is None

    def test_restart_without_code(self, service):
        item = make_item(service, "https://example.com/v/1", ItemStatus.FAILED)
        assert service.restart_encoding_by_id(item.id).message == (
            "Restart failed: item has no Filemoon file code."
        )

    def test_restart_wrong_state(self, service):
        item = make_item(service, "https://example.com/v/1", ItemStatus.ENCODED, filemoon_code="fm1")
        assert service.restart_encoding_by_id(item.id).message == (
            "Cannot restart encoding for item in 'encoded' state."
        )

    def test_restart_api_error(self, service, filemoon):
        filemoon.error = RemoteStateError("404 - no file")
        item = make_item(service, "https://example.com/v/1", ItemStatus.ENCODING, filemoon_code="fm1")

        response = service.restart_encoding_by_id(item.id)

        assert response.message == "Filemoon API error: 404 - no file"
        assert service.db.get_by_id(item.id).status == ItemStatus.ENCODING

    def test_restart_without_api_key(self, service):
        service.settings.set_setting(FILEMOON_API_KEY, "")
        item = make_item(service, "https://example.com/v/1", ItemStatus.FAILED, filemoon_code="fm1")

        assert service.restart_encoding_by_id(item.id).message == (
            "Restart failed: Filemoon API key is missing in settings."
        )

    def test_poll(self, service, filemoon):
        item = make_item(service, "https://example.com/v/1", ItemStatus.TRANSFERRING, filemoon_code="fm1")
        filemoon.entries = [
            EncodingEntry(file_code="fm1", state=RemoteEncodingState.COMPLETED, raw_status="COMPLETED")
        ]

        response = service.poll_encoding()

        assert response.success is True
        assert response.message == "Checked 1 item(s), updated 1."
        assert response.data["encoded"] == 1
        assert service.db.get_by_id(item.id).status == ItemStatus.ENCODED

    def test_poll_with_nothing_to_do(self, service):
        response = service.poll_encoding()

        assert response.success is False
        assert response.message == "No items are waiting for encoding."


class TestRunningService:
    """The service with its background workers."""

    def test_start_recovers_interrupted_downloads(self, service):
        item = make_item(service, "https://example.com/v/1", ItemStatus.DOWNLOADING)

        service.start(reconcile=False)

        stored = service.db.get_by_id(item.id)
        assert stored.status == ItemStatus.FAILED
        assert stored.message == INTERRUPTED_MESSAGE

    def test_download_upload_and_encode(self, service, filemoon):
        service.settings.set_setting(AUTO_UPLOAD, "true")
        service.start(reconcile=False)

        item_id = service.enqueue_url("https://example.com/v/1").data["id"]
        wait_for(lambda: service.db.get_by_id(item_id).status == ItemStatus.TRANSFERRING)
        assert service.db.get_by_id(item_id).filemoon_code == "fm123"

        filemoon.entries = [
            EncodingEntry(file_code="fm123", state=RemoteEncodingState.ENCODING, raw_status="ENCODING", progress=50)
        ]
        service.poll_encoding()
        assert service.db.get_by_id(item_id).message == "Encoding: 50%"

        filemoon.entries = []
        service.poll_encoding()
        assert service.db.get_by_id(item_id).status == ItemStatus.ENCODED

    def test_retry_wakes_scheduler(self, service):
        item = make_item(service, "https://example.com/v/1", ItemStatus.FAILED)
        service.start(reconcile=False)

        service.retry_by_id(item.id)

        wait_for(lambda: service.db.get_by_id(item.id).status == ItemStatus.COMPLETED)

    def test_shutdown(self, service):
        service.start()
        assert service.is_running

        service.shutdown(timeout=5)

        assert not service.is_running
        assert not service.reconciler.is_running
        assert service.scheduler.is_stopping

    def test_items_added_by_another_instance_are_downloaded(self, service, config, clock):
        """A short-lived instance (as the CLI uses) enqueues for the running one."""
        failed = make_item(service, "https://example.com/v/failed", ItemStatus.FAILED)
        service.start(reconcile=False)
        service.scheduler.join(timeout=5)

        with ArchiveService(config, downloader=FileWritingDownloader(), clock=clock, env={}) as other:
            assert not other.is_running
            added = other.enqueue_url("https://example.com/watch?id=abc123")
            retried = other.retry_by_id(failed.id)

        assert added.success and retried.success
        wait_for(lambda: service.db.get_by_id(added.data["id"]).status == ItemStatus.COMPLETED)
        wait_for(lambda: service.db.get_by_id(failed.id).status == ItemStatus.COMPLETED)
