import asyncio
from unittest.mock import patch

import pytest

from shopvideo.core.config import settings
from shopvideo.core.constants import UploadPhase
from shopvideo.core.exceptions import (
    ValidationError, UploadInProgressError, ApiError, AllocationError, TransportError, ConfirmError
)
from shopvideo.schemas.video import VideoRecord
from shopvideo.services.local_files import LocalVideoFile
from shopvideo.services.upload_coordinator import (
    UploadCoordinator, Idle, Selecting, Succeeded, Failed, _parse_allocation
)


@pytest.fixture
def coordinator(mock_client, repository, previews, locks):
    return UploadCoordinator(mock_client, repository, previews=previews, locks=locks)


class TestValidation:
    """测试本地文件校验"""

    @pytest.mark.asyncio
    async def test_oversized_file_makes_no_network_calls(self, coordinator, mock_client, previews):
        big = LocalVideoFile(path="/videos/big.mp4", size=150 * 1024 * 1024, content_type="video/mp4")

        with pytest.raises(ValidationError) as exc_info:
            await coordinator.run(7, big)

        assert exc_info.value.message == "File size must be less than 100MB"
        assert isinstance(coordinator.state, Failed)
        assert coordinator.state.step == "validation"
        assert previews.active_count == 0
        mock_client.request_upload_url.assert_not_called()
        mock_client.upload_to_storage.assert_not_called()
        mock_client.confirm_upload.assert_not_called()

    def test_non_video_rejected(self, coordinator):
        doc = LocalVideoFile(path="/docs/report.pdf", size=1024, content_type="application/pdf")
        with pytest.raises(ValidationError) as exc_info:
            coordinator.validate_file(doc)
        assert exc_info.value.message == "Please select a valid video file"

    def test_empty_file_rejected(self, coordinator):
        with pytest.raises(ValidationError):
            coordinator.validate_file(LocalVideoFile(path="/videos/empty.mp4", size=0, content_type="video/mp4"))


class TestUploadFlow:
    """测试完整上传流程"""

    @pytest.mark.asyncio
    async def test_successful_upload(self, coordinator, mock_client, repository, previews, video_file_factory):
        file = video_file_factory(10 * 1024 * 1024)

        record = await coordinator.run(7, file)

        assert record.id == 42
        assert record.status == "uploaded"
        assert repository.get(42).status == "uploaded"
        assert isinstance(coordinator.state, Succeeded)
        assert coordinator.state.playback_url == f"{settings.storage_base_url}orders/7/42.mp4"
        assert coordinator.session is None
        assert previews.active_count == 0
        assert coordinator.orphans == []

        mock_client.request_upload_url.assert_awaited_once_with(7)
        args, kwargs = mock_client.upload_to_storage.call_args
        assert args[0] == "https://storage.test/put/42?sig=abc"
        assert args[2] == "video/mp4"
        assert kwargs["size"] == 10 * 1024 * 1024
        mock_client.confirm_upload.assert_awaited_once_with(42)

    @pytest.mark.asyncio
    async def test_bytes_streamed_to_storage(self, mock_client, repository, previews, locks, video_file_factory):
        received = []

        async def _consume(upload_url, data, content_type, size=None):
            async for chunk in data:
                received.append(chunk)
            return 200

        mock_client.upload_to_storage.side_effect = _consume
        coordinator = UploadCoordinator(mock_client, repository, previews=previews, locks=locks, chunk_size=4)
        file = video_file_factory(0, content=b"0123456789")

        await coordinator.run(7, file)

        assert b"".join(received) == b"0123456789"
        assert len(received) == 3

    @pytest.mark.asyncio
    async def test_confirm_without_video_payload(self, coordinator, mock_client, repository, video_file_factory):
        mock_client.confirm_upload.return_value = {"success": True}

        record = await coordinator.run(7, video_file_factory(1024))

        assert record.status == "uploaded"
        assert record.order_id == 7
        assert repository.get(42) is not None

    @pytest.mark.asyncio
    async def test_allocation_failure(self, coordinator, mock_client, previews, video_file_factory):
        mock_client.request_upload_url.side_effect = ApiError("Order not found", status=404)

        with pytest.raises(AllocationError) as exc_info:
            await coordinator.run(7, video_file_factory(1024))

        assert exc_info.value.message == "Failed to generate upload URL: Order not found"
        assert coordinator.state.step == "allocation"
        assert coordinator.orphans == []
        # 会话保留到取消或替换
        assert previews.active_count == 1
        mock_client.upload_to_storage.assert_not_called()

    @pytest.mark.asyncio
    async def test_incomplete_allocation_response(self, coordinator, mock_client, video_file_factory):
        mock_client.request_upload_url.return_value = {"uploadUrl": "https://storage.test/put"}

        with pytest.raises(AllocationError):
            await coordinator.run(7, video_file_factory(1024))

    @pytest.mark.asyncio
    async def test_allocation_timeout(self, mock_client, repository, previews, locks, video_file_factory):
        async def _slow(order_id):
            await asyncio.sleep(1)

        mock_client.request_upload_url.side_effect = _slow
        coordinator = UploadCoordinator(mock_client, repository, previews=previews, locks=locks, request_timeout=0.01)

        with pytest.raises(AllocationError) as exc_info:
            await coordinator.run(7, video_file_factory(1024))
        assert "timed out" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_transfer_failure_records_orphan(self, coordinator, mock_client, video_file_factory):
        mock_client.upload_to_storage.side_effect = ApiError("AccessDenied", status=403)

        with pytest.raises(TransportError) as exc_info:
            await coordinator.run(7, video_file_factory(1024))

        assert exc_info.value.message == "Upload failed: AccessDenied"
        assert coordinator.state.phase == UploadPhase.FAILED
        assert coordinator.state.error_message == "Upload failed: AccessDenied"
        assert len(coordinator.orphans) == 1
        assert coordinator.orphans[0].video_id == 42
        assert coordinator.orphans[0].failed_step == "transfer"
        mock_client.confirm_upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_confirm_failure_then_retry(self, coordinator, mock_client, repository, previews, video_file_factory):
        mock_client.confirm_upload.side_effect = ApiError("Internal error", status=500)

        with pytest.raises(ConfirmError):
            await coordinator.run(7, video_file_factory(1024))

        assert coordinator.state.step == "confirm"
        assert coordinator.orphans[0].failed_step == "confirm"
        assert repository.get(42) is None
        assert previews.active_count == 1

        mock_client.confirm_upload.side_effect = None
        record = await coordinator.retry_confirm()

        assert record.status == "uploaded"
        assert isinstance(coordinator.state, Succeeded)
        assert previews.active_count == 0
        mock_client.upload_to_storage.assert_called_once()

    @pytest.mark.asyncio
    async def test_confirm_rejected_by_server(self, coordinator, mock_client, video_file_factory):
        mock_client.confirm_upload.return_value = {"success": False, "error": "Object not found"}

        with pytest.raises(ConfirmError) as exc_info:
            await coordinator.run(7, video_file_factory(1024))
        assert exc_info.value.message == "Failed to confirm upload: Object not found"
        assert exc_info.value.video_id == 42

    @pytest.mark.asyncio
    async def test_confirm_video_without_id(self, coordinator, mock_client, repository, video_file_factory):
        """确认响应中的视频记录缺少ID时使用已分配的ID"""
        mock_client.confirm_upload.return_value = {"success": True, "video": {"id": None, "status": "uploaded"}}

        record = await coordinator.run(7, video_file_factory(1024))

        assert record.id == 42
        assert record.order_id == 7
        assert repository.get(42).status == "uploaded"
        assert isinstance(coordinator.state, Succeeded)

    @pytest.mark.asyncio
    async def test_confirm_invalid_video_payload(self, coordinator, mock_client, previews, video_file_factory):
        """无法解析的确认响应进入失败状态，不会停留在确认中"""
        mock_client.confirm_upload.return_value = {"success": True, "video": {"created_at": "not-a-date"}}

        with pytest.raises(ConfirmError) as exc_info:
            await coordinator.run(7, video_file_factory(1024))

        assert exc_info.value.video_id == 42
        assert isinstance(coordinator.state, Failed)
        assert coordinator.state.step == "confirm"
        assert not coordinator.state.is_busy
        assert coordinator.orphans[0].failed_step == "confirm"
        assert coordinator.cancel_upload() is True
        assert previews.active_count == 0

    @pytest.mark.asyncio
    async def test_orphan_timestamp_is_utc(self, coordinator, mock_client, video_file_factory):
        mock_client.upload_to_storage.side_effect = ApiError("AccessDenied", status=403)

        with pytest.raises(TransportError):
            await coordinator.run(7, video_file_factory(1024))

        assert coordinator.orphans[0].recorded_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_discard_orphan(self, coordinator, mock_client, repository, video_file_factory):
        mock_client.confirm_upload.side_effect = ApiError("Internal error", status=500)
        with pytest.raises(ConfirmError):
            await coordinator.run(7, video_file_factory(1024))
        repository.upsert(VideoRecord(id=42, order_id=7, status="uploaded"))

        assert await coordinator.discard_orphan(42) is True

        mock_client.delete_video.assert_awaited_once_with(42)
        assert coordinator.orphans == []
        assert repository.get(42) is None
        assert await coordinator.discard_orphan(42) is False
        assert mock_client.delete_video.await_count == 1

    @pytest.mark.asyncio
    async def test_discard_orphan_failure_keeps_entry(self, coordinator, mock_client, video_file_factory):
        mock_client.upload_to_storage.side_effect = ApiError("AccessDenied", status=403)
        with pytest.raises(TransportError):
            await coordinator.run(7, video_file_factory(1024))
        mock_client.delete_video.side_effect = ApiError("Video not found", status=404)

        with pytest.raises(ApiError):
            await coordinator.discard_orphan(42)
        assert len(coordinator.orphans) == 1

    @pytest.mark.asyncio
    async def test_retry_confirm_requires_transfer(self, coordinator, video_file_factory):
        coordinator.select_file(7, video_file_factory(1024))
        with pytest.raises(ConfirmError):
            await coordinator.retry_confirm()

    @pytest.mark.asyncio
    async def test_start_without_file(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.start()


class TestSessionLifecycle:
    """测试会话与预览句柄的生命周期"""

    def test_select_file_creates_preview(self, coordinator, previews, video_file_factory):
        session = coordinator.select_file(7, video_file_factory(1024))

        assert isinstance(coordinator.state, Selecting)
        assert coordinator.state.file_name == "clip.mp4"
        assert previews.resolve(session.preview.uri) == session.file.path

    def test_replacing_file_releases_previous_preview(self, coordinator, previews, video_file_factory):
        first = coordinator.select_file(7, video_file_factory(1024, name="a.mp4"))
        second = coordinator.select_file(7, video_file_factory(2048, name="b.mp4"))

        assert first.preview.released
        assert first.cancelled
        assert not second.preview.released
        assert previews.active_count == 1

    def test_cancel_before_start(self, coordinator, previews, mock_client, video_file_factory):
        coordinator.select_file(7, video_file_factory(1024))

        assert coordinator.cancel_upload() is True
        assert isinstance(coordinator.state, Idle)
        assert previews.active_count == 0
        mock_client.request_upload_url.assert_not_called()

    def test_cancel_after_validation_failure(self, coordinator):
        big = LocalVideoFile(path="/videos/big.mp4", size=150 * 1024 * 1024, content_type="video/mp4")
        with pytest.raises(ValidationError):
            coordinator.select_file(7, big)

        assert coordinator.cancel_upload() is True
        assert isinstance(coordinator.state, Idle)
        assert coordinator.cancel_upload() is False

    @pytest.mark.asyncio
    async def test_cancel_after_success_is_noop(self, coordinator, video_file_factory):
        await coordinator.run(7, video_file_factory(1024))

        assert coordinator.cancel_upload() is False
        assert isinstance(coordinator.state, Succeeded)

    @pytest.mark.asyncio
    async def test_cancel_in_flight(self, coordinator, mock_client, previews, locks, video_file_factory):
        gate = asyncio.Event()
        entered = asyncio.Event()

        async def _allocate(order_id):
            entered.set()
            await gate.wait()
            return {"uploadUrl": "https://storage.test/put/42", "videoId": 42}

        mock_client.request_upload_url.side_effect = _allocate
        task = asyncio.create_task(coordinator.run(7, video_file_factory(1024)))
        await entered.wait()

        assert coordinator.state.is_busy
        assert coordinator.cancel_upload() is True
        assert previews.active_count == 0

        gate.set()
        assert await task is None

        assert isinstance(coordinator.state, Idle)
        assert not locks.is_locked(7)
        assert coordinator.orphans[0].failed_step == "cancelled"
        mock_client.upload_to_storage.assert_not_called()

    @pytest.mark.asyncio
    async def test_replacing_file_during_upload(self, coordinator, mock_client, previews, locks, video_file_factory):
        """上传进行中选择新文件：旧会话先被拆除，新会话可以正常上传"""
        gate = asyncio.Event()
        entered = asyncio.Event()

        async def _allocate(order_id):
            entered.set()
            await gate.wait()
            return {"uploadUrl": "https://storage.test/put/42", "video": {"id": 42}}

        mock_client.request_upload_url.side_effect = _allocate
        task = asyncio.create_task(coordinator.run(7, video_file_factory(1024, name="a.mp4")))
        await entered.wait()
        old = coordinator.session

        with patch.object(previews, "_revoke", wraps=previews._revoke) as revoke:
            new = coordinator.select_file(7, video_file_factory(2048, name="b.mp4"))

            assert old.cancelled
            assert old.preview.released
            assert not locks.is_locked(7)

            gate.set()
            assert await task is None

            # 旧流程结束后不会改动新会话的状态
            assert isinstance(coordinator.state, Selecting)
            assert coordinator.state.file_name == "b.mp4"
            assert coordinator.session is new
            assert coordinator.orphans[0].failed_step == "cancelled"
            mock_client.upload_to_storage.assert_not_called()

            record = await coordinator.start()

        revoked = [c.args[0] for c in revoke.call_args_list]
        assert revoked.count(old.preview.uri) == 1
        assert record.id == 42
        assert isinstance(coordinator.state, Succeeded)
        assert previews.active_count == 0
        assert mock_client.upload_to_storage.call_count == 1

    @pytest.mark.asyncio
    async def test_close_releases_session(self, mock_client, repository, previews, locks, video_file_factory):
        async with UploadCoordinator(mock_client, repository, previews=previews, locks=locks) as coordinator:
            coordinator.select_file(7, video_file_factory(1024))
            assert previews.active_count == 1
        assert previews.active_count == 0
        assert coordinator.session is None


class TestOrderLock:
    """测试同一工单的上传互斥"""

    @pytest.mark.asyncio
    async def test_second_upload_for_same_order_rejected(
        self, mock_client, repository, previews, locks, video_file_factory
    ):
        gate = asyncio.Event()
        entered = asyncio.Event()

        async def _allocate(order_id):
            entered.set()
            await gate.wait()
            return {"uploadUrl": "https://storage.test/put/42", "video": {"id": 42}}

        mock_client.request_upload_url.side_effect = _allocate
        first = UploadCoordinator(mock_client, repository, previews=previews, locks=locks)
        second = UploadCoordinator(mock_client, repository, previews=previews, locks=locks)

        task = asyncio.create_task(first.run(7, video_file_factory(1024, name="a.mp4")))
        await entered.wait()

        with pytest.raises(UploadInProgressError) as exc_info:
            await second.run(7, video_file_factory(1024, name="b.mp4"))
        assert exc_info.value.order_id == 7

        gate.set()
        record = await task
        assert record.id == 42
        assert not locks.is_locked(7)
        assert mock_client.request_upload_url.await_count == 1

    @pytest.mark.asyncio
    async def test_double_start_same_session_rejected(self, coordinator, mock_client, locks, video_file_factory):
        """同一会话重复启动不会产生第二次上传"""
        gate = asyncio.Event()
        entered = asyncio.Event()

        async def _allocate(order_id):
            entered.set()
            await gate.wait()
            return {"uploadUrl": "https://storage.test/put/42", "video": {"id": 42}}

        mock_client.request_upload_url.side_effect = _allocate
        coordinator.select_file(7, video_file_factory(1024))
        task = asyncio.create_task(coordinator.start())
        await entered.wait()

        with pytest.raises(UploadInProgressError):
            await coordinator.start()

        gate.set()
        record = await task
        assert record.id == 42
        assert mock_client.request_upload_url.await_count == 1
        assert mock_client.upload_to_storage.call_count == 1
        assert mock_client.confirm_upload.await_count == 1
        assert not locks.is_locked(7)

    def test_lock_is_not_reentrant(self, locks, coordinator, video_file_factory):
        session = coordinator.select_file(7, video_file_factory(1024))
        locks.acquire(7, session)

        with pytest.raises(UploadInProgressError):
            locks.acquire(7, session)

        locks.release(7, session)
        assert not locks.is_locked(7)

    @pytest.mark.asyncio
    async def test_different_orders_run_concurrently(
        self, mock_client, repository, previews, locks, video_file_factory
    ):
        ids = iter([101, 102])

        async def _allocate(order_id):
            await asyncio.sleep(0)
            return {"uploadUrl": f"https://storage.test/put/{order_id}", "videoId": next(ids)}

        async def _confirm(video_id):
            return {"success": True, "video": {"id": video_id, "status": "uploaded"}}

        mock_client.request_upload_url.side_effect = _allocate
        mock_client.confirm_upload.side_effect = _confirm
        a = UploadCoordinator(mock_client, repository, previews=previews, locks=locks)
        b = UploadCoordinator(mock_client, repository, previews=previews, locks=locks)

        results = await asyncio.gather(
            a.run(1, video_file_factory(1024, name="a.mp4")),
            b.run(2, video_file_factory(1024, name="b.mp4")),
        )

        assert {r.id for r in results} == {101, 102}
        assert len(repository) == 2


class TestParseAllocation:
    """测试上传地址响应解析"""

    @pytest.mark.parametrize("data,video_id", [
        ({"uploadUrl": "u", "video": {"id": 5}}, 5),
        ({"uploadUrl": "u", "videoId": "abc"}, "abc"),
        ({"upload_url": "u", "video_id": 9}, 9),
    ])
    def test_accepted_shapes(self, data, video_id):
        allocation = _parse_allocation(data)
        assert allocation.upload_url == "u"
        assert allocation.video_id == video_id

    @pytest.mark.parametrize("data", [
        {},
        {"uploadUrl": "u"},
        {"video": {"id": 5}},
        {"uploadUrl": "", "videoId": 5},
    ])
    def test_incomplete_shapes(self, data):
        assert _parse_allocation(data) is None
