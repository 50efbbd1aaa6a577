"""
上传协调器
负责 申请上传地址 -> 直传存储 -> 确认上传 的完整流程，并持有本次上传会话的本地资源
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List, Optional

import pydantic

from shopvideo.core.config import settings
from shopvideo.core.constants import UploadPhase, VideoStatus
from shopvideo.core.exceptions import (
    VideoPipelineError, ValidationError, UploadInProgressError, ApiError,
    AllocationError, TransportError, ConfirmError
)
from shopvideo.schemas.video import VideoRecord, UploadAllocation, OrphanedUpload, VideoId
from shopvideo.services.local_files import LocalVideoFile, PreviewHandle, PreviewRegistry, preview_registry
from shopvideo.services.status_resolver import resolve_playback_url

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# 上传状态
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class UploadState:
    phase: ClassVar[UploadPhase]

    @property
    def is_busy(self) -> bool:
        return self.phase in (UploadPhase.REQUESTING, UploadPhase.TRANSFERRING, UploadPhase.CONFIRMING)

    @property
    def is_success(self) -> bool:
        return self.phase == UploadPhase.SUCCEEDED

    @property
    def error_message(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class Idle(UploadState):
    phase: ClassVar[UploadPhase] = UploadPhase.IDLE


@dataclass(frozen=True)
class Selecting(UploadState):
    phase: ClassVar[UploadPhase] = UploadPhase.SELECTING
    file_name: str = ""


@dataclass(frozen=True)
class Requesting(UploadState):
    phase: ClassVar[UploadPhase] = UploadPhase.REQUESTING


@dataclass(frozen=True)
class Transferring(UploadState):
    phase: ClassVar[UploadPhase] = UploadPhase.TRANSFERRING
    video_id: Optional[VideoId] = None


@dataclass(frozen=True)
class Confirming(UploadState):
    phase: ClassVar[UploadPhase] = UploadPhase.CONFIRMING
    video_id: Optional[VideoId] = None


@dataclass(frozen=True)
class Succeeded(UploadState):
    phase: ClassVar[UploadPhase] = UploadPhase.SUCCEEDED
    video_id: Optional[VideoId] = None
    playback_url: Optional[str] = None


@dataclass(frozen=True)
class Failed(UploadState):
    phase: ClassVar[UploadPhase] = UploadPhase.FAILED
    reason: str = ""
    step: Optional[str] = None

    @property
    def error_message(self) -> Optional[str]:
        return self.reason


# ----------------------------------------------------------------------
# 上传会话与工单互斥
# ----------------------------------------------------------------------

@dataclass(eq=False)
class UploadSession:
    """一次上传的本地会话，由协调器独占"""
    order_id: VideoId
    file: LocalVideoFile
    preview: PreviewHandle
    upload_url: Optional[str] = None
    video_id: Optional[VideoId] = None
    transferred: bool = False
    cancelled: bool = False

    def release(self) -> bool:
        return self.preview.release()


class UploadLocks:
    """按工单记录进行中的上传，同一工单同一时间只允许一个上传流程"""

    def __init__(self):
        self._owners: Dict[str, UploadSession] = {}

    def acquire(self, order_id: VideoId, owner: UploadSession) -> None:
        key = str(order_id)
        if key in self._owners:
            # 同一会话重复启动也视为冲突
            raise UploadInProgressError(order_id)
        self._owners[key] = owner

    def release(self, order_id: VideoId, owner: UploadSession) -> None:
        key = str(order_id)
        if self._owners.get(key) is owner:
            del self._owners[key]

    def is_locked(self, order_id: VideoId) -> bool:
        return str(order_id) in self._owners


upload_locks = UploadLocks()


def _parse_allocation(data: Dict[str, Any]) -> Optional[UploadAllocation]:
    """兼容 {uploadUrl, video:{id}} 与 {uploadUrl, videoId} 两种返回"""
    upload_url = data.get("uploadUrl") or data.get("upload_url")
    video = data.get("video")
    video_id = video.get("id") if isinstance(video, dict) else None
    if video_id is None:
        video_id = data.get("videoId") or data.get("video_id")
    if not upload_url or video_id is None or video_id == "":
        return None
    return UploadAllocation(upload_url=upload_url, video_id=video_id)


class UploadCoordinator:
    """视频上传协调器"""

    def __init__(
        self,
        client,
        repository,
        previews: PreviewRegistry = None,
        locks: UploadLocks = None,
        max_upload_bytes: int = None,
        request_timeout: float = None,
        transfer_timeout: float = None,
        chunk_size: int = None,
    ):
        self.client = client
        self.repository = repository
        self.previews = previews or preview_registry
        self.locks = locks or upload_locks
        self.max_upload_bytes = max_upload_bytes or settings.max_upload_bytes
        self.request_timeout = request_timeout or settings.request_timeout_seconds
        self.transfer_timeout = transfer_timeout or settings.transfer_timeout_seconds
        self.chunk_size = chunk_size or settings.transfer_chunk_size
        self.orphans: List[OrphanedUpload] = []
        self._state: UploadState = Idle()
        self._session: Optional[UploadSession] = None

    async def __aenter__(self) -> "UploadCoordinator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def state(self) -> UploadState:
        return self._state

    @property
    def session(self) -> Optional[UploadSession]:
        return self._session

    # ------------------------------------------------------------------
    # 单个步骤
    # ------------------------------------------------------------------

    def validate_file(self, file: LocalVideoFile) -> None:
        """本地校验，不发起任何网络请求"""
        if file.size <= 0:
            raise ValidationError("Selected file is empty")
        if file.size > self.max_upload_bytes:
            limit_mb = self.max_upload_bytes // (1024 * 1024)
            raise ValidationError(f"File size must be less than {limit_mb}MB")
        if not (file.content_type or "").startswith("video/"):
            raise ValidationError("Please select a valid video file")

    async def begin_upload(self, order_id: VideoId, file: LocalVideoFile) -> UploadAllocation:
        """校验文件并申请上传地址和视频ID"""
        self.validate_file(file)
        try:
            data = await asyncio.wait_for(self.client.request_upload_url(order_id), self.request_timeout)
        except asyncio.TimeoutError:
            raise AllocationError(f"Failed to generate upload URL: timed out after {self.request_timeout}s")
        except ApiError as e:
            raise AllocationError(f"Failed to generate upload URL: {e.message}")

        allocation = _parse_allocation(data or {})
        if allocation is None:
            logger.error(f"上传地址响应不完整: order_id={order_id}, keys={list(data or {})}")
            raise AllocationError("Failed to generate upload URL: missing upload URL or video id")
        logger.info(f"已获得上传地址: order_id={order_id}, video_id={allocation.video_id}")
        return allocation

    async def transfer_bytes(self, upload_url: str, file: LocalVideoFile) -> None:
        """将文件字节直接传输到存储写入地址"""
        content_type = file.content_type or settings.default_content_type
        logger.info(f"开始传输文件: {file.name}, 大小: {file.size / (1024*1024):.1f}MB")
        try:
            await asyncio.wait_for(
                self.client.upload_to_storage(
                    upload_url,
                    file.iter_chunks(self.chunk_size),
                    content_type,
                    size=file.size,
                ),
                self.transfer_timeout,
            )
        except asyncio.TimeoutError:
            raise TransportError(f"Upload failed: timed out after {self.transfer_timeout}s")
        except ApiError as e:
            raise TransportError(f"Upload failed: {e.message}")
        except OSError as e:
            raise TransportError(f"Upload failed: could not read file ({e})")
        logger.info(f"文件传输完成: {file.name}")

    async def confirm_upload(self, video_id: VideoId) -> VideoRecord:
        """确认上传，使记录进入 uploaded 状态"""
        try:
            data = await asyncio.wait_for(self.client.confirm_upload(video_id), self.request_timeout)
        except asyncio.TimeoutError:
            raise ConfirmError(f"Failed to confirm upload: timed out after {self.request_timeout}s", video_id)
        except ApiError as e:
            raise ConfirmError(f"Failed to confirm upload: {e.message}", video_id)

        data = data or {}
        if not data.get("success"):
            message = data.get("error") or data.get("message") or "server did not confirm"
            raise ConfirmError(f"Failed to confirm upload: {message}", video_id)

        try:
            record = self._confirmed_record(video_id, data.get("video"))
        except pydantic.ValidationError as e:
            logger.error(f"确认响应中的视频记录无效: video_id={video_id}, error={e}")
            raise ConfirmError("Failed to confirm upload: invalid video record in response", video_id)
        record = self.repository.upsert(record)
        logger.info(f"上传已确认: video_id={video_id}, status={record.status}")
        return record

    def _confirmed_record(self, video_id: VideoId, payload: Any) -> VideoRecord:
        order_id = self._session.order_id if self._session and str(self._session.video_id) == str(video_id) else None
        if isinstance(payload, dict):
            if payload.get("id") is None:
                payload = {**payload, "id": video_id}
            record = VideoRecord.model_validate(payload)
        else:
            record = self.repository.get(video_id) or VideoRecord(id=video_id)
        update = {}
        if not record.status:
            update["status"] = VideoStatus.UPLOADED.value
        if record.order_id is None and order_id is not None:
            update["order_id"] = order_id
        return record.model_copy(update=update) if update else record

    # ------------------------------------------------------------------
    # 会话管理
    # ------------------------------------------------------------------

    def select_file(self, order_id: VideoId, file: LocalVideoFile) -> UploadSession:
        """选择文件，替换之前的会话并创建新的预览句柄"""
        if self._session is not None:
            logger.info(f"替换上传会话: order_id={self._session.order_id}")
            self._discard(self._session)
            self._session = None

        try:
            self.validate_file(file)
        except ValidationError as e:
            logger.warning(f"文件校验失败: {file.name} - {e.message}")
            self._state = Failed(reason=e.message, step="validation")
            raise

        session = UploadSession(order_id=order_id, file=file, preview=self.previews.create(file))
        self._session = session
        self._state = Selecting(file_name=file.name)
        return session

    def _discard(self, session: UploadSession) -> None:
        session.cancelled = True
        session.release()
        self.locks.release(session.order_id, session)

    def _set_state(self, session: UploadSession, state: UploadState) -> None:
        if session is self._session and not session.cancelled:
            self._state = state

    def _record_orphan(self, session: UploadSession, step: str, reason: str) -> None:
        if session.video_id is None:
            return
        orphan = OrphanedUpload(
            video_id=session.video_id,
            order_id=session.order_id,
            failed_step=step,
            reason=reason,
        )
        self.orphans.append(orphan)
        logger.warning(f"视频记录可能成为孤儿: video_id={session.video_id}, step={step}, reason={reason}")

    def _fail(self, session: UploadSession, step: str, error: VideoPipelineError) -> None:
        logger.error(f"上传失败: order_id={session.order_id}, step={step}, error={error.message}")
        if step in ("transfer", "confirm"):
            self._record_orphan(session, step, error.message)
        self._set_state(session, Failed(reason=error.message, step=step))

    def _succeed(self, session: UploadSession, record: VideoRecord) -> None:
        self._set_state(session, Succeeded(video_id=record.id, playback_url=resolve_playback_url(record)))
        session.release()
        if session is self._session:
            self._session = None

    # ------------------------------------------------------------------
    # 完整流程
    # ------------------------------------------------------------------

    async def run(self, order_id: VideoId, file: LocalVideoFile) -> Optional[VideoRecord]:
        """选择文件并执行完整上传流程"""
        self.select_file(order_id, file)
        return await self.start()

    async def start(self) -> Optional[VideoRecord]:
        """对当前会话执行 申请 -> 传输 -> 确认，会话被取消时返回 None"""
        session = self._session
        if session is None:
            raise ValidationError("No file selected")
        self.locks.acquire(session.order_id, session)

        step = "allocation"
        try:
            self._set_state(session, Requesting())
            allocation = await self.begin_upload(session.order_id, session.file)
            session.upload_url = allocation.upload_url
            session.video_id = allocation.video_id
            if session.cancelled:
                self._record_orphan(session, "cancelled", "cancelled after allocation")
                return None

            step = "transfer"
            self._set_state(session, Transferring(video_id=allocation.video_id))
            await self.transfer_bytes(allocation.upload_url, session.file)
            session.transferred = True
            if session.cancelled:
                self._record_orphan(session, "cancelled", "cancelled after transfer")
                return None

            step = "confirm"
            self._set_state(session, Confirming(video_id=allocation.video_id))
            record = await self.confirm_upload(allocation.video_id)
            self._succeed(session, record)
            return record
        except VideoPipelineError as e:
            if session.cancelled:
                logger.info(f"已取消的上传在 {step} 阶段结束: {e.message}")
                return None
            self._fail(session, step, e)
            raise
        finally:
            self.locks.release(session.order_id, session)

    async def retry_confirm(self) -> VideoRecord:
        """手动重新确认已完成传输的上传"""
        session = self._session
        if session is None or not session.transferred or session.video_id is None:
            raise ConfirmError("Nothing to confirm: the file has not been transferred")
        self.locks.acquire(session.order_id, session)
        try:
            self._set_state(session, Confirming(video_id=session.video_id))
            record = await self.confirm_upload(session.video_id)
            self._succeed(session, record)
            return record
        except ConfirmError as e:
            if not session.cancelled:
                self._fail(session, "confirm", e)
            raise
        finally:
            self.locks.release(session.order_id, session)

    def cancel_upload(self) -> bool:
        """取消当前上传，已传输到存储的字节无法撤回"""
        if isinstance(self._state, Succeeded):
            return False
        session = self._session
        if session is None:
            changed = not isinstance(self._state, Idle)
            self._state = Idle()
            return changed
        self._discard(session)
        self._session = None
        self._state = Idle()
        logger.info(f"上传已取消: order_id={session.order_id}, video_id={session.video_id}")
        return True

    async def discard_orphan(self, video_id: VideoId) -> bool:
        """由操作员手动删除孤儿记录，删除失败时保留在列表中"""
        key = str(video_id)
        if not any(str(o.video_id) == key for o in self.orphans):
            return False
        await self.repository.delete_video(self.client, video_id)
        self.orphans = [o for o in self.orphans if str(o.video_id) != key]
        logger.info(f"已清理孤儿记录: video_id={video_id}")
        return True

    def close(self) -> None:
        """销毁协调器时释放会话资源"""
        if self._session is not None:
            self._discard(self._session)
            self._session = None
            self._state = Idle()
