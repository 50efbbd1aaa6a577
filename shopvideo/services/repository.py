"""视频记录仓库，显式传递给上传协调器、纠正流程和统计调用方"""

import logging
from typing import Dict, Iterable, List, Optional, Protocol

from shopvideo.core.constants import VideoStatus
from shopvideo.schemas.video import VideoRecord, VideoId
from shopvideo.services.status_resolver import classify, can_transition

logger = logging.getLogger(__name__)


class VideoRepository(Protocol):
    def get(self, video_id: VideoId) -> Optional[VideoRecord]: ...

    def upsert(self, record: VideoRecord) -> VideoRecord: ...

    def update_fields(self, video_id: VideoId, **fields) -> Optional[VideoRecord]: ...

    def remove(self, video_id: VideoId) -> bool: ...

    def snapshot(self) -> List[VideoRecord]: ...

    async def delete_video(self, client, video_id: VideoId) -> bool: ...


def _key(video_id: VideoId) -> str:
    # 后端有时返回数字ID，有时返回字符串ID
    return str(video_id)


class InMemoryVideoRepository:
    """内存中的视频记录仓库"""

    def __init__(self, records: Iterable[VideoRecord] = ()):
        self._records: Dict[str, VideoRecord] = {}
        self.version = 0
        self.upsert_many(records)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, video_id) -> bool:
        return _key(video_id) in self._records

    def get(self, video_id: VideoId) -> Optional[VideoRecord]:
        return self._records.get(_key(video_id))

    def upsert(self, record: VideoRecord) -> VideoRecord:
        """插入或合并记录，状态不会回退"""
        key = _key(record.id)
        existing = self._records.get(key)
        if existing is not None:
            current = classify(existing)
            incoming = classify(record)
            if incoming == VideoStatus.UNKNOWN or not can_transition(current, incoming):
                if incoming != current:
                    logger.warning(
                        f"忽略状态回退: video_id={record.id}, {existing.status} -> {record.status}"
                    )
                record = record.model_copy(update={"status": existing.status})
        self._records[key] = record
        self.version += 1
        return record

    def upsert_many(self, records: Iterable[VideoRecord]) -> List[VideoRecord]:
        return [self.upsert(record) for record in records]

    def update_fields(self, video_id: VideoId, **fields) -> Optional[VideoRecord]:
        existing = self.get(video_id)
        if existing is None:
            return None
        updated = existing.model_copy(update=fields)
        self._records[_key(video_id)] = updated
        self.version += 1
        return updated

    def remove(self, video_id: VideoId) -> bool:
        removed = self._records.pop(_key(video_id), None)
        if removed is not None:
            self.version += 1
        return removed is not None

    def snapshot(self) -> List[VideoRecord]:
        """返回当前记录的副本，调用方后续读取不受仓库变更影响"""
        return list(self._records.values())

    def _filter(self, field: str, value) -> List[VideoRecord]:
        return [
            r for r in self._records.values()
            if getattr(r, field) is not None and _key(getattr(r, field)) == _key(value)
        ]

    def by_order(self, order_id: VideoId) -> List[VideoRecord]:
        return self._filter("order_id", order_id)

    def by_shop(self, shop_id: VideoId) -> List[VideoRecord]:
        return self._filter("shop_id", shop_id)

    def by_district(self, district_id: VideoId) -> List[VideoRecord]:
        return self._filter("district_id", district_id)

    def by_brand(self, brand_id: VideoId) -> List[VideoRecord]:
        return self._filter("brand_id", brand_id)

    async def refresh_order(self, client, order_id: VideoId) -> List[VideoRecord]:
        """从后端加载工单下的所有视频"""
        records = await client.get_videos_by_order(order_id)
        logger.info(f"已加载工单视频: order_id={order_id}, count={len(records)}")
        return self.upsert_many(records)

    async def refresh_video(self, client, video_id: VideoId) -> VideoRecord:
        """拉取单个视频的最新状态，状态推进仍受单调规则约束"""
        record = await client.get_video(video_id)
        stored = self.upsert(record)
        logger.debug(f"已刷新视频: video_id={video_id}, status={stored.status}")
        return stored

    async def delete_video(self, client, video_id: VideoId) -> bool:
        """删除后端记录，成功后再从仓库移除"""
        await client.delete_video(video_id)
        removed = self.remove(video_id)
        logger.info(f"已删除视频: video_id={video_id}, local={removed}")
        return removed
