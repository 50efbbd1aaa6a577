"""视频播放地址解析与本地下载"""

import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse, unquote

import aiofiles

from shopvideo.core.config import settings
from shopvideo.core.constants import DEFAULT_VIDEO_FILENAME
from shopvideo.core.exceptions import ApiError, DownloadError
from shopvideo.schemas.video import VideoRecord
from shopvideo.services.local_files import temp_dir
from shopvideo.services.status_resolver import resolve_playback_url

logger = logging.getLogger(__name__)


def filename_for(record: VideoRecord, url: Optional[str]) -> str:
    """取存储路径最后一段作为文件名，取不到时使用 video-{id}.mp4"""
    name = ""
    if url:
        name = os.path.basename(unquote(urlparse(url).path))
    return name or DEFAULT_VIDEO_FILENAME.format(id=record.id)


def unique_path(directory: Path, filename: str) -> Path:
    """目标文件已存在时追加 (n) 后缀"""
    candidate = directory / filename
    stem, suffix = os.path.splitext(filename)
    n = 1
    while candidate.exists():
        candidate = directory / f"{stem} ({n}){suffix}"
        n += 1
    return candidate


class DownloadService:
    """把视频保存到本地目录"""

    def __init__(self, client, download_dir: str = None, temp_directory: str = None, base_url: str = None):
        self.client = client
        self.download_dir = download_dir or settings.download_dir
        self.temp_directory = temp_directory
        self.base_url = base_url
        self._active = 0

    @property
    def is_downloading(self) -> bool:
        return self._active > 0

    def playback_url(self, record: VideoRecord) -> Optional[str]:
        return resolve_playback_url(record, self.base_url)

    def _blob_path(self) -> Path:
        directory = Path(self.temp_directory) if self.temp_directory else temp_dir()
        directory.mkdir(parents=True, exist_ok=True)
        return directory / f"download-{uuid.uuid4().hex}.part"

    async def download_video(self, record: VideoRecord, destination_dir: str = None) -> Path:
        """下载视频并返回保存路径，失败时抛出 DownloadError("Download failed")"""
        url = self.playback_url(record)
        if not url:
            logger.warning(f"视频没有可用的播放地址: video_id={record.id}")
            raise DownloadError("Download failed")

        destination = Path(destination_dir or self.download_dir)
        blob = None
        self._active += 1
        logger.info(f"开始下载视频: video_id={record.id}, url={url}")
        try:
            blob = self._blob_path()
            size = 0
            async with aiofiles.open(blob, "wb") as f:
                async for chunk in self.client.stream_bytes(url):
                    await f.write(chunk)
                    size += len(chunk)

            destination.mkdir(parents=True, exist_ok=True)
            target = unique_path(destination, filename_for(record, url))
            shutil.move(str(blob), str(target))
            logger.info(f"视频已保存: {target}, 大小: {size / (1024*1024):.1f}MB")
            return target
        except (ApiError, OSError) as e:
            logger.error(f"下载视频失败: video_id={record.id}, error={e}")
            raise DownloadError("Download failed")
        finally:
            self._active -= 1
            if blob is not None and blob.exists():
                blob.unlink()
