"""本地视频文件与预览句柄"""

import logging
import mimetypes
import os
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

import aiofiles

from shopvideo.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocalVideoFile:
    """操作员选择的本地视频文件"""
    path: str
    size: int
    content_type: Optional[str] = None

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @classmethod
    def from_path(cls, path, content_type: Optional[str] = None) -> "LocalVideoFile":
        path = str(path)
        if content_type is None:
            content_type, _ = mimetypes.guess_type(path)
        return cls(path=path, size=os.path.getsize(path), content_type=content_type)

    async def iter_chunks(self, chunk_size: int = None) -> AsyncIterator[bytes]:
        """分块读取文件内容"""
        chunk_size = chunk_size or settings.transfer_chunk_size
        async with aiofiles.open(self.path, "rb") as f:
            while True:
                chunk = await f.read(chunk_size)
                if not chunk:
                    break
                yield chunk


class PreviewHandle:
    """本地预览句柄，只能释放一次"""

    def __init__(self, registry: "PreviewRegistry", uri: str, path: str):
        self._registry = registry
        self.uri = uri
        self.path = path
        self.released = False

    def release(self) -> bool:
        """释放句柄，重复调用不产生效果，返回本次是否真正释放"""
        if self.released:
            return False
        self.released = True
        self._registry._revoke(self.uri)
        return True


class PreviewRegistry:
    """预览句柄登记表，记录所有尚未释放的句柄"""

    def __init__(self):
        self._active: Dict[str, str] = {}

    def create(self, file: LocalVideoFile) -> PreviewHandle:
        uri = f"preview://{uuid.uuid4().hex}"
        self._active[uri] = file.path
        logger.debug(f"创建预览句柄: {uri} -> {file.name}")
        return PreviewHandle(self, uri, file.path)

    def resolve(self, uri: str) -> Optional[str]:
        return self._active.get(uri)

    def _revoke(self, uri: str) -> None:
        self._active.pop(uri, None)
        logger.debug(f"释放预览句柄: {uri}")

    @property
    def active_count(self) -> int:
        return len(self._active)


def temp_dir() -> Path:
    """临时文件目录"""
    path = Path(settings.temp_dir) if settings.temp_dir else Path(tempfile.gettempdir()) / "shopvideo"
    path.mkdir(parents=True, exist_ok=True)
    return path


preview_registry = PreviewRegistry()
