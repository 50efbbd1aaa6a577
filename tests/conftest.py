import os
from datetime import datetime
from unittest.mock import AsyncMock, Mock

import pytest

# 设置测试环境变量，必须在导入 shopvideo 之前
os.environ.setdefault('SHOPVIDEO_API_BASE_URL', 'http://api.test/api')
os.environ.setdefault('SHOPVIDEO_STORAGE_BASE_URL', 'https://storage.test/videos/')
os.environ.setdefault('SHOPVIDEO_MAX_UPLOAD_MB', '100')
os.environ.setdefault('SHOPVIDEO_LOG_LEVEL', 'DEBUG')

from shopvideo.schemas.video import VideoRecord
from shopvideo.services.local_files import LocalVideoFile, PreviewRegistry
from shopvideo.services.repository import InMemoryVideoRepository
from shopvideo.services.upload_coordinator import UploadLocks


@pytest.fixture
def previews():
    """独立的预览句柄登记表"""
    return PreviewRegistry()


@pytest.fixture
def locks():
    return UploadLocks()


@pytest.fixture
def repository():
    return InMemoryVideoRepository()


@pytest.fixture
def video_file_factory(tmp_path):
    """在临时目录中创建指定大小的视频文件"""
    def _make(size: int, name: str = "clip.mp4", content: bytes = None) -> LocalVideoFile:
        path = tmp_path / name
        with open(path, "wb") as f:
            if content is not None:
                f.write(content)
            else:
                f.truncate(size)
        return LocalVideoFile.from_path(path)
    return _make


@pytest.fixture
def mock_client():
    """模拟的后端API客户端"""
    client = Mock()
    client.request_upload_url = AsyncMock(
        return_value={"uploadUrl": "https://storage.test/put/42?sig=abc", "video": {"id": 42}}
    )
    client.upload_to_storage = AsyncMock(return_value=200)
    client.confirm_upload = AsyncMock(return_value={
        "success": True,
        "video": {"id": 42, "order_id": 7, "status": "uploaded", "raw_video_url": "orders/7/42.mp4"},
    })
    client.update_video = AsyncMock()
    client.get_videos_by_order = AsyncMock(return_value=[])
    client.get_video = AsyncMock()
    client.delete_video = AsyncMock(return_value={"success": True})
    return client


@pytest.fixture
def sample_records():
    """两个区域、三个门店的视频记录"""
    return [
        VideoRecord(id=1, status="completed", shop_id=1, district_id=10, brand_id=100,
                    created_at=datetime(2024, 3, 10, 9, 0)),
        VideoRecord(id=2, status="processing", shop_id=2, district_id=10, brand_id=100,
                    created_at=datetime(2024, 3, 9, 18, 30), problem_label="Dirty floor"),
        VideoRecord(id=3, status="failed", shop_id=2, district_id=10, brand_id=100,
                    created_at=datetime(2024, 3, 1, 12, 0)),
        VideoRecord(id=4, status="uploaded", shop_id=2, district_id=10, brand_id=100),
        VideoRecord(id=5, status="completed", shop_id=3, district_id=20, brand_id=100,
                    created_at=datetime(2024, 3, 10, 7, 45), user_selected_vid=5),
    ]


def pytest_configure(config):
    """配置pytest"""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )
    config.addinivalue_line(
        "markers", "unit: mark test as unit test"
    )
