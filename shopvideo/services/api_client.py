"""
后端视频API客户端
封装上传地址申请、存储直传、确认上传、查询与纠正等REST调用
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from shopvideo.core.config import settings
from shopvideo.core.exceptions import ApiError
from shopvideo.schemas.video import VideoRecord, VideoId

logger = logging.getLogger(__name__)


def _extract_records(payload: Any) -> List[dict]:
    """兼容裸数组和 {data: [...]} 两种返回结构"""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("data", "videos"):
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return []


def _extract_record(payload: Any) -> Any:
    if isinstance(payload, dict):
        for key in ("data", "video"):
            value = payload.get(key)
            if isinstance(value, dict):
                return value
    return payload


class VideoApiClient:
    """视频后端API客户端"""

    def __init__(
        self,
        base_url: str = None,
        token: str = None,
        session: aiohttp.ClientSession = None,
        timeout_seconds: float = None,
        transfer_timeout_seconds: float = None,
    ):
        self.base_url = (base_url or settings.api_base_url).rstrip('/')
        self.token = token if token is not None else settings.api_token
        self.timeout_seconds = timeout_seconds or settings.request_timeout_seconds
        self.transfer_timeout_seconds = transfer_timeout_seconds or settings.transfer_timeout_seconds
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "VideoApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    @staticmethod
    async def _error_message(response: aiohttp.ClientResponse) -> str:
        """提取服务器返回的错误信息原文"""
        text = await response.text()
        try:
            data = await response.json(content_type=None)
        except ValueError:
            data = None
        if isinstance(data, dict):
            for key in ("error", "message", "detail"):
                value = data.get(key)
                if isinstance(value, str) and value:
                    return value
                if isinstance(value, dict) and value.get("message"):
                    return str(value["message"])
        return text or f"HTTP {response.status}"

    async def _request_json(self, method: str, path: str, json: Any = None) -> Any:
        session = await self._get_session()
        url = self._url(path)
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with session.request(method, url, json=json, headers=self._headers(), timeout=timeout) as response:
                if response.status >= 400:
                    message = await self._error_message(response)
                    logger.error(f"API请求失败: {method} {url} - {response.status} - {message}")
                    raise ApiError(message, status=response.status)
                if response.status == 204:
                    return None
                return await response.json(content_type=None)
        except asyncio.TimeoutError:
            logger.error(f"API请求超时: {method} {url} ({self.timeout_seconds}s)")
            raise ApiError(f"Request timed out after {self.timeout_seconds}s")
        except aiohttp.ClientError as e:
            logger.error(f"API请求异常: {method} {url} - {type(e).__name__}: {str(e)}")
            raise ApiError(f"Network error: {str(e)}")

    # ------------------------------------------------------------------
    # 上传
    # ------------------------------------------------------------------

    async def request_upload_url(self, order_id: VideoId) -> Dict[str, Any]:
        """申请上传地址，返回 {uploadUrl, video:{id}} 或 {uploadUrl, videoId}"""
        logger.info(f"申请上传地址 - order_id: {order_id}")
        data = await self._request_json("POST", "/videos/upload-url", json={"order_id": order_id})
        return data if isinstance(data, dict) else {}

    async def upload_to_storage(
        self,
        upload_url: str,
        data: Any,
        content_type: str,
        size: Optional[int] = None,
    ) -> int:
        """直接PUT到存储的写入地址，不携带API的认证头"""
        session = await self._get_session()
        headers = {"Content-Type": content_type}
        if size is not None:
            headers["Content-Length"] = str(size)
        timeout = aiohttp.ClientTimeout(total=self.transfer_timeout_seconds)
        try:
            async with session.put(upload_url, data=data, headers=headers, timeout=timeout) as response:
                if response.status >= 300:
                    message = await response.text()
                    logger.error(f"存储写入失败: {response.status} - {message[:200]}")
                    raise ApiError(message or f"HTTP {response.status}", status=response.status)
                return response.status
        except asyncio.TimeoutError:
            logger.error(f"存储写入超时 ({self.transfer_timeout_seconds}s)")
            raise ApiError(f"Upload timed out after {self.transfer_timeout_seconds}s")
        except aiohttp.ClientError as e:
            logger.error(f"存储写入异常: {type(e).__name__}: {str(e)}")
            raise ApiError(f"Network error: {str(e)}")

    async def confirm_upload(self, video_id: VideoId) -> Dict[str, Any]:
        logger.info(f"确认上传 - video_id: {video_id}")
        data = await self._request_json("POST", "/videos/confirm", json={"videoId": video_id})
        return data if isinstance(data, dict) else {}

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def _get_records(self, path: str) -> List[VideoRecord]:
        data = await self._request_json("GET", path)
        return [VideoRecord.model_validate(item) for item in _extract_records(data)]

    async def get_video(self, video_id: VideoId) -> VideoRecord:
        """获取单个视频的最新状态"""
        data = await self._request_json("GET", f"/videos/{video_id}")
        record = _extract_record(data)
        if not isinstance(record, dict):
            raise ApiError(f"Video {video_id} not found in response")
        return VideoRecord.model_validate({"id": video_id, **record})

    async def get_videos_by_order(self, order_id: VideoId) -> List[VideoRecord]:
        return await self._get_records(f"/videos/by-order/{order_id}")

    async def get_videos_by_shop(self, shop_id: VideoId) -> List[VideoRecord]:
        return await self._get_records(f"/videos/shop/{shop_id}")

    async def get_videos_by_district(self, district_id: VideoId) -> List[VideoRecord]:
        return await self._get_records(f"/videos/district/{district_id}")

    async def get_videos_by_brand(self, brand_id: VideoId) -> List[VideoRecord]:
        return await self._get_records(f"/videos/brand/{brand_id}")

    # ------------------------------------------------------------------
    # 更新
    # ------------------------------------------------------------------

    async def update_video(self, video_id: VideoId, payload: Dict[str, Any]) -> VideoRecord:
        """PATCH 视频的纠正字段，返回更新后的记录"""
        logger.info(f"更新视频 - video_id: {video_id}, fields: {list(payload)}")
        data = await self._request_json("PATCH", f"/videos/{video_id}", json=payload)
        record = _extract_record(data)
        if not isinstance(record, dict):
            # 后端未返回记录体时以请求字段构造
            return VideoRecord(id=video_id, **payload)
        return VideoRecord.model_validate({"id": video_id, **record})

    async def delete_video(self, video_id: VideoId) -> Dict[str, Any]:
        logger.info(f"删除视频 - video_id: {video_id}")
        data = await self._request_json("DELETE", f"/videos/{video_id}")
        return data if isinstance(data, dict) else {}

    # ------------------------------------------------------------------
    # 下载
    # ------------------------------------------------------------------

    async def stream_bytes(self, url: str, chunk_size: int = None, timeout_seconds: float = None) -> AsyncIterator[bytes]:
        """流式读取存储中的视频字节"""
        session = await self._get_session()
        chunk_size = chunk_size or settings.transfer_chunk_size
        timeout = aiohttp.ClientTimeout(total=timeout_seconds or settings.download_timeout_seconds)
        try:
            async with session.get(url, timeout=timeout) as response:
                if response.status >= 400:
                    message = await response.text()
                    logger.error(f"读取视频失败: {url} - {response.status}")
                    raise ApiError(message or f"HTTP {response.status}", status=response.status)
                async for chunk in response.content.iter_chunked(chunk_size):
                    yield chunk
        except asyncio.TimeoutError:
            logger.error(f"读取视频超时: {url}")
            raise ApiError("Download timed out")
        except aiohttp.ClientError as e:
            logger.error(f"读取视频异常: {url} - {type(e).__name__}: {str(e)}")
            raise ApiError(f"Network error: {str(e)}")
