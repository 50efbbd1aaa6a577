"""视频状态分类与存储地址解析"""

import json
import logging
from typing import Any, List, Optional, Union

from shopvideo.core.config import settings
from shopvideo.core.constants import (
    VideoStatus, STATUS_RANK, TERMINAL_STATUSES, PLAYBACK_URL_FIELDS,
    DEFAULT_PROBLEM, DEFAULT_CATEGORY
)
from shopvideo.core.exceptions import KeywordParseError
from shopvideo.schemas.video import VideoRecord, DetectedKeyword

logger = logging.getLogger(__name__)

RecordLike = Union[VideoRecord, dict]

_ABSOLUTE_PREFIXES = ("http://", "https://", "//")


def _field(record: RecordLike, name: str) -> Any:
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def classify(record: Union[RecordLike, str, None]) -> VideoStatus:
    """将记录的状态归类到生命周期枚举，无法识别时返回 unknown"""
    raw = record if isinstance(record, str) or record is None else _field(record, "status")
    if not isinstance(raw, str):
        return VideoStatus.UNKNOWN
    try:
        status = VideoStatus(raw.strip().lower())
    except ValueError:
        return VideoStatus.UNKNOWN
    return status


def can_transition(current: VideoStatus, new: VideoStatus) -> bool:
    """生命周期只能前进，终态之间也不能互相切换"""
    if current == new:
        return True
    if current in TERMINAL_STATUSES:
        return False
    return STATUS_RANK[new] > STATUS_RANK[current]


def absolutize(path: Optional[str], base_url: Optional[str] = None) -> Optional[str]:
    """相对存储路径拼接到固定前缀之后，已是绝对地址的原样返回"""
    if not path or not path.strip():
        return None
    path = path.strip()
    if path.startswith(_ABSOLUTE_PREFIXES):
        return path
    base = settings.storage_base_url if base_url is None else base_url
    if path.startswith("/"):
        path = path[1:]
    return f"{base}{path}"


def effective_url_field(record: RecordLike) -> Optional[str]:
    """返回优先级最高且非空的地址字段名"""
    for name in PLAYBACK_URL_FIELDS:
        value = _field(record, name)
        if value and str(value).strip():
            return name
    return None


def is_playable(record: RecordLike) -> bool:
    return effective_url_field(record) is not None


def resolve_playback_url(record: RecordLike, base_url: Optional[str] = None) -> Optional[str]:
    """按 stitched > processed > raw 的优先级解析播放地址"""
    name = effective_url_field(record)
    if name is None:
        return None
    return absolutize(str(_field(record, name)), base_url)


def resolve_thumbnail_url(record: RecordLike, base_url: Optional[str] = None) -> Optional[str]:
    """解析缩略图地址，与视频地址的解析结果互不影响"""
    value = _field(record, "thumbnail_url")
    if not value:
        return None
    return absolutize(str(value), base_url)


def default_keywords() -> DetectedKeyword:
    return DetectedKeyword(problem=DEFAULT_PROBLEM, category=DEFAULT_CATEGORY, keywords=[])


def _to_entry(item: Any) -> DetectedKeyword:
    if not isinstance(item, dict):
        raise KeywordParseError(f"Unexpected keyword entry: {item!r}")
    keywords = item.get("keywords") or []
    if isinstance(keywords, str):
        keywords = [k.strip() for k in keywords.split(",") if k.strip()]
    if not isinstance(keywords, list):
        raise KeywordParseError(f"Unexpected keywords value: {keywords!r}")
    return DetectedKeyword(
        problem=str(item.get("problem") or DEFAULT_PROBLEM),
        category=str(item.get("category") or DEFAULT_CATEGORY),
        keywords=[str(k) for k in keywords],
    )


def _parse(raw: Any) -> List[DetectedKeyword]:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise KeywordParseError(f"detected_keywords is not valid JSON: {e}")
    if isinstance(raw, DetectedKeyword):
        return [raw]
    if isinstance(raw, dict):
        return [_to_entry(raw)]
    if isinstance(raw, list):
        if not raw:
            raise KeywordParseError("detected_keywords is empty")
        return [item if isinstance(item, DetectedKeyword) else _to_entry(item) for item in raw]
    raise KeywordParseError(f"Unsupported detected_keywords type: {type(raw).__name__}")


def parse_detected_keywords(raw: Any) -> List[DetectedKeyword]:
    """
    解析AI检测结果

    raw 可以是结构化数据，也可以是JSON字符串。解析失败时返回固定默认值，
    不向调用方抛出异常。
    """
    if raw is None:
        return [default_keywords()]
    try:
        return _parse(raw)
    except (KeywordParseError, TypeError, UnicodeDecodeError, RecursionError) as e:
        logger.debug(f"detected_keywords解析失败，使用默认值: {e}")
        return [default_keywords()]


def primary_problem(record: RecordLike) -> DetectedKeyword:
    """用于展示的第一条检测结果"""
    return parse_detected_keywords(_field(record, "detected_keywords"))[0]
