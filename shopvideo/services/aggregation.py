"""
视频统计聚合
从视频记录集合计算 门店 -> 区域 -> 品牌 各级统计，所有函数均为纯函数
"""

from collections import Counter, OrderedDict
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from shopvideo.core.constants import VideoStatus, RECENT_UPLOAD_DAYS
from shopvideo.schemas.stats import (
    AggregateStat, StatusShare, DashboardSummary, DerivedStats, VideoFilters, StatsHierarchy
)
from shopvideo.schemas.video import VideoRecord
from shopvideo.services.status_resolver import classify, parse_detected_keywords

ScopeKeyFn = Callable[[VideoRecord], Any]
ParentOf = Union[Mapping[Any, Any], Callable[[Any], Any]]

_COUNT_FIELDS = (
    "total_videos", "uploaded_videos", "processing_videos", "completed_videos",
    "failed_videos", "unknown_videos", "manual_corrections",
)

_STATUS_FIELD = {
    VideoStatus.UPLOADED: "uploaded_videos",
    VideoStatus.PROCESSING: "processing_videos",
    VideoStatus.COMPLETED: "completed_videos",
    VideoStatus.FAILED: "failed_videos",
    VideoStatus.UNKNOWN: "unknown_videos",
}


def format_rate(part: int, total: int) -> str:
    """百分比保留一位小数，total 为 0 时返回 "0.0" """
    if total <= 0:
        return "0.0"
    value = (Decimal(part) * 100 / Decimal(total)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    return f"{value:.1f}"


def _round_percent(part: int, total: int) -> int:
    if total <= 0:
        return 0
    return int((Decimal(part) * 100 / Decimal(total)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _stat_from_counts(scope: Any, counts: Mapping[str, int]) -> AggregateStat:
    total = counts.get("total_videos", 0)
    return AggregateStat(
        scope=scope,
        **{name: counts.get(name, 0) for name in _COUNT_FIELDS},
        completion_rate=format_rate(counts.get("completed_videos", 0), total),
        error_rate=format_rate(counts.get("failed_videos", 0), total),
        correction_rate=format_rate(counts.get("manual_corrections", 0), total),
    )


def _count(records: Iterable[VideoRecord]) -> Counter:
    counts = Counter()
    for record in records:
        counts["total_videos"] += 1
        counts[_STATUS_FIELD[classify(record)]] += 1
        if record.has_review:
            counts["manual_corrections"] += 1
    return counts


def empty_stat(scope: Any = None) -> AggregateStat:
    return _stat_from_counts(scope, {})


def compute_scope_stats(records: Iterable[VideoRecord], scope: Any = None) -> AggregateStat:
    """将全部记录视为同一范围进行统计"""
    return _stat_from_counts(scope, _count(records))


def compute_stats(records: Iterable[VideoRecord], scope_key_fn: ScopeKeyFn) -> Dict[Any, AggregateStat]:
    """按范围键分组并统计每组的状态数量和比率"""
    groups: Dict[Any, List[VideoRecord]] = OrderedDict()
    for record in records:
        groups.setdefault(scope_key_fn(record), []).append(record)
    return {scope: compute_scope_stats(members, scope) for scope, members in groups.items()}


def _parent(parent_of: ParentOf, child: Any) -> Any:
    if callable(parent_of):
        return parent_of(child)
    return parent_of.get(child)


def rollup(child_stats: Mapping[Any, AggregateStat], parent_of: ParentOf) -> Dict[Any, AggregateStat]:
    """将下级范围的原始计数汇总到上级范围，并用汇总后的计数重新计算比率"""
    sums: Dict[Any, Counter] = OrderedDict()
    for child, stat in child_stats.items():
        counts = sums.setdefault(_parent(parent_of, child), Counter())
        for name in _COUNT_FIELDS:
            counts[name] += getattr(stat, name)
    return {scope: _stat_from_counts(scope, counts) for scope, counts in sums.items()}


def _first_parent_map(records: Iterable[VideoRecord], child_field: str, parent_field: str) -> Dict[Any, Any]:
    mapping: Dict[Any, Any] = {}
    for record in records:
        child = getattr(record, child_field)
        parent = getattr(record, parent_field)
        if parent is not None and child not in mapping:
            mapping[child] = parent
    return mapping


def compute_hierarchy(
    records: Iterable[VideoRecord],
    shop_to_district: Optional[ParentOf] = None,
    district_to_brand: Optional[ParentOf] = None,
) -> StatsHierarchy:
    """
    计算门店、区域、品牌三级统计

    未提供映射时，从记录自身的 district_id / brand_id 推导门店与区域的归属。
    """
    records = list(records)
    if shop_to_district is None:
        shop_to_district = _first_parent_map(records, "shop_id", "district_id")
    if district_to_brand is None:
        district_to_brand = _first_parent_map(records, "district_id", "brand_id")

    shops = compute_stats(records, lambda r: r.shop_id)
    districts = rollup(shops, shop_to_district)
    brands = rollup(districts, district_to_brand)
    return StatsHierarchy(shops=shops, districts=districts, brands=brands)


# ----------------------------------------------------------------------
# 仪表盘派生统计
# ----------------------------------------------------------------------

def _utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _now(now: Optional[datetime]) -> datetime:
    return _utc_naive(now if now is not None else datetime.now(timezone.utc))


def status_distribution(records: Iterable[VideoRecord]) -> List[StatusShare]:
    """各状态数量及占比，按数量降序"""
    records = list(records)
    counts = Counter(classify(r).value for r in records)
    shares = [
        StatusShare(status=status, count=count, percentage=_round_percent(count, len(records)))
        for status, count in counts.items()
    ]
    return sorted(shares, key=lambda s: s.count, reverse=True)


def dashboard_summary(records: Iterable[VideoRecord], now: Optional[datetime] = None) -> DashboardSummary:
    records = list(records)
    now = _now(now)
    today = now.date()
    yesterday = today - timedelta(days=1)
    last_week_start = now - timedelta(days=7)
    statuses = Counter(classify(r) for r in records)

    created = [_utc_naive(r.created_at) for r in records]
    return DashboardSummary(
        total=len(records),
        uploaded=statuses[VideoStatus.UPLOADED],
        processing=statuses[VideoStatus.PROCESSING],
        completed=statuses[VideoStatus.COMPLETED],
        failed=statuses[VideoStatus.FAILED],
        today=sum(1 for c in created if c is not None and c.date() == today),
        yesterday=sum(1 for c in created if c is not None and c.date() == yesterday),
        last_week=sum(1 for c in created if c is not None and last_week_start <= c < now),
    )


def derived_stats(records: Iterable[VideoRecord], now: Optional[datetime] = None) -> DerivedStats:
    """按状态、品牌、门店、日期分组的计数"""
    records = list(records)
    if not records:
        return DerivedStats()
    recent_start = _now(now) - timedelta(days=RECENT_UPLOAD_DAYS)

    stats = DerivedStats(total=len(records))
    for record in records:
        status = classify(record).value
        stats.by_status[status] = stats.by_status.get(status, 0) + 1
        if record.brand_id is not None:
            key = str(record.brand_id)
            stats.by_brand[key] = stats.by_brand.get(key, 0) + 1
        if record.shop_id is not None:
            key = str(record.shop_id)
            stats.by_shop[key] = stats.by_shop.get(key, 0) + 1
        created = _utc_naive(record.created_at)
        if created is not None:
            if created >= recent_start:
                stats.recent_uploads += 1
            date_key = created.date().isoformat()
            stats.by_date[date_key] = stats.by_date.get(date_key, 0) + 1

    stats.by_status_percentage = {
        status: _round_percent(count, stats.total) for status, count in stats.by_status.items()
    }
    stats.recent_uploads_percentage = _round_percent(stats.recent_uploads, stats.total)
    return stats


# ----------------------------------------------------------------------
# 过滤与排序
# ----------------------------------------------------------------------

def _same(value: Any, expected: Any) -> bool:
    return value is not None and str(value) == str(expected)


def _record_keywords(record: VideoRecord) -> List[str]:
    words: List[str] = []
    for entry in parse_detected_keywords(record.detected_keywords):
        words.extend(k.lower() for k in entry.keywords)
        words.append(entry.problem.lower())
    return words


def _matches(record: VideoRecord, filters: VideoFilters) -> bool:
    if filters.status and classify(record).value != filters.status.lower():
        return False
    for name in ("shop_id", "brand_id", "district_id", "order_id"):
        expected = getattr(filters, name)
        if expected is not None and not _same(getattr(record, name), expected):
            return False

    if filters.date_from or filters.date_to:
        created = _utc_naive(record.created_at)
        if created is None:
            return False
        if filters.date_from and created.date() < filters.date_from:
            return False
        # date_to 包含当天
        if filters.date_to and created.date() > filters.date_to:
            return False

    if filters.keywords and record.detected_keywords:
        wanted = [k.strip().lower() for k in filters.keywords.split(",") if k.strip()]
        video_words = _record_keywords(record)
        return any(w in vw for w in wanted for vw in video_words)
    return True


def filter_videos(records: Iterable[VideoRecord], filters: VideoFilters) -> List[VideoRecord]:
    return [r for r in records if _matches(r, filters)]


def sort_by_created(records: Iterable[VideoRecord]) -> List[VideoRecord]:
    """按创建时间倒序；创建时间相同的记录之间不保证顺序"""
    records = list(records)
    dated = [r for r in records if r.created_at is not None]
    undated = [r for r in records if r.created_at is None]
    return sorted(dated, key=lambda r: _utc_naive(r.created_at), reverse=True) + undated
