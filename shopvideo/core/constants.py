"""系统常量定义"""

from enum import Enum

class VideoStatus(str, Enum):
    """视频生命周期状态枚举"""
    UPLOADED = "uploaded"            # 已上传，等待AI处理
    PROCESSING = "processing"        # AI处理中
    COMPLETED = "completed"          # 处理完成
    FAILED = "failed"                # 处理失败
    UNKNOWN = "unknown"              # 未识别或缺失的状态

class UploadPhase(str, Enum):
    """上传流程阶段枚举"""
    IDLE = "idle"                    # 空闲
    SELECTING = "selecting"          # 已选择文件
    REQUESTING = "requesting"        # 正在申请上传地址
    TRANSFERRING = "transferring"    # 正在传输字节
    CONFIRMING = "confirming"        # 正在确认上传
    SUCCEEDED = "succeeded"          # 上传成功
    FAILED = "failed"                # 上传失败

# 生命周期排序，状态只能前进不能回退
STATUS_RANK = {
    VideoStatus.UNKNOWN: 0,
    VideoStatus.UPLOADED: 1,
    VideoStatus.PROCESSING: 2,
    VideoStatus.COMPLETED: 3,
    VideoStatus.FAILED: 3,
}

TERMINAL_STATUSES = (VideoStatus.COMPLETED, VideoStatus.FAILED)

# 播放地址优先级：拼接视频 > 处理后视频 > 原始视频
PLAYBACK_URL_FIELDS = ("stitched_video_url", "processed_video_url", "raw_video_url")

# AI检测结果解析失败时的默认值
DEFAULT_PROBLEM = "No problem detected"
DEFAULT_CATEGORY = "Uncategorized"

# 反馈内容为空时使用的固定值
FEEDBACK_SENTINEL = "No feedback provided"

# 预设的反馈原因
PRESET_FEEDBACK_REASONS = {
    "correct": "AI detection was correct",
    "wrong_problem": "Wrong problem detected",
    "wrong_category": "Wrong category assigned",
    "missing_keywords": "Important keywords were missed",
    "poor_video_quality": "Video quality too poor to judge",
}

# 纠正记录最多保留条数
MAX_CORRECTION_HISTORY = 50

# 最近上传的统计窗口（天）
RECENT_UPLOAD_DAYS = 7

DEFAULT_VIDEO_FILENAME = "video-{id}.mp4"
