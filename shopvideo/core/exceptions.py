"""视频流水线异常定义"""

from typing import Optional


class VideoPipelineError(Exception):
    """所有流水线错误的基类，message 可直接展示给操作员"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(VideoPipelineError):
    """本地校验失败（文件过大、类型错误等），不会触发任何网络请求"""


class UploadInProgressError(VideoPipelineError):
    """同一工单已有上传流程在进行中"""

    def __init__(self, order_id):
        super().__init__(f"An upload is already in progress for order {order_id}")
        self.order_id = order_id


class ApiError(VideoPipelineError):
    """后端或存储返回非成功状态"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AllocationError(VideoPipelineError):
    """无法获得上传地址和视频ID"""


class TransportError(VideoPipelineError):
    """字节传输到存储失败"""


class ConfirmError(VideoPipelineError):
    """确认上传失败，记录可能成为孤儿"""

    def __init__(self, message: str, video_id=None):
        super().__init__(message)
        self.video_id = video_id


class FeedbackError(VideoPipelineError):
    """提交纠正失败，message 为服务器原文"""


class DownloadError(VideoPipelineError):
    """下载视频失败"""


class KeywordParseError(VideoPipelineError):
    """detected_keywords 无法解析，仅在内部使用并被本地恢复"""
