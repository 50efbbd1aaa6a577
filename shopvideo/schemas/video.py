from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Union, Any
from datetime import datetime, timezone

VideoId = Union[int, str]

class DetectedKeyword(BaseModel):
    problem: str
    category: str
    keywords: List[str] = Field(default_factory=list)

class VideoRecord(BaseModel):
    id: VideoId
    order_id: Optional[VideoId] = None
    shop_id: Optional[VideoId] = None
    brand_id: Optional[VideoId] = None
    district_id: Optional[VideoId] = None
    shop_name: Optional[str] = None
    order_number: Optional[str] = None
    status: Optional[str] = None
    raw_video_url: Optional[str] = None
    processed_video_url: Optional[str] = None
    stitched_video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    detected_keywords: Any = None
    duration: Optional[float] = None
    transcription_text: Optional[str] = None
    created_at: Optional[datetime] = None
    user_selected_vid: Optional[VideoId] = None
    problem_label: Optional[str] = None
    feedback_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    @property
    def has_review(self) -> bool:
        """是否已被操作员纠正过"""
        return bool(self.user_selected_vid) or bool(self.problem_label)

class UploadAllocation(BaseModel):
    upload_url: str
    video_id: VideoId

class CorrectionRequest(BaseModel):
    user_selected_vid: Optional[VideoId] = None
    problem_label: str
    feedback_reason: str

class OrphanedUpload(BaseModel):
    """申请了上传地址但传输或确认未完成的记录"""
    video_id: VideoId
    order_id: VideoId
    failed_step: str
    reason: str
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
