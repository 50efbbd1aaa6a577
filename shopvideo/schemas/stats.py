from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import date

class AggregateStat(BaseModel):
    scope: Any = None
    total_videos: int = Field(0, alias="totalVideos")
    uploaded_videos: int = Field(0, alias="uploadedVideos")
    processing_videos: int = Field(0, alias="processingVideos")
    completed_videos: int = Field(0, alias="completedVideos")
    failed_videos: int = Field(0, alias="failedVideos")
    unknown_videos: int = Field(0, alias="unknownVideos")
    manual_corrections: int = Field(0, alias="manualCorrections")
    completion_rate: str = Field("0.0", alias="completionRate")
    error_rate: str = Field("0.0", alias="errorRate")
    correction_rate: str = Field("0.0", alias="correctionRate")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

class StatusShare(BaseModel):
    status: str
    count: int
    percentage: int

class DashboardSummary(BaseModel):
    total: int
    uploaded: int
    processing: int
    completed: int
    failed: int
    today: int
    yesterday: int
    last_week: int

class DerivedStats(BaseModel):
    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_brand: Dict[str, int] = Field(default_factory=dict)
    by_shop: Dict[str, int] = Field(default_factory=dict)
    by_date: Dict[str, int] = Field(default_factory=dict)
    recent_uploads: int = 0
    by_status_percentage: Dict[str, int] = Field(default_factory=dict)
    recent_uploads_percentage: int = 0

class VideoFilters(BaseModel):
    status: Optional[str] = None
    shop_id: Optional[Any] = None
    brand_id: Optional[Any] = None
    district_id: Optional[Any] = None
    order_id: Optional[Any] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    keywords: Optional[str] = None

class StatsHierarchy(BaseModel):
    shops: Dict[Any, AggregateStat] = Field(default_factory=dict)
    districts: Dict[Any, AggregateStat] = Field(default_factory=dict)
    brands: Dict[Any, AggregateStat] = Field(default_factory=dict)

    @property
    def levels(self) -> List[Dict[Any, AggregateStat]]:
        return [self.shops, self.districts, self.brands]
