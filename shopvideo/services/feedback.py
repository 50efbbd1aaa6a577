"""操作员纠正AI检测结果的反馈流程"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field

from shopvideo.core.constants import FEEDBACK_SENTINEL, PRESET_FEEDBACK_REASONS, MAX_CORRECTION_HISTORY
from shopvideo.core.exceptions import ApiError, FeedbackError, ValidationError
from shopvideo.schemas.video import VideoRecord, VideoId, CorrectionRequest
from shopvideo.services.status_resolver import primary_problem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Preset:
    reason_id: str

    @property
    def label(self) -> str:
        return PRESET_FEEDBACK_REASONS.get(self.reason_id, self.reason_id)


@dataclass(frozen=True)
class Custom:
    text: str


FeedbackChoice = Union[Preset, Custom]


class CorrectionAttempt(BaseModel):
    video_id: VideoId
    problem_label: str
    feedback_reason: str
    success: bool
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def feedback_value(choice: Optional[FeedbackChoice]) -> str:
    """预设原因提交其ID，自定义原因提交原文"""
    if isinstance(choice, Preset):
        return choice.reason_id
    if isinstance(choice, Custom):
        return choice.text
    return ""


class CorrectionForm:
    """纠正表单，预设原因与自定义原因互斥"""

    def __init__(
        self,
        video_id: VideoId,
        problem_label: str = "",
        user_selected_vid: Optional[VideoId] = None,
        presets: Dict[str, str] = None,
    ):
        self.video_id = video_id
        self.problem_label = problem_label
        self.user_selected_vid = user_selected_vid
        self.presets = presets if presets is not None else PRESET_FEEDBACK_REASONS
        self.choice: Optional[FeedbackChoice] = None
        self.is_open = True
        self.is_submitting = False
        self.error_message: Optional[str] = None

    @classmethod
    def for_record(cls, record: VideoRecord) -> "CorrectionForm":
        """用AI检测到的问题预填表单"""
        detected = primary_problem(record)
        return cls(
            video_id=record.id,
            problem_label=record.problem_label or detected.problem,
            user_selected_vid=record.user_selected_vid,
        )

    def select_preset(self, reason_id: str) -> None:
        if reason_id not in self.presets:
            raise ValidationError(f"Unknown feedback reason: {reason_id}")
        self.choice = Preset(reason_id)

    def type_custom(self, text: str) -> None:
        self.choice = Custom(text)

    @property
    def mode(self) -> Optional[str]:
        if isinstance(self.choice, Preset):
            return "preset"
        if isinstance(self.choice, Custom):
            return "custom"
        return None

    @property
    def feedback_text(self) -> str:
        return feedback_value(self.choice)


class FeedbackWorkflow:
    """提交纠正并更新仓库中的审核字段"""

    def __init__(self, client, repository, history_limit: int = MAX_CORRECTION_HISTORY):
        self.client = client
        self.repository = repository
        self.history_limit = history_limit
        self.history: List[CorrectionAttempt] = []

    def _remember(self, attempt: CorrectionAttempt) -> None:
        self.history.insert(0, attempt)
        del self.history[self.history_limit:]

    async def submit_correction(
        self,
        video_id: VideoId,
        problem_label: str,
        feedback_text: Optional[str] = None,
        user_selected_vid: Optional[VideoId] = None,
    ) -> VideoRecord:
        """提交纠正，失败时不自动重试"""
        if not problem_label or not problem_label.strip():
            raise ValidationError("Please select a problem label")
        feedback_reason = feedback_text.strip() if feedback_text and feedback_text.strip() else FEEDBACK_SENTINEL

        request = CorrectionRequest(
            user_selected_vid=user_selected_vid if user_selected_vid is not None else video_id,
            problem_label=problem_label.strip(),
            feedback_reason=feedback_reason,
        )
        logger.info(f"提交纠正: video_id={video_id}, problem_label={request.problem_label}")

        try:
            updated = await self.client.update_video(video_id, request.model_dump())
        except ApiError as e:
            logger.error(f"提交纠正失败: video_id={video_id}, error={e.message}")
            self._remember(CorrectionAttempt(
                video_id=video_id,
                problem_label=request.problem_label,
                feedback_reason=feedback_reason,
                success=False,
                error=e.message,
            ))
            raise FeedbackError(e.message)

        review = {
            "user_selected_vid": updated.user_selected_vid if updated.user_selected_vid is not None else request.user_selected_vid,
            "problem_label": updated.problem_label or request.problem_label,
            "feedback_reason": updated.feedback_reason or request.feedback_reason,
        }
        record = self.repository.update_fields(video_id, **review)
        if record is None:
            record = self.repository.upsert(updated.model_copy(update=review))

        self._remember(CorrectionAttempt(
            video_id=video_id,
            problem_label=review["problem_label"],
            feedback_reason=review["feedback_reason"],
            success=True,
        ))
        return record

    async def submit_form(self, form: CorrectionForm) -> Optional[VideoRecord]:
        """提交表单；失败时保留表单并显示服务器返回的信息"""
        form.is_submitting = True
        form.error_message = None
        try:
            record = await self.submit_correction(
                form.video_id,
                form.problem_label,
                form.feedback_text,
                user_selected_vid=form.user_selected_vid,
            )
        except (FeedbackError, ValidationError) as e:
            form.error_message = e.message
            return None
        finally:
            form.is_submitting = False
        form.is_open = False
        return record
