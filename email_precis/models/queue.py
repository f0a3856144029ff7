from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class JobState(str, Enum):
    PENDING = "Pending"
    FETCHING = "Fetching"
    CLASSIFYING = "Classifying"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    QUOTA_WAIT = "QuotaWait"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)

    @property
    def is_in_flight(self) -> bool:
        return self in (JobState.FETCHING, JobState.CLASSIFYING)


class QuotaNotice(BaseModel):
    """User-facing description of a quota stall, consumed by a countdown UI."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    message: str
    retry_after: timedelta = Field(alias="retryAfter")
    quota_limit: Optional[str] = Field(None, alias="quotaLimit")
    help_url: Optional[str] = Field(None, alias="helpUrl")

    @field_serializer("retry_after", when_used="json")
    def _retry_after_ms(self, value: timedelta) -> int:
        return int(value.total_seconds() * 1000)


class QueueJob(BaseModel):
    """One unit of classification work. Only the queue mutates these."""

    model_config = ConfigDict(populate_by_name=True)

    email_id: str = Field(alias="emailId")
    user_id: str = Field(alias="userId")
    state: JobState = JobState.PENDING
    attempts: int = Field(0, ge=0)
    quota_hits: int = Field(0, alias="quotaHits", ge=0)
    enqueued_at: datetime = Field(alias="enqueuedAt")
    next_eligible_at: Optional[datetime] = Field(None, alias="nextEligibleAt")
    finished_at: Optional[datetime] = Field(None, alias="finishedAt")
    last_error: Optional[str] = Field(None, alias="lastError")
    needs_reauth: bool = Field(False, alias="needsReauth")
    quota: Optional[QuotaNotice] = None

    @property
    def key(self) -> tuple:
        return (self.user_id, self.email_id)

    @property
    def retry_attempts(self) -> int:
        """Attempts that count towards the retry ceiling (quota stalls excluded)."""
        return self.attempts - self.quota_hits

    @property
    def public_error(self) -> Optional[str]:
        if self.state is not JobState.FAILED:
            return None
        if self.needs_reauth:
            return "Please reconnect your account to continue processing emails."
        return "Processing failed for this email."

    def public_view(self) -> dict:
        """Snapshot without operator-only diagnostics."""
        data = self.model_dump(
            mode="json", by_alias=True, exclude={"last_error", "quota_hits"}
        )
        data["error"] = self.public_error
        return data


class QueueStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    total: int
    by_state: Dict[JobState, int] = Field(alias="byState")
    is_active: bool = Field(alias="isActive")
    timestamp: datetime
