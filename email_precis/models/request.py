from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from email_precis.models.queue import JobState, QuotaNotice


class EnqueueRequest(BaseModel):
    """Email ids the caller wants classified."""

    model_config = ConfigDict(populate_by_name=True)

    email_ids: List[str] = Field(alias="emailIds", min_length=1)


class EnqueueResponse(BaseModel):
    accepted: List[str] = []
    rejected: List[str] = []
    duplicates: List[str] = []


class QueueCounts(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total: int
    by_state: Dict[JobState, int] = Field(alias="byState")


class QueueStatusResponse(BaseModel):
    """Global queue status polled by the UI; ``quota`` drives its countdown."""

    model_config = ConfigDict(populate_by_name=True)

    queue_stats: QueueCounts = Field(alias="queueStats")
    is_active: bool = Field(alias="isActive")
    quota: Optional[QuotaNotice] = None
    timestamp: datetime


class SyncResponse(BaseModel):
    """Outcome of listing the caller's recent mail and queueing what is new."""

    model_config = ConfigDict(populate_by_name=True)

    listed: int
    already_processed: int = Field(alias="alreadyProcessed")
    accepted: List[str] = []
    rejected: List[str] = []
    duplicates: List[str] = []
