from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class QuotaPolicy(BaseModel):
    max_tokens: Optional[int] = None  # None = unlimited
    max_requests: Optional[int] = None  # None = unlimited
    reset_hours: float = 24


class UsageRecord(BaseModel):
    tokens_used: int = 0
    requests_made: int = 0
    reset_at: datetime
