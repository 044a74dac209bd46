from typing import Optional

from pydantic import BaseModel


class JobBatchResponse(BaseModel):
    claimed: int
    done: int
    skipped: int
    failed: int
    retry_scheduled: int
    released_stale: Optional[int] = None
    failed_stale: Optional[int] = None
