from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from docsumm.db.models import AuditEventType


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    summary_id: str
    job_id: Optional[str] = None
    event_type: AuditEventType
    payload: Dict[str, Any] = {}
    created_at: datetime
