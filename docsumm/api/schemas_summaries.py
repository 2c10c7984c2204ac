from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from docsumm.db.models import SourceType, SummaryStatus


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class SummaryCreateRequest(_CamelModel):
    source_type: SourceType
    content: str


class SummaryResponse(_CamelModel):
    id: str
    source_type: SourceType
    original_content: str
    summary_text: str | None = None
    status: SummaryStatus
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime


class SummaryCreateResponse(_CamelModel):
    id: str
    status: SummaryStatus
    summary: SummaryResponse
    remaining_credits: int
