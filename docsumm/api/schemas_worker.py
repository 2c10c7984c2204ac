from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class WorkerBatchResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    picked: int
    completed: int
    failed: int
    avg_duration_ms: int
    failure_codes: dict[str, int] = {}
