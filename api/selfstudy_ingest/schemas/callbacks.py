from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CallbackType = Literal["section_result", "error", "complete"]
MatchStatus = Literal["matched", "unmatched", "error"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TaxonomyCode(CamelModel):
    code: str
    title: str | None = None


class SectionMatch(CamelModel):
    status: MatchStatus
    standard: TaxonomyCode | None = None
    subspecification: TaxonomyCode | None = None
    confidence: float = Field(default=0.0, ge=0)
    rationale: str | None = None
    error: str | None = None


class CallbackSection(CamelModel):
    heading: str | None = None
    rich_text_content: str = ""
    match: SectionMatch | None = None


class DocumentMatcherCallback(CamelModel):
    type: CallbackType = "section_result"
    job_id: str | None = None
    document_id: str
    more_data: bool = True
    section_index: int = Field(default=0, ge=0)
    total_sections: int = Field(default=0, ge=0)
    section: CallbackSection | None = None
    error: str | None = None


class CallbackAck(CamelModel):
    received: bool = True
    status: str
    action: str


class ConnectionTestOut(CamelModel):
    success: bool
    status_code: int | None = None
    latency_ms: float | None = None
    error: str | None = None
    tested_at: datetime
