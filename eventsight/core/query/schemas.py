"""Request/response models for the query router."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TimeRange(BaseModel):
    start: Optional[str] = Field(None, description="ISO-8601 lower bound on first_event")
    end: Optional[str] = Field(None, description="ISO-8601 upper bound on first_event")


class QueryFilters(BaseModel):
    person_id: Optional[str] = None
    vendor_id: Optional[str] = Field(None, description="Matched against vendor_ids")
    shop_domain: Optional[str] = Field(None, description="Matched against shop_domains")
    event_types: Optional[List[str]] = None
    time_range: Optional[TimeRange] = None

    def to_filter_map(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class QueryRequest(BaseModel):
    question: str = Field(..., min_length=1, description="Natural-language analytics question")
    top_k: Optional[int] = Field(None, ge=1, le=100, description="Profiles to retrieve for list answers")
    filters: Optional[QueryFilters] = Field(None, description="Explicit filters, merged over intent filters")
    stream: bool = Field(False, description="Stream the answer as text chunks")


class Source(BaseModel):
    person_id: Optional[str] = None
    score: float = 0.0
    event_count: Optional[int] = None
    event_types: List[str] = Field(default_factory=list)
    summary: Optional[str] = None


class QueryResponse(BaseModel):
    answer: str
    intent: str
    confidence: float = 0.0
    sources: List[Source] = Field(default_factory=list)
    total_sources: int = 0
    cached: bool = False
    model_used: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
