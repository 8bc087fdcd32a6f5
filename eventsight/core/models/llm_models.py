# eventsight/core/models/llm_models.py
"""
LLM Task Type Models - model routing.

Task types let different models serve different purposes:
- summary: per-user behavioral summaries during ingestion
- reasoning: answer synthesis over retrieved profiles
- quick: intent classification and cached-answer rephrasing
- standard: everything else
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class LLMTaskType(str, Enum):
    SUMMARY = "summary"       # Ingestion: one summary per person
    REASONING = "reasoning"   # Query: synthesize answers over profiles
    QUICK = "quick"           # Query: classify intent, improve cached answers
    STANDARD = "standard"     # Default


class LLMTaskConfig(BaseModel):
    """
    Configuration for a specific LLM task type.

    Attributes:
        model: Model identifier
        temperature: Sampling temperature (0.0-2.0, lower = more deterministic)
        max_tokens: Maximum tokens in response
    """
    model: str = Field(..., description="Model identifier")
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0, description="Sampling temperature")
    max_tokens: Optional[int] = Field(None, gt=0, description="Maximum response tokens")

    class Config:
        extra = "allow"


class LLMConnectionStatus(BaseModel):
    connected: bool
    endpoint: Optional[str] = None
    model: Optional[str] = None
    error: Optional[str] = None
