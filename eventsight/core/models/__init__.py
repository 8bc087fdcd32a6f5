from .llm_models import LLMConnectionStatus, LLMTaskConfig, LLMTaskType

__all__ = ["LLMConnectionStatus", "LLMTaskConfig", "LLMTaskType"]
