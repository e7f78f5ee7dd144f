"""
LLM access layer

Provides:
- LLMManager: provider config and client construction
- BaseChatClient: uniform completion interface
- Provider: raw HTTP endpoints (completion, embeddings)
"""

from .llm_manager import (
    LLMManager,
    BaseChatClient,
    HTTPChatClient,
    DryRunChatClient,
    Provider,
    ProviderConfig,
    classify_status,
    get_manager,
)

__all__ = [
    "LLMManager",
    "BaseChatClient",
    "HTTPChatClient",
    "DryRunChatClient",
    "Provider",
    "ProviderConfig",
    "classify_status",
    "get_manager",
]
