# Utils: cache, prompt_manager, task_runner
from src.utils.cache import TTLCache, make_key
from src.utils.prompt_manager import PromptManager

__all__ = [
    "TTLCache",
    "make_key",
    "PromptManager",
]
