from src.sessions.registry import SessionRegistry, get_session_registry

__all__ = ["SessionRegistry", "get_session_registry"]
