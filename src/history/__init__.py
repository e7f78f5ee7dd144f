from src.history.store import HistoryStore, ProgressStore, get_history_store, get_progress_store

__all__ = ["HistoryStore", "ProgressStore", "get_history_store", "get_progress_store"]
