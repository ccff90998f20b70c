from .store import SID_PATTERN, SessionStore, new_sid

__all__ = ["SID_PATTERN", "SessionStore", "new_sid"]
