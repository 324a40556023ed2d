"""
Provider metadata cache.

Entries are keyed by (provider, object type) and expire after a fixed TTL.
One instance is created per application and passed to whatever needs it.
"""

import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class MetadataCache:
    """Thread-safe TTL cache for provider metadata such as CRM property lists."""
    
    def __init__(self, ttl_seconds: float = 900, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Tuple[str, str], Tuple[float, Any]] = {}
        self._lock = threading.Lock()
    
    def get(self, provider: str, object_type: str) -> Optional[Any]:
        """Cached value, or None if absent or expired."""
        key = (provider, object_type)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return value
    
    def set(self, provider: str, object_type: str, value: Any) -> None:
        with self._lock:
            self._entries[(provider, object_type)] = (self._clock(), value)
    
    def invalidate(self, provider: str, object_type: Optional[str] = None) -> None:
        """Drop one entry, or every entry for a provider when no object type is given."""
        with self._lock:
            if object_type is not None:
                self._entries.pop((provider, object_type), None)
                return
            for key in [k for k in self._entries if k[0] == provider]:
                del self._entries[key]
    
    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
