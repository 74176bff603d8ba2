import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, Optional


class TTLCache:
    """Petit cache LRU avec durée de vie, pour absorber les rafales de lecture.

    Aucune logique ne doit dépendre de sa fraîcheur: une entrée expirée est
    simplement recalculée.
    """

    def __init__(self, ttl: float = 2.0, max_size: int = 256,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._data: "OrderedDict[Hashable, Any]" = OrderedDict()
        self._timestamps: Dict[Hashable, float] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            if key not in self._data:
                return None
            if self._clock() - self._timestamps[key] > self.ttl:
                del self._data[key]
                del self._timestamps[key]
                return None
            self._data.move_to_end(key)
            return self._data[key]

    def set(self, key: Hashable, value: Any) -> None:
        if self.ttl <= 0:
            return
        with self._lock:
            if key in self._data:
                self._data.move_to_end(key)
            elif len(self._data) >= self.max_size:
                oldest = next(iter(self._data))
                del self._data[oldest]
                del self._timestamps[oldest]
            self._data[key] = value
            self._timestamps[key] = self._clock()


    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = compute()
        self.set(key, value)
        return value
