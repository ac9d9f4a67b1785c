"""Download URL cache shared by the file manager and the diagnostics layer."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional


@dataclass(frozen=True)
class CachedUrl:
    path: str
    url: str
    fetched_at: float


class DownloadUrlCache:
    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.time
        self._entries: Dict[str, CachedUrl] = {}

    def get(self, path: str) -> Optional[CachedUrl]:
        return self._entries.get(path)

    def put(self, path: str, url: str) -> CachedUrl:
        entry = CachedUrl(path=path, url=url, fetched_at=self._clock())
        self._entries[path] = entry
        return entry

    def invalidate(self, path: str) -> None:
        self._entries.pop(path, None)

    def invalidate_prefix(self, prefix: str) -> None:
        for key in [k for k in self._entries if k == prefix or k.startswith(prefix + "/")]:
            del self._entries[key]

    def entries(self) -> List[CachedUrl]:
        return list(self._entries.values())

    def age(self, entry: CachedUrl) -> float:
        return self._clock() - entry.fetched_at

    def clear(self) -> None:
        self._entries.clear()
