"""
Cache analytics.

The counters belong to a single worker. The storage and the fetcher are wrapped
in decorators that count as they delegate, so the strategies never touch the
counters directly.
"""

import logging
import threading
from typing import Dict, List, Optional, Union

from .cache import Cache, CacheStorage
from .fetch import Fetcher
from .model import Request, Response


logger = logging.getLogger(__name__)


class CacheMetrics:
    def __init__(self) -> None:
        self.__lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.network_requests = 0

    def record_hit(self) -> None:
        with self.__lock:
            self.hits += 1

    def record_miss(self) -> None:
        with self.__lock:
            self.misses += 1

    def record_network_request(self) -> None:
        with self.__lock:
            self.network_requests += 1

    @property
    def hit_ratio(self) -> float:
        """
        Percentage of lookups that were hits, or 0 before any lookup.
        """
        with self.__lock:
            total = self.hits + self.misses
            return (self.hits / total) * 100 if total > 0 else 0

    def snapshot(self, total_cached_entries: int) -> Dict[str, Union[int, float]]:
        return {
            'hitRatio': self.hit_ratio,
            'totalCachedEntries': total_cached_entries,
            'networkRequestCount': self.network_requests,
        }


class InstrumentedCacheStorage:
    """
    Counts hits and misses of every lookup made through it.
    """

    def __init__(self, storage: CacheStorage, metrics: CacheMetrics) -> None:
        self.__storage = storage
        self.__metrics = metrics

    def match(self, request: Request, bucket_name: Optional[str] = None) -> Optional[Response]:
        response = self.__storage.match(request, bucket_name)
        if response is None:
            self.__metrics.record_miss()
            logger.info('Cache miss for {}'.format(request.uri))
        else:
            self.__metrics.record_hit()
            logger.info('Cache hit for {}'.format(request.uri))
        return response

    def put(self, bucket_name: str, request: Request, response: Response) -> bool:
        return self.__storage.put(bucket_name, request, response)

    def open(self, name: str) -> Cache:
        return self.__storage.open(name)

    def has(self, name: str) -> bool:
        return self.__storage.has(name)

    def names(self) -> List[str]:
        return self.__storage.names()

    def delete(self, name: str) -> bool:
        return self.__storage.delete(name)

    def count_entries(self) -> int:
        return self.__storage.count_entries()


class InstrumentedFetcher:
    """
    Counts every live request made through it.
    """

    def __init__(self, fetcher: Fetcher, metrics: CacheMetrics) -> None:
        self.__fetcher = fetcher
        self.__metrics = metrics

    def fetch(self, request: Request) -> Response:
        self.__metrics.record_network_request()
        return self.__fetcher.fetch(request)

    def close(self):
        self.__fetcher.close()
