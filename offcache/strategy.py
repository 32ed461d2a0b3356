"""
The caching strategies a worker applies to intercepted GET requests.

Each strategy calls the cache and the network through the instrumented
wrappers it is given. Cache storage errors are logged and the strategy carries
on as if the cache were empty or the write never happened. Network errors end
in the offline fallback. A strategy always produces a response.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import urljoin

from .cache import CacheStorageError
from .classify import ResourceKind
from .fallback import offline_fallback
from .fetch import FetchError
from .metrics import InstrumentedCacheStorage, InstrumentedFetcher
from .model import Request, Response


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BucketNames:
    static: str
    dynamic: str

    def __iter__(self):
        return iter((self.static, self.dynamic))


class Strategy(ABC):
    def __init__(self,
                 storage: InstrumentedCacheStorage,
                 fetcher: InstrumentedFetcher,
                 buckets: BucketNames,
                 origin: str,
                 background: Callable[[Callable[[], Any]], None]) -> None:
        """
        @param background
          Schedules work that must not delay the response, e.g., the worker's
          `wait_until`.
        """
        self.storage = storage
        self.fetcher = fetcher
        self.buckets = buckets
        self.origin = origin
        self.background = background

    @abstractmethod
    def handle(self, request: Request) -> Response:
        pass

    def _match(self, request: Request, bucket_name: Optional[str] = None) -> Optional[Response]:
        try:
            return self.storage.match(request, bucket_name)
        except CacheStorageError:
            logger.warning('Cache lookup for {} failed. Continuing without the cache.'.format(request.uri),
                           exc_info=True)
            return None

    def _put(self, bucket_name: str, request: Request, response: Response) -> None:
        try:
            self.storage.put(bucket_name, request, response)
        except CacheStorageError:
            logger.warning('Could not cache {} in {}. Passing the response through uncached.'.format(
                request.uri, bucket_name), exc_info=True)

    def _match_page(self, path: str) -> Optional[Response]:
        return self._match(Request(method='GET', uri=urljoin(self.origin, path)))

    def _fallback(self, request: Request) -> Response:
        return offline_fallback(request, self._match_page)


class CacheFirst(Strategy):
    """
    Serve from the cache; only go to the network on a miss. Hits are never
    revalidated.
    """

    def handle(self, request: Request) -> Response:
        cached = self._match(request)
        if cached is not None:
            return cached

        try:
            response = self.fetcher.fetch(request)
        except FetchError:
            logger.warning('Cache first strategy failed for {}'.format(request.uri), exc_info=True)
            return self._fallback(request)

        if response.ok:
            self._put(self.buckets.static, request, response)
        return response


class NetworkFirst(Strategy):
    """
    Always try the network; the cache is the last known good copy.
    """

    def handle(self, request: Request) -> Response:
        try:
            response = self.fetcher.fetch(request)
        except FetchError:
            logger.warning('Network first strategy failed for {}'.format(request.uri), exc_info=True)
            response = None

        if response is not None and response.ok:
            self._put(self.buckets.dynamic, request, response)
            return response

        if response is not None:
            logger.warning('Network first strategy got {} for {}'.format(response.status, request.uri))

        cached = self._match(request)
        if cached is not None:
            return cached
        return self._fallback(request)


class StaleWhileRevalidate(Strategy):
    """
    Serve the cached copy at once and refresh it in the background. Without a
    cached copy, wait for the network.
    """

    def handle(self, request: Request) -> Response:
        cached = self._match(request, self.buckets.dynamic)
        if cached is not None:
            self.background(lambda: self.revalidate(request))
            return cached

        response = self.revalidate(request)
        if response is None:
            return self._fallback(request)
        return response

    def revalidate(self, request: Request) -> Optional[Response]:
        try:
            response = self.fetcher.fetch(request)
        except FetchError:
            logger.warning('Stale while revalidate failed for {}'.format(request.uri), exc_info=True)
            return None

        if response.ok:
            self._put(self.buckets.dynamic, request, response)
        return response


def strategies_by_kind(storage: InstrumentedCacheStorage,
                       fetcher: InstrumentedFetcher,
                       buckets: BucketNames,
                       origin: str,
                       background: Callable[[Callable[[], Any]], None]) -> Dict[ResourceKind, Strategy]:
    cache_first = CacheFirst(storage, fetcher, buckets, origin, background)
    return {
        ResourceKind.STATIC_ASSET: cache_first,
        ResourceKind.EXTERNAL_RESOURCE: StaleWhileRevalidate(storage, fetcher, buckets, origin, background),
        ResourceKind.API_REQUEST: NetworkFirst(storage, fetcher, buckets, origin, background),
        ResourceKind.OTHER: cache_first,
    }
