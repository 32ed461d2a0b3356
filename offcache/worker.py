"""
The worker: one cache version with its lifecycle and its event handlers.

Events are plain message objects handed to `ServiceWorker.dispatch`, which runs
the single handler registered for the event type. The lifecycle is an explicit
state machine; illegal moves raise `InvalidStateTransition`.
"""

from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union
from urllib.parse import urljoin

from .cache import CacheStorage, CacheStorageError
from .classify import Classifier
from .fetch import Fetcher, FetchError
from .metrics import CacheMetrics, InstrumentedCacheStorage, InstrumentedFetcher
from .model import Notification, Request, Response
from .notify import OPEN_ACTION, LoggingNotifier, Notifier, build_notification, parse_payload
from .retry import RetryQueue
from .settings import Settings
from .strategy import BucketNames, strategies_by_kind


logger = logging.getLogger(__name__)


GET_PERFORMANCE_METRICS = 'GET_PERFORMANCE_METRICS'


class WorkerState(Enum):
    PARSED = 'parsed'
    INSTALLING = 'installing'
    WAITING = 'waiting'
    ACTIVE = 'active'
    SUPERSEDED = 'superseded'
    REDUNDANT = 'redundant'


_TRANSITIONS = {
    WorkerState.PARSED: {WorkerState.INSTALLING},
    WorkerState.INSTALLING: {WorkerState.WAITING, WorkerState.REDUNDANT},
    WorkerState.WAITING: {WorkerState.ACTIVE, WorkerState.REDUNDANT},
    WorkerState.ACTIVE: {WorkerState.SUPERSEDED, WorkerState.REDUNDANT},
    # A superseded worker goes back to active if its successor fails to install.
    WorkerState.SUPERSEDED: {WorkerState.ACTIVE, WorkerState.REDUNDANT},
    WorkerState.REDUNDANT: set(),
}

_SERVING_STATES = {WorkerState.ACTIVE, WorkerState.SUPERSEDED}


class InstallError(Exception):
    """Raised when the install manifest could not be cached."""


class InvalidStateTransition(Exception):
    def __init__(self, current: WorkerState, target: WorkerState) -> None:
        super().__init__('Cannot move from {} to {}'.format(current.value, target.value))
        self.current = current
        self.target = target


class WorkerNotActive(Exception):
    """Raised when a worker that is not serving is asked to handle a fetch."""


@dataclass
class InstallEvent:
    pass


@dataclass
class ActivateEvent:
    pass


@dataclass
class FetchEvent:
    request: Request


@dataclass
class SyncEvent:
    tag: str


@dataclass
class PeriodicSyncEvent:
    tag: str


@dataclass
class PushEvent:
    data: Union[bytes, str, None]


@dataclass
class NotificationClickEvent:
    notification: Notification
    action: str = ''


@dataclass
class MessageEvent:
    data: Mapping[str, Any]
    reply: Optional[Callable[[Dict[str, Any]], None]] = None


class ServiceWorker:
    def __init__(self,
                 settings: Settings,
                 storage: CacheStorage,
                 retry_queue: RetryQueue,
                 fetcher: Optional[Fetcher] = None,
                 notifier: Optional[Notifier] = None) -> None:
        self.settings = settings
        self.version = settings.cache_version
        self.metrics = CacheMetrics()
        self.storage = InstrumentedCacheStorage(storage, self.metrics)
        self.fetcher = InstrumentedFetcher(fetcher if fetcher is not None else Fetcher(timeout=settings.fetch_timeout),
                                           self.metrics)
        self.retry_queue = retry_queue
        self.notifier = notifier if notifier is not None else LoggingNotifier()
        self.buckets = BucketNames(static=settings.static_cache_name, dynamic=settings.dynamic_cache_name)
        self.classifier = Classifier(origin=settings.origin,
                                     static_paths=settings.static_assets,
                                     external_hosts=settings.external_hosts,
                                     api_markers=settings.api_markers,
                                     form_hosts=settings.form_hosts)

        self.__state = WorkerState.PARSED
        self.__state_lock = threading.Lock()
        self.__executor = ThreadPoolExecutor(max_workers=settings.background_workers,
                                             thread_name_prefix='offcache-{}'.format(self.version))
        self.__background: Set[Future] = set()
        self.__background_lock = threading.Lock()

        self.__strategies = strategies_by_kind(self.storage, self.fetcher, self.buckets, settings.origin,
                                               self.wait_until)
        self.__handlers = {
            InstallEvent: self._on_install,
            ActivateEvent: self._on_activate,
            FetchEvent: self._on_fetch,
            SyncEvent: self._on_sync,
            PeriodicSyncEvent: self._on_periodic_sync,
            PushEvent: self._on_push,
            NotificationClickEvent: self._on_notification_click,
            MessageEvent: self._on_message,
        }
        logger.info('Service worker {} loaded'.format(self.version))

    # region Lifecycle

    @property
    def state(self) -> WorkerState:
        return self.__state

    def transition(self, target: WorkerState) -> None:
        with self.__state_lock:
            current = self.__state
            if target not in _TRANSITIONS[current]:
                raise InvalidStateTransition(current, target)
            self.__state = target
        logger.info('Service worker {}: {} -> {}'.format(self.version, current.value, target.value))

    def dispatch(self, event):
        try:
            handler = self.__handlers[type(event)]
        except KeyError:
            raise TypeError('No handler for {}'.format(type(event).__name__))
        return handler(event)

    def _install_requests(self) -> List[Tuple[str, Request]]:
        requests = [(self.buckets.static, Request(method='GET', uri=urljoin(self.settings.origin, path)))
                    for path in self.settings.static_assets]
        requests += [(self.buckets.dynamic, Request(method='GET', uri=uri))
                     for uri in self.settings.external_resources]
        return requests

    def _on_install(self, event: InstallEvent) -> None:
        self.transition(WorkerState.INSTALLING)
        logger.info('Service worker {} installing...'.format(self.version))

        # Everything is fetched before anything is stored, so an unreachable
        # asset leaves no partial buckets behind.
        fetched = []
        try:
            for bucket_name, request in self._install_requests():
                response = self.fetcher.fetch(request)
                if not response.ok:
                    raise InstallError('{} answered {}'.format(request.uri, response.status))
                fetched.append((bucket_name, request, response))

            for bucket_name in self.buckets:
                self.storage.open(bucket_name)
            for bucket_name, request, response in fetched:
                self.storage.put(bucket_name, request, response)
        except (FetchError, CacheStorageError, InstallError) as e:
            logger.error('Service worker {} failed to install: {}'.format(self.version, e))
            self.transition(WorkerState.REDUNDANT)
            self.terminate()
            if isinstance(e, InstallError):
                raise
            raise InstallError(str(e)) from e

        self.transition(WorkerState.WAITING)

    def _on_activate(self, event: ActivateEvent) -> None:
        # Only a waiting worker may clear other versions' buckets. The state is
        # checked and changed under one lock so nothing else can move it in between.
        with self.__state_lock:
            current = self.__state
            if current != WorkerState.WAITING:
                raise InvalidStateTransition(current, WorkerState.ACTIVE)

            logger.info('Service worker {} activating...'.format(self.version))
            keep = set(self.buckets)
            for name in self.storage.names():
                if name not in keep:
                    logger.info('Deleting old cache: {}'.format(name))
                    self.storage.delete(name)
            self.__state = WorkerState.ACTIVE
        logger.info('Service worker {}: {} -> {}'.format(self.version, current.value, WorkerState.ACTIVE.value))

    # endregion

    # region Background work

    def wait_until(self, work: Callable[[], Any]) -> Optional[Future]:
        """
        Run `work` in the background. The caller does not wait for it.
        """
        try:
            future = self.__executor.submit(work)
        except RuntimeError:
            logger.info('Service worker {} is shut down. Dropping background work.'.format(self.version))
            return None
        with self.__background_lock:
            self.__background.add(future)
        future.add_done_callback(self._background_done)
        return future

    def _background_done(self, future: Future) -> None:
        with self.__background_lock:
            self.__background.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error('Background work failed', exc_info=future.exception())

    def drain(self, timeout: Optional[float] = None) -> None:
        """
        Wait for background work started so far.
        """
        with self.__background_lock:
            pending = list(self.__background)
        wait(pending, timeout=timeout)

    def terminate(self) -> None:
        """
        Stop at once. Queued background work is cancelled; cache writes are
        atomic, so nothing needs cleaning up.
        """
        self.__executor.shutdown(wait=False, cancel_futures=True)

    def close(self) -> None:
        self.drain()
        self.__executor.shutdown(wait=True)
        self.fetcher.close()

    # endregion

    # region Event handlers

    def _on_fetch(self, event: FetchEvent) -> Response:
        request = event.request
        if request.method != 'GET':
            # Not intercepted: the request goes to the network as it is.
            return self.fetcher.fetch(request)

        if self.__state not in _SERVING_STATES:
            raise WorkerNotActive('Service worker {} is {}'.format(self.version, self.__state.value))

        kind = self.classifier.classify(request.uri)
        logger.info('{} classified as {}'.format(request.uri, kind.value))
        return self.__strategies[kind].handle(request)

    def _on_sync(self, event: SyncEvent) -> bool:
        """
        @return
          True when the sync is done, False when it should be retried later.
        """
        if event.tag != self.settings.sync_tag:
            logger.info('Ignoring sync for unknown tag {}'.format(event.tag))
            return True

        try:
            result = self.retry_queue.replay(self.fetcher)
        except OSError:
            logger.error('Background sync failed', exc_info=True)
            return False
        logger.info('Background sync: {} replayed, {} failed, {} dropped'.format(
            len(result.replayed), len(result.failed), len(result.dropped)))
        return result.complete

    def _on_periodic_sync(self, event: PeriodicSyncEvent) -> int:
        if event.tag != self.settings.cache_update_tag:
            logger.info('Ignoring periodic sync for unknown tag {}'.format(event.tag))
            return 0
        return self.update_cache()

    def update_cache(self) -> int:
        """
        Refresh every entry of the dynamic bucket from the network.

        @return
          The number of refreshed entries.
        """
        try:
            requests = self.storage.open(self.buckets.dynamic).keys()
        except CacheStorageError:
            logger.error('Cache update failed', exc_info=True)
            return 0

        refreshed = 0
        for request in requests:
            try:
                response = self.fetcher.fetch(request)
                if response.ok:
                    self.storage.put(self.buckets.dynamic, request, response)
                    refreshed += 1
            except (FetchError, CacheStorageError):
                logger.warning('Failed to update cache for: {}'.format(request.uri), exc_info=True)
        return refreshed

    def _on_push(self, event: PushEvent) -> Optional[Notification]:
        try:
            payload = parse_payload(event.data)
        except ValueError:
            logger.warning('Ignoring push with an unreadable payload', exc_info=True)
            return None
        if payload is None:
            return None

        notification = build_notification(payload)
        self.notifier.show(notification)
        return notification

    def _on_notification_click(self, event: NotificationClickEvent) -> None:
        self.notifier.close(event.notification)
        if event.action == OPEN_ACTION:
            self.notifier.open_window(urljoin(self.settings.origin, '/'))

    def _on_message(self, event: MessageEvent) -> Optional[Dict[str, Any]]:
        if not event.data or event.data.get('type') != GET_PERFORMANCE_METRICS:
            logger.info('Ignoring message {}'.format(event.data))
            return None

        try:
            total_cached_entries = self.storage.count_entries()
        except CacheStorageError:
            logger.error('Failed to get cache size', exc_info=True)
            total_cached_entries = 0
        metrics = self.metrics.snapshot(total_cached_entries)
        if event.reply is not None:
            event.reply(metrics)
        return metrics

    # endregion
