"""
Owns the worker versions of one site and the pages they control.

A registration holds at most one installing, one waiting and one active worker.
It moves them through their lifecycle, forwards fetches to the active one, and
fires deferred syncs when the network is back.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Set
import uuid

from .fetch import Fetcher
from .model import Notification, Request, Response
from .worker import (
    ActivateEvent,
    FetchEvent,
    InstallEvent,
    InstallError,
    MessageEvent,
    NotificationClickEvent,
    PeriodicSyncEvent,
    PushEvent,
    ServiceWorker,
    SyncEvent,
    WorkerState,
)


logger = logging.getLogger(__name__)


class Client:
    """
    A page. It is controlled by the active worker once that worker claims it.
    """

    def __init__(self, id: Optional[str] = None) -> None:
        self.id = id if id is not None else uuid.uuid4().hex
        self.controller: Optional[ServiceWorker] = None
        self.__update_listeners: List[Callable[[ServiceWorker], None]] = []

    def add_update_listener(self, listener: Callable[[ServiceWorker], None]) -> None:
        self.__update_listeners.append(listener)

    def notify_update_available(self, worker: ServiceWorker) -> None:
        for listener in self.__update_listeners:
            listener(worker)


class SyncManager:
    """
    The deferred-sync tags waiting for connectivity.
    """

    def __init__(self) -> None:
        self.__tags: Set[str] = set()
        self.__lock = threading.Lock()

    def register(self, tag: str) -> None:
        with self.__lock:
            self.__tags.add(tag)
        logger.info('Registered sync tag {}'.format(tag))

    def unregister(self, tag: str) -> None:
        with self.__lock:
            self.__tags.discard(tag)

    def get_tags(self) -> List[str]:
        with self.__lock:
            return sorted(self.__tags)


class Registration:
    def __init__(self, fetcher: Optional[Fetcher] = None) -> None:
        """
        @param fetcher
          Used for requests made while no worker is active.
        """
        self.installing: Optional[ServiceWorker] = None
        self.waiting: Optional[ServiceWorker] = None
        self.active: Optional[ServiceWorker] = None
        self.sync = SyncManager()
        self.__fetcher = fetcher if fetcher is not None else Fetcher()
        self.__clients: List[Client] = []
        self.__lock = threading.RLock()

    @property
    def clients(self) -> List[Client]:
        return list(self.__clients)

    def add_client(self, client: Client) -> Client:
        with self.__lock:
            self.__clients.append(client)
            client.controller = self.active
        return client

    def remove_client(self, client: Client) -> None:
        with self.__lock:
            if client in self.__clients:
                self.__clients.remove(client)

    def register(self, worker: ServiceWorker) -> ServiceWorker:
        """
        Install `worker`. It activates right away when nothing is active or
        when it skips waiting; otherwise it waits and the clients are told an
        update is available.

        @throws InstallError
          If the worker could not install. The active worker keeps serving.
        """
        with self.__lock:
            previous = self.active
            self.installing = worker
            if previous is not None and previous.state == WorkerState.ACTIVE:
                previous.transition(WorkerState.SUPERSEDED)

            try:
                worker.dispatch(InstallEvent())
            except InstallError:
                self.installing = None
                if (previous is not None and previous.state == WorkerState.SUPERSEDED
                        and self.waiting is None):
                    previous.transition(WorkerState.ACTIVE)
                raise
            self.installing = None

            if self.waiting is not None:
                logger.info('Service worker {} replaced while waiting'.format(self.waiting.version))
                self.waiting.transition(WorkerState.REDUNDANT)
                self.waiting.close()
            self.waiting = worker

            if previous is None or worker.settings.skip_waiting:
                self.activate_waiting()
            else:
                for client in self.__clients:
                    client.notify_update_available(worker)
            return worker

    def activate_waiting(self) -> Optional[ServiceWorker]:
        """
        Promote the waiting worker, retire the old one and claim every client.
        """
        with self.__lock:
            worker = self.waiting
            if worker is None:
                return None

            # The old worker's background refreshes write into its own buckets,
            # so they have to finish before the new worker deletes them.
            previous = self.active
            if previous is not None:
                previous.transition(WorkerState.REDUNDANT)
                previous.close()

            self.active = None
            worker.dispatch(ActivateEvent())
            self.waiting = None
            self.active = worker

            self.claim()
            return worker

    def claim(self) -> None:
        with self.__lock:
            for client in self.__clients:
                client.controller = self.active

    def fetch(self, request: Request) -> Response:
        worker = self.active
        if worker is None:
            return self.__fetcher.fetch(request)
        return worker.dispatch(FetchEvent(request))

    def fire_sync(self) -> Dict[str, bool]:
        """
        Run a sync for every registered tag, e.g., when connectivity is
        restored. Tags whose sync completes are unregistered; the others stay
        for the next opportunity.
        """
        worker = self.active
        if worker is None:
            return {}

        results = {}
        for tag in self.sync.get_tags():
            complete = worker.dispatch(SyncEvent(tag))
            results[tag] = complete
            if complete:
                self.sync.unregister(tag)
        return results

    def fire_periodic_sync(self, tag: str) -> int:
        if self.active is None:
            return 0
        return self.active.dispatch(PeriodicSyncEvent(tag))

    def push(self, data) -> Optional[Notification]:
        if self.active is None:
            return None
        return self.active.dispatch(PushEvent(data))

    def click_notification(self, notification: Notification, action: str = '') -> None:
        if self.active is not None:
            self.active.dispatch(NotificationClickEvent(notification, action))

    def post_message(self, data: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Send a message to the active worker and return its reply, if any.
        """
        if self.active is None:
            return None
        replies = []
        self.active.dispatch(MessageEvent(data, reply=replies.append))
        return replies[0] if replies else None

    def close(self) -> None:
        for worker in (self.installing, self.waiting, self.active):
            if worker is not None:
                worker.close()
        self.__fetcher.close()
