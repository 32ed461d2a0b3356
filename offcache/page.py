"""
The page side of the worker contract.

A page registers worker versions, prompts for a reload when a new version is
waiting, and queues form submissions that fail for lack of connectivity so the
worker can replay them on the next sync.
"""

import logging
from typing import List, Mapping, Optional, Tuple
from urllib.parse import urlencode

import requests

from .adapter import OfflineHTTPAdapter
from .model import PendingRequest
from .registration import Client, Registration
from .retry import RetryQueue
from .worker import InstallError, ServiceWorker


logger = logging.getLogger(__name__)


UPDATE_AVAILABLE_MESSAGE = 'A new version is available. Refresh to update.'
QUEUED_MESSAGE = "You're offline. Your message will be sent when you reconnect."
SENT_MESSAGE = "Message sent successfully! I'll get back to you soon."


class PageClient:
    def __init__(self,
                 registration: Registration,
                 retry_queue: RetryQueue,
                 sync_tag: str = 'contact-form') -> None:
        self.registration = registration
        self.retry_queue = retry_queue
        self.sync_tag = sync_tag
        self.client = registration.add_client(Client())
        self.client.add_update_listener(self._on_update_available)
        self.update_available = False
        self.notices: List[Tuple[str, str]] = []

        self.session = requests.Session()
        adapter = OfflineHTTPAdapter(registration)
        self.session.mount('http://', adapter)
        self.session.mount('https://', adapter)

    def register(self, worker: ServiceWorker) -> Optional[ServiceWorker]:
        try:
            registered = self.registration.register(worker)
        except InstallError:
            logger.warning('ServiceWorker registration failed', exc_info=True)
            return None
        logger.info('ServiceWorker registered successfully')
        return registered

    def _on_update_available(self, worker: ServiceWorker) -> None:
        if self.client.controller is None:
            return
        self.update_available = True
        self.show_notice(UPDATE_AVAILABLE_MESSAGE, 'info')

    def show_notice(self, message: str, kind: str = 'info') -> None:
        logger.info('[{}] {}'.format(kind, message))
        self.notices.append((message, kind))

    def submit(self, url: str, fields: Mapping[str, str], method: str = 'POST') -> Optional[requests.Response]:
        """
        Submit a form. When the network is unreachable the submission is queued
        for background sync and `None` is returned.
        """
        body = urlencode(fields)
        headers = {'Content-Type': 'application/x-www-form-urlencoded'}
        try:
            response = self.session.request(method, url, data=body, headers=headers)
        except requests.ConnectionError:
            pending = self.retry_queue.enqueue(PendingRequest(url=url, method=method, headers=headers, body=body))
            self.registration.sync.register(self.sync_tag)
            logger.info('Submission to {} queued as {}'.format(url, pending.id))
            self.show_notice(QUEUED_MESSAGE, 'info')
            return None

        if response.ok:
            self.show_notice(SENT_MESSAGE, 'success')
        else:
            self.show_notice('Sending failed ({}). Please try again.'.format(response.status_code), 'error')
        return response

    def close(self) -> None:
        self.registration.remove_client(self.client)
        self.session.close()
