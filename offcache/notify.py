"""
The notification boundary of the worker: push payloads in, platform
notifications out.
"""

from abc import ABC, abstractmethod
import json
import logging
import time
from typing import Any, Mapping, Optional, Union

from .model import Notification, NotificationAction


logger = logging.getLogger(__name__)


OPEN_ACTION = 'explore'
DISMISS_ACTION = 'close'


class Notifier(ABC):
    """
    Whatever displays notifications and windows on behalf of the worker.
    """

    @abstractmethod
    def show(self, notification: Notification) -> None:
        pass

    @abstractmethod
    def close(self, notification: Notification) -> None:
        pass

    @abstractmethod
    def open_window(self, url: str) -> None:
        pass


class LoggingNotifier(Notifier):
    def show(self, notification: Notification) -> None:
        logger.info('Notification: {}: {}'.format(notification.title, notification.body))

    def close(self, notification: Notification) -> None:
        logger.info('Closed notification: {}'.format(notification.title))

    def open_window(self, url: str) -> None:
        logger.info('Opening window at {}'.format(url))


def parse_payload(data: Union[bytes, str, None]) -> Optional[Mapping[str, Any]]:
    """
    Decode a push payload. Returns `None` for an empty payload.

    @throws ValueError
      If the payload is not a JSON object.
    """
    if not data:
        return None
    if isinstance(data, bytes):
        data = data.decode('utf-8')
    payload = json.loads(data)
    if not isinstance(payload, dict):
        raise ValueError('Push payload must be a JSON object')
    return payload


def build_notification(payload: Mapping[str, Any], now: Optional[float] = None) -> Notification:
    return Notification(
        title=payload.get('title', ''),
        body=payload.get('body', ''),
        icon='/icon-192x192.png',
        badge='/badge-72x72.png',
        vibrate=[100, 50, 100],
        data={
            'dateOfArrival': int((now if now is not None else time.time()) * 1000),
            'primaryKey': payload.get('primaryKey'),
        },
        actions=[
            NotificationAction(action=OPEN_ACTION, title='View', icon='/icon-check.png'),
            NotificationAction(action=DISMISS_ACTION, title='Close', icon='/icon-x.png'),
        ],
    )
