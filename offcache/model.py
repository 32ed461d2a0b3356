"""
Defines the types that flow between the cache, the strategies and the worker.

These types are as simple as possible in order to most conveniently consume and
produce instances of them.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
import uuid


DOCUMENT = 'document'
IMAGE = 'image'


@dataclass
class Request:
    """
    Represents an arbitrary request.

    Only the method and the URI identify a request in the cache. The body and
    the destination are carried along for replay and for choosing an offline
    fallback.
    """

    method: str
    """
    The HTTP method of the request. E.g., "GET".
    """

    uri: str
    """
    The id of the resource being requested.
    """

    headers: Mapping[str, str] = field(default_factory=dict)
    """
    All the headers being sent with the request.
    """

    body: Optional[bytes] = field(default=None, compare=False)

    destination: str = field(default='', compare=False)
    """
    What the response will be used for: "document", "image", or empty.
    """


@dataclass
class Response:
    """
    Represents an arbitrary response, without any bells and whistles.

    The body is held in memory. Responses are immutable snapshots, so the same
    instance may be handed to the cache and to the caller.
    """

    status: int
    """
    The status code of the response. E.g., 200 or 400.
    """

    reason: str
    """
    The reason string, which relates to the status code.
    """

    headers: Mapping[str, str]
    """
    All the headers sent with the response.
    """

    body: bytes = b''

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass
class CacheEntry:
    request: Request
    response: Response


@dataclass
class PendingRequest:
    """
    A mutating request that failed for lack of connectivity and waits to be
    replayed.
    """

    url: str
    method: str = 'POST'
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_request(self) -> Request:
        return Request(method=self.method,
                       uri=self.url,
                       headers=dict(self.headers),
                       body=self.body.encode('utf-8') if self.body is not None else None)


@dataclass
class NotificationAction:
    action: str
    title: str
    icon: str


@dataclass
class Notification:
    title: str
    body: str
    icon: str
    badge: str
    vibrate: List[int]
    data: Dict[str, Any]
    actions: List[NotificationAction]
