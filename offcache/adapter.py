from io import BytesIO
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from requests.utils import get_encoding_from_headers

from .cache import CacheStorage
from .fetch import Fetcher, FetchError
from .model import DOCUMENT, IMAGE, Request
from .notify import Notifier
from .registration import Registration
from .retry import FileRequestStore, RetryQueue
from .settings import Settings
from .worker import ServiceWorker


def destination_for(headers) -> str:
    """
    Guess what a response will be used for from the request's Accept header.
    """
    accept = CaseInsensitiveDict(headers).get('Accept', '')
    media_types = [part.split(';')[0].strip().lower() for part in accept.split(',')]
    if 'text/html' in media_types:
        return DOCUMENT
    if any(media_type.startswith('image/') for media_type in media_types):
        return IMAGE
    return ''


def _body_bytes(body) -> Optional[bytes]:
    if body is None:
        return None
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode('utf-8')
    if hasattr(body, 'read'):
        return body.read()
    return b''.join(body)


class OfflineHTTPAdapter(HTTPAdapter):
    """
    Routes every request of a `requests.Session` through a registration, so the
    session is served by the active worker's caching strategies.
    """

    def __init__(self, registration: Registration, *args, owns_registration: bool = False, **kw) -> None:
        super().__init__(*args, **kw)
        self.registration = registration
        self.owns_registration = owns_registration

    def send(self, requests_request: requests.PreparedRequest, **kw) -> requests.Response:
        request = Request(method=requests_request.method,
                          uri=requests_request.url,
                          headers=dict(requests_request.headers),
                          body=_body_bytes(requests_request.body),
                          destination=destination_for(requests_request.headers))

        try:
            response = self.registration.fetch(request)
        except FetchError as e:
            raise requests.ConnectionError(e, request=requests_request) from e

        result = requests.Response()
        result.status_code = response.status
        result.reason = response.reason
        result.headers = CaseInsensitiveDict(response.headers)
        result.encoding = get_encoding_from_headers(result.headers)
        result.raw = BytesIO(response.body)
        result.url = request.uri
        result.request = requests_request
        result.connection = self
        return result

    def close(self):
        if self.owns_registration:
            self.registration.close()
        super().close()


def create_worker(settings: Settings, notifier: Optional[Notifier] = None) -> ServiceWorker:
    storage = CacheStorage(settings.cache_directory, settings.cache_directory_levels)
    queue = RetryQueue(FileRequestStore(settings.queue_directory), settings.max_replay_attempts)
    return ServiceWorker(settings,
                         storage,
                         queue,
                         fetcher=Fetcher(timeout=settings.fetch_timeout),
                         notifier=notifier)


def create(settings: Optional[Settings] = None, notifier: Optional[Notifier] = None) -> OfflineHTTPAdapter:
    """
    Build a registration, install and activate a worker for `settings`, and
    return an adapter to mount on a session.

    @throws InstallError
      If the install manifest could not be fetched.
    """
    settings = settings if settings is not None else Settings()
    registration = Registration(Fetcher(timeout=settings.fetch_timeout))
    registration.register(create_worker(settings, notifier))
    return OfflineHTTPAdapter(registration, owns_registration=True)
