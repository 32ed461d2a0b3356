import time
from typing import Dict, List, Optional, Union

from offcache.fetch import FetchError
from offcache.model import Request, Response
from offcache.settings import Settings


ORIGIN = 'http://portfolio.test'


def response(body: bytes = b'', status: int = 200, content_type: str = 'text/plain') -> Response:
    reasons = {200: 'OK', 404: 'Not Found', 500: 'Internal Server Error', 503: 'Service Unavailable'}
    return Response(status=status,
                    reason=reasons.get(status, ''),
                    headers={'Content-Type': content_type},
                    body=body)


def get(uri: str, destination: str = '') -> Request:
    return Request(method='GET', uri=uri, headers={}, destination=destination)


class FakeFetcher:
    """
    Answers from a table of URI to response. URIs missing from the table, or
    mapped to `None`, behave like an unreachable network. `delays` makes some
    URIs slow to answer.
    """

    def __init__(self, routes: Optional[Dict[str, Union[Response, None]]] = None) -> None:
        self.routes = dict(routes or {})
        self.delays: Dict[str, float] = {}
        self.calls: List[Request] = []
        self.closed = False

    def fetch(self, request: Request) -> Response:
        self.calls.append(request)
        if request.uri in self.delays:
            time.sleep(self.delays[request.uri])
        outcome = self.routes.get(request.uri)
        if outcome is None:
            raise FetchError(request)
        return outcome

    def uris(self) -> List[str]:
        return [request.uri for request in self.calls]

    def close(self):
        self.closed = True


def make_settings(directory, **overrides) -> Settings:
    values = dict(
        origin=ORIGIN,
        cache_version='v2',
        static_assets=['/', '/index.html', '/styles.css'],
        external_resources=['https://fonts.googleapis.com/css2?family=Inter'],
        cache_directory=directory / 'caches',
        queue_directory=directory / 'requests',
        background_workers=1,
        _env_file=None,
    )
    values.update(overrides)
    return Settings(**values)


def manifest_routes(version: bytes = b'v2') -> Dict[str, Response]:
    return {
        ORIGIN + '/': response(b'<html>home ' + version + b'</html>', content_type='text/html'),
        ORIGIN + '/index.html': response(b'<html>home ' + version + b'</html>', content_type='text/html'),
        ORIGIN + '/styles.css': response(b'body {}', content_type='text/css'),
        'https://fonts.googleapis.com/css2?family=Inter': response(b'@font-face {}', content_type='text/css'),
    }
