"""
Sorts request URLs into the kinds of resource the worker caches differently.
"""

from enum import Enum
import posixpath
from typing import Iterable
from urllib.parse import urljoin, urlsplit


class ResourceKind(Enum):
    STATIC_ASSET = 'static-asset'
    EXTERNAL_RESOURCE = 'external-resource'
    API_REQUEST = 'api-request'
    OTHER = 'other'


def _host_matches(host: str, candidates: Iterable[str]) -> bool:
    return any(host == candidate or host.endswith('.' + candidate) for candidate in candidates)


class Classifier:
    """
    A pure mapping from URL to `ResourceKind`.

    The checks run in a fixed order (static, external, API) and the first match
    wins, so every URL lands in exactly one kind.
    """

    static_extensions = frozenset({'.css', '.js', '.html'})
    api_extensions = frozenset({'.json'})

    def __init__(self,
                 origin: str,
                 static_paths: Iterable[str],
                 external_hosts: Iterable[str],
                 api_markers: Iterable[str] = ('/api/',),
                 form_hosts: Iterable[str] = ()) -> None:
        self.__origin = origin
        self.__origin_host = urlsplit(origin).hostname or ''
        self.__static_paths = frozenset(static_paths)
        self.__external_hosts = tuple(h.lower() for h in external_hosts)
        self.__api_markers = tuple(api_markers)
        self.__form_hosts = tuple(h.lower() for h in form_hosts)

    def classify(self, url: str) -> ResourceKind:
        parts = urlsplit(urljoin(self.__origin, url))
        host = (parts.hostname or '').lower()
        path = parts.path or '/'
        extension = posixpath.splitext(path)[1].lower()

        if host == self.__origin_host and path in self.__static_paths:
            return ResourceKind.STATIC_ASSET
        if extension in self.static_extensions:
            return ResourceKind.STATIC_ASSET
        if _host_matches(host, self.__external_hosts):
            return ResourceKind.EXTERNAL_RESOURCE
        if any(marker in path for marker in self.__api_markers):
            return ResourceKind.API_REQUEST
        if extension in self.api_extensions:
            return ResourceKind.API_REQUEST
        if _host_matches(host, self.__form_hosts):
            return ResourceKind.API_REQUEST
        return ResourceKind.OTHER
