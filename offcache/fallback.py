"""
Responses served when there is neither a cached copy nor a network.
"""

import logging
from typing import Callable, Optional

from .cache import CacheStorageError
from .model import DOCUMENT, IMAGE, Request, Response


logger = logging.getLogger(__name__)


ROOT_PAGES = ('/index.html', '/')

OFFLINE_IMAGE = (
    '<svg xmlns="http://www.w3.org/2000/svg" width="300" height="200">'
    '<rect width="100%" height="100%" fill="#ddd"/>'
    '<text x="50%" y="50%" text-anchor="middle" dy=".3em" font-family="Arial" font-size="14" fill="#999">'
    'Image offline'
    '</text>'
    '</svg>'
)

OFFLINE_PAGE = (
    '<!DOCTYPE html>'
    '<html><head><meta charset="utf-8"><title>Offline</title></head>'
    '<body><h1>You are offline</h1><p>This page will be available again once you reconnect.</p></body>'
    '</html>'
)


def offline_fallback(request: Request, match_page: Callable[[str], Optional[Response]]) -> Response:
    """
    Build the response for a request that could be served neither from the
    cache nor from the network.

    @param request
      The request that failed.
    @param match_page
      Looks a first-party path up in the cache. Used to serve the root page in
      place of an unavailable document.
    """
    if request.destination == DOCUMENT:
        for path in ROOT_PAGES:
            try:
                page = match_page(path)
            except CacheStorageError:
                logger.warning('Could not read the cached root page {}'.format(path), exc_info=True)
                page = None
            if page is not None:
                logger.info('Serving cached {} in place of {}'.format(path, request.uri))
                return page
        return Response(status=503,
                        reason='Service Unavailable',
                        headers={'Content-Type': 'text/html; charset=utf-8'},
                        body=OFFLINE_PAGE.encode('utf-8'))

    if request.destination == IMAGE:
        return Response(status=200,
                        reason='OK',
                        headers={'Content-Type': 'image/svg+xml'},
                        body=OFFLINE_IMAGE.encode('utf-8'))

    return Response(status=503,
                    reason='Service Unavailable',
                    headers={'Content-Type': 'text/plain; charset=utf-8'},
                    body=b'Offline')
