import logging
from typing import Optional

import requests

from .model import Request, Response


logger = logging.getLogger(__name__)


_DECODED_HEADERS = {'content-encoding', 'content-length', 'transfer-encoding'}


class FetchError(Exception):
    """Raised when a request could not reach the network."""

    def __init__(self, request: Request) -> None:
        super().__init__('{} {} failed'.format(request.method, request.uri))
        self.request = request


class Fetcher:
    """
    Performs live requests with a `requests.Session`.

    Any response the server sends back, including error statuses, is returned.
    Only failures to get a response at all raise `FetchError`.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: Optional[float] = None) -> None:
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    def fetch(self, request: Request) -> Response:
        try:
            requests_response = self.session.request(request.method,
                                                     request.uri,
                                                     headers=dict(request.headers),
                                                     data=request.body,
                                                     timeout=self.timeout,
                                                     allow_redirects=True)
        except requests.RequestException as e:
            logger.info('{} {} did not reach the network: {}'.format(request.method, request.uri, e))
            raise FetchError(request) from e

        # The body is already decoded, so the transfer headers no longer describe it.
        headers = {key: value for key, value in requests_response.headers.items()
                   if key.lower() not in _DECODED_HEADERS}
        return Response(status=requests_response.status_code,
                        reason=requests_response.reason or '',
                        headers=headers,
                        body=requests_response.content)

    def close(self):
        self.session.close()
