"""
A durable queue of mutating requests that failed for lack of connectivity, and
the replay that drains it when the network comes back.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
import re
from typing import List, Optional

from .fetch import FetchError
from .model import PendingRequest
from .util import DataclassJSONDecoder, DataclassJSONEncoder, atomic_write


logger = logging.getLogger(__name__)


class RequestStore(ABC):
    """
    A transactional key-value store of pending requests, keyed by id.
    """

    @abstractmethod
    def get_all(self) -> List[PendingRequest]:
        """
        All stored requests, oldest first.
        """

    @abstractmethod
    def put(self, pending: PendingRequest) -> None:
        pass

    @abstractmethod
    def delete(self, id: str) -> None:
        """
        Delete the request with `id` and anything recorded about it. Deleting a
        missing id is not an error.
        """

    @abstractmethod
    def attempts(self, id: str) -> int:
        """
        The number of failed replays recorded for `id`.
        """

    @abstractmethod
    def record_attempt(self, id: str) -> int:
        """
        Record one more failed replay for `id` and return the new count.
        """


class FileRequestStore(RequestStore):
    """
    Keeps each pending request as a JSON document named after its id.

    Failed attempts are counted in a separate file beside the document so that
    the stored request itself is never rewritten after it is queued.
    """

    _id_pattern = re.compile(r'^[A-Za-z0-9_-]+$')

    def __init__(self, directory: Path) -> None:
        self.__directory = Path(directory)

    def _path(self, id: str, suffix: str) -> Path:
        if not self._id_pattern.match(id):
            raise ValueError('Invalid request id: {!r}'.format(id))
        return self.__directory / (id + suffix)

    def get_all(self) -> List[PendingRequest]:
        if not self.__directory.is_dir():
            return []

        stamped = []
        for path in self.__directory.glob('*.json'):
            try:
                stamped.append((path.stat().st_mtime_ns, path.name, path))
            except FileNotFoundError:
                continue

        result = []
        for _, _, path in sorted(stamped):
            try:
                result.append(json.loads(path.read_text('utf-8'),
                                         cls=DataclassJSONDecoder,
                                         class_type=PendingRequest))
            except FileNotFoundError:
                # Deleted by a concurrent replay.
                continue
            except (TypeError, ValueError):
                logger.error('Skipping unreadable pending request {}'.format(path))
        return result

    def put(self, pending: PendingRequest) -> None:
        data = json.dumps(pending, cls=DataclassJSONEncoder).encode('utf-8')
        atomic_write(self._path(pending.id, '.json'), data)

    def delete(self, id: str) -> None:
        for suffix in ('.json', '.attempts'):
            try:
                self._path(id, suffix).unlink()
            except FileNotFoundError:
                pass

    def attempts(self, id: str) -> int:
        try:
            return int(self._path(id, '.attempts').read_text('utf-8').strip() or 0)
        except FileNotFoundError:
            return 0
        except ValueError:
            logger.warning('Resetting unreadable attempt count for {}'.format(id))
            return 0

    def record_attempt(self, id: str) -> int:
        count = self.attempts(id) + 1
        atomic_write(self._path(id, '.attempts'), str(count).encode('utf-8'))
        return count


@dataclass
class ReplayResult:
    replayed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """
        True when nothing is left in the queue for a later sync.
        """
        return not self.failed


class RetryQueue:
    def __init__(self, store: RequestStore, max_attempts: Optional[int] = None) -> None:
        """
        @param max_attempts
          Failed replays after which a request is dropped. `None` keeps
          retrying forever.
        """
        if max_attempts is not None and max_attempts < 1:
            raise ValueError('max_attempts must be at least 1')
        self.store = store
        self.max_attempts = max_attempts

    def enqueue(self, pending: PendingRequest) -> PendingRequest:
        self.store.put(pending)
        logger.info('Queued {} {} as {}'.format(pending.method, pending.url, pending.id))
        return pending

    def pending(self) -> List[PendingRequest]:
        return self.store.get_all()

    def replay(self, fetcher) -> ReplayResult:
        """
        Replay every queued request once. Each request succeeds or fails on its
        own; a failure never stops the rest of the queue.
        """
        result = ReplayResult()
        for pending in self.store.get_all():
            try:
                response = fetcher.fetch(pending.to_request())
            except FetchError:
                logger.warning('Failed to sync request {}'.format(pending.id), exc_info=True)
                self._failed(pending, result)
                continue

            if response.status >= 400:
                logger.warning('Failed to sync request {}: server answered {}'.format(pending.id, response.status))
                self._failed(pending, result)
                continue

            try:
                self.store.delete(pending.id)
            except OSError:
                # Sent, but still queued: it goes again on the next sync.
                logger.error('Synced request {} but could not remove it from the queue'.format(pending.id),
                             exc_info=True)
                result.failed.append(pending.id)
                continue
            result.replayed.append(pending.id)
            logger.info('Synced request {}'.format(pending.id))
        return result

    def _failed(self, pending: PendingRequest, result: ReplayResult) -> None:
        if self.max_attempts is None:
            result.failed.append(pending.id)
            return

        try:
            attempts = self.store.record_attempt(pending.id)
            if attempts >= self.max_attempts:
                logger.error('Dropping request {} to {} after {} failed attempts'.format(
                    pending.id, pending.url, attempts))
                self.store.delete(pending.id)
                result.dropped.append(pending.id)
                return
        except OSError:
            logger.error('Could not update the queue entry for request {}'.format(pending.id), exc_info=True)
        result.failed.append(pending.id)
