from abc import ABC, abstractmethod
from dataclasses import dataclass
import hashlib
import json
import logging
import os
from pathlib import Path
import re
import shutil
from typing import List, Mapping, Optional

from .util import atomic_write, clamp
from .model import CacheEntry, Request, Response


logger = logging.getLogger(__name__)


class CacheStorageError(Exception):
    """
    Raised when a bucket cannot be read from or written to, e.g., because the
    disk is full or the directory is not accessible.
    """


class Cache(ABC):
    """
    An abstraction of a response cache.

    A response cache has a relatively narrow scope: to remember a response such that it can be recalled later for a
    matching request. Note that this deliberately precludes certain responsibilities such as automatic cache
    invalidation. The strategies decide when an entry is replaced.
    """

    @abstractmethod
    def get(self, request: Request) -> Optional[CacheEntry]:
        """
        Retrieve a cached response matching `request`.

        @param request
          The request to look up in the cache.
        @return
          A cached response for `request`, or `None` if there is no valid one.
        @throws CacheStorageError
          If the cache could not be read.
        """

    @abstractmethod
    def add(self, request: Request, response: Response) -> Optional[CacheEntry]:
        """
        Add a response to the cache, replacing any prior response for `request`.

        @param request
          The request for which a response should be cached.
        @param response
          The response to cache.
        @return
          A cached entry, or `None` if the cache refused to cache the response.
        @throws CacheStorageError
          If the cache could not be written.
        """

    @abstractmethod
    def delete(self, request: Request) -> None:
        """
        Delete a response from the cache.

        @param request
            A request to find in the cache. The corresponding response will be deleted.
        """

    @abstractmethod
    def keys(self) -> List[Request]:
        """
        List the requests that have a cached response.
        """

    def close(self):
        """
        Close any resources associated with the cache.
        """


class HttpAwareCache(Cache):
    """
    Augments a cache with HTTP-specific knowledge.

    - Only GET requests are cached.
    - Only sensible response statuses are cached: any 2xx, plus 300 and 301.
    - An entry matches on method and URI alone. Request headers, including
      those named by a Vary header, are kept but never compared, so a
      precached asset matches whatever headers the page sends.
    """

    def __init__(self, implementation: Cache) -> None:
        self.__impl = implementation

    def get(self, request: Request) -> Optional[CacheEntry]:
        if not self._is_cachable_method(request.method):
            logger.info('Method {} is not cachable'.format(request.method))
            return None

        entry = self.__impl.get(request)
        if entry is None:
            return None

        # region Only match response statuses that make sense to cache.
        if not self._is_cachable_status_code(entry.response.status):
            logger.info('Status code {} is not cachable'.format(entry.response.status))
            return None
        # endregion

        return entry

    def add(self, request: Request, response: Response) -> Optional[CacheEntry]:
        if not self._is_cachable_status_code(response.status):
            logger.info('Refusing to create cache entry. Status code {} is not cachable.'.format(response.status))
            return None
        if not self._is_cachable_method(request.method):
            logger.info('Refusing to create cache entry. Method {} is not cachable.'.format(request.method))
            return None

        return self.__impl.add(request, response)

    def delete(self, request: Request) -> None:
        self.__impl.delete(request)

    def keys(self) -> List[Request]:
        return self.__impl.keys()

    def close(self):
        self.__impl.close()

    def _is_cachable_status_code(self, status: int) -> bool:
        return 200 <= status < 300 or status in (300, 301,)

    def _is_cachable_method(self, method: str) -> bool:
        return method in {'GET'}


@dataclass
class FileCacheResponseModel:
    status: int
    reason: str
    headers: Mapping[str, str]
    body_path: Path


@dataclass
class FileCacheEntryModel:
    entry_path: Path
    request: Request
    response: FileCacheResponseModel


class CorruptEntry(Exception):
    def __init__(self, entry_path: Path):
        super().__init__(str(entry_path))
        self.__entry_path = entry_path

    @property
    def entry_path(self) -> Path:
        return self.__entry_path


class FileCache(Cache):
    """
    A cache bucket kept in a directory.

    Each entry is a small JSON file whose path is derived from a hash of the
    request URI. The entry points at a separate body file with a random name.
    Both files are written with a rename so that an entry is replaced
    atomically: readers see the old response or the new one.
    """

    def __init__(self, directory: Path, cache_directory_levels: int) -> None:
        """
        Initialize the file cache.

        @param directory
          The path to the root directory of the cache.
        @param cache_directory_levels
          The number of subdirectory levels to use in the cache directory. This
          will be clamped to be between 0 and 20, respectively.
        """
        self.__directory = directory
        self.__entry_directory = directory / 'entries'
        self.__body_directory = directory / 'bodies'
        self.__cache_directory_levels = clamp(cache_directory_levels, 0, 20)

    def _get_path(self, uri: str) -> Path:
        hashed = hashlib.sha256(uri.encode('utf-8')).hexdigest()
        return self._split_path(hashed)

    def _split_path(self, path: str) -> Path:
        subdirectories = (list(path[:self.__cache_directory_levels])
                          + [path[self.__cache_directory_levels:]])
        return Path(*subdirectories)

    def _entry_path(self, request: Request) -> Path:
        return self.__entry_directory / self._get_path(request.uri)

    def _read_entry_file(self, entry_path: Path) -> FileCacheEntryModel:
        """
        Read a cache entry from a file.

        @throws FileNotFoundError
            If there is no entry file at `entry_path`.
        @throws CorruptEntry
            If the entry file could not be parsed.
        """
        try:
            with open(entry_path, 'r') as f:
                entry = json.load(f)
            return FileCacheEntryModel(entry_path=entry_path,
                                       request=Request(
                                           method=entry['request']['method'],
                                           uri=entry['request']['uri'],
                                           headers=entry['request']['headers']
                                       ),
                                       response=FileCacheResponseModel(
                                           status=entry['response']['status'],
                                           reason=entry['response']['reason'],
                                           headers=entry['response']['headers'],
                                           body_path=self.__body_directory / Path(entry['response']['body'])))
        except (KeyError, TypeError, ValueError):
            raise CorruptEntry(entry_path)

    def _discard(self, entry_path: Path) -> None:
        try:
            entry_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise CacheStorageError('Could not delete {}'.format(entry_path)) from e

    def get(self, request: Request) -> Optional[CacheEntry]:
        entry_path = self._entry_path(request)
        try:
            entry_model = self._read_entry_file(entry_path)
        except CorruptEntry as e:
            logger.warning('Found a corrupt cache entry. Deleting the entry file.')
            self._discard(e.entry_path)
            return None
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheStorageError('Could not read {}'.format(entry_path)) from e

        if entry_model.request.method != request.method or entry_model.request.uri != request.uri:
            return None

        try:
            body = entry_model.response.body_path.read_bytes()
        except FileNotFoundError:
            logger.warning('The body of cache entry {} is missing. Treating it as a miss.'.format(entry_path))
            try:
                current = self._read_entry_file(entry_path)
            except (CorruptEntry, OSError):
                return None
            # The entry may have been replaced since it was read.
            if current.response.body_path == entry_model.response.body_path:
                self._discard(entry_path)
            return None
        except OSError as e:
            raise CacheStorageError('Could not read {}'.format(entry_model.response.body_path)) from e

        return CacheEntry(
            request=entry_model.request,
            response=Response(
                status=entry_model.response.status,
                reason=entry_model.response.reason,
                headers=entry_model.response.headers,
                body=body
            )
        )

    def add(self, request: Request, response: Response) -> CacheEntry:
        entry_path = self._entry_path(request)
        try:
            previous_body_path = self._read_entry_file(entry_path).response.body_path
        except (CorruptEntry, OSError):
            previous_body_path = None

        # A random body path means a replaced entry never shares a body file with the new one.
        body_path = self.__body_directory / self._split_path(os.urandom(32).hex())

        serialized = {
            'request': {
                'method': request.method,
                'uri': request.uri,
                'headers': dict(request.headers),
            },
            'response': {
                'status': response.status,
                'reason': response.reason,
                'headers': dict(response.headers),
                'body': str(body_path.relative_to(self.__body_directory))
            }
        }

        try:
            atomic_write(body_path, response.body)
            atomic_write(entry_path, json.dumps(serialized).encode('utf-8'))
        except OSError as e:
            raise CacheStorageError('Could not write cache entry {}'.format(entry_path)) from e
        logger.info('Stored {} {} in {}'.format(request.method, request.uri, self.__directory.name))

        if previous_body_path is not None and previous_body_path != body_path:
            try:
                previous_body_path.unlink()
            except OSError:
                logger.info('Previous body {} was already gone'.format(previous_body_path))

        return CacheEntry(request, response)

    def delete(self, request: Request) -> None:
        try:
            entry_model = self._read_entry_file(self._entry_path(request))
            paths_to_delete = [entry_model.entry_path, entry_model.response.body_path]
        except CorruptEntry as e:
            logger.warning('Found a corrupt cache entry. Marking only the entry file for deletion.')
            paths_to_delete = [e.entry_path]
        except FileNotFoundError:
            logger.info('No matching cache entry found. Nothing to delete.')
            return
        except OSError as e:
            raise CacheStorageError('Could not read cache entry for {}'.format(request.uri)) from e

        for path in paths_to_delete:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except Exception:
                logger.exception('Unexpected error occurred while deleting {}'.format(path))

    def keys(self) -> List[Request]:
        if not self.__entry_directory.is_dir():
            return []

        requests = []
        try:
            paths = sorted(self.__entry_directory.rglob('*'))
        except OSError as e:
            raise CacheStorageError('Could not list {}'.format(self.__entry_directory)) from e
        for path in paths:
            if not path.is_file() or path.name.startswith('.tmp-'):
                continue
            try:
                requests.append(self._read_entry_file(path).request)
            except CorruptEntry:
                logger.warning('Skipping corrupt cache entry {}'.format(path))
            except FileNotFoundError:
                # Replaced or deleted while listing.
                continue
            except OSError as e:
                raise CacheStorageError('Could not read {}'.format(path)) from e
        return requests


class CacheStorage:
    """
    The set of named buckets for one origin, kept as subdirectories of a root
    directory.
    """

    _name_pattern = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')

    def __init__(self, directory: Path, cache_directory_levels: int = 2) -> None:
        self.__directory = Path(directory)
        self.__cache_directory_levels = cache_directory_levels

    def _bucket_path(self, name: str) -> Path:
        if not self._name_pattern.match(name):
            raise ValueError('Invalid bucket name: {!r}'.format(name))
        return self.__directory / name

    def open(self, name: str) -> Cache:
        """
        Open the bucket called `name`, creating it if it does not exist.
        """
        path = self._bucket_path(name)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheStorageError('Could not create bucket {}'.format(name)) from e
        return HttpAwareCache(FileCache(path, self.__cache_directory_levels))

    def has(self, name: str) -> bool:
        return self._bucket_path(name).is_dir()

    def names(self) -> List[str]:
        if not self.__directory.is_dir():
            return []
        try:
            return sorted(path.name for path in self.__directory.iterdir() if path.is_dir())
        except OSError as e:
            raise CacheStorageError('Could not list buckets in {}'.format(self.__directory)) from e

    def delete(self, name: str) -> bool:
        path = self._bucket_path(name)
        if not path.is_dir():
            return False
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise CacheStorageError('Could not delete bucket {}'.format(name)) from e
        logger.info('Deleted bucket {}'.format(name))
        return True

    def match(self, request: Request, bucket_name: Optional[str] = None) -> Optional[Response]:
        """
        Look `request` up in one bucket, or in every bucket when `bucket_name` is `None`.
        """
        names = [bucket_name] if bucket_name is not None else self.names()
        for name in names:
            if not self.has(name):
                continue
            entry = self.open(name).get(request)
            if entry is not None:
                return entry.response
        return None

    def put(self, bucket_name: str, request: Request, response: Response) -> bool:
        return self.open(bucket_name).add(request, response) is not None

    def count_entries(self) -> int:
        return sum(len(self.open(name).keys()) for name in self.names())
