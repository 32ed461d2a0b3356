from ddt import ddt, data, unpack
import json
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import TestCase

from offcache import util
from offcache.model import PendingRequest


@ddt
class TestClamp(TestCase):
    @data(
        (-1, 0, 3, 0),
        (0, 0, 3, 0),
        (1, 0, 3, 1),
        (2, 0, 3, 2),
        (3, 0, 3, 3),
        (4, 0, 3, 3),

        (0, -10, 10, 0),
        (-11, -10, 10, -10),
        (11, -10, 10, 10),
    )
    @unpack
    def test_clamp(self, value, min, max, expected):
        actual = util.clamp(value, min, max)
        self.assertEqual(expected, actual, 'The value should be clamped properly')


class TestAtomicWrite(TestCase):
    def test_creates_parents_and_replaces(self):
        with TemporaryDirectory() as directory:
            path = Path(directory) / 'a' / 'b' / 'file'

            util.atomic_write(path, b'first')
            util.atomic_write(path, b'second')

            self.assertEqual(b'second', path.read_bytes())
            self.assertEqual(['file'], [p.name for p in path.parent.iterdir()],
                             'No temporary files should be left behind')


class TestDataclassJSON(TestCase):
    def test_pending_request_survives_encoding(self):
        pending = PendingRequest(url='/contact', method='POST', headers={'X-A': 'b'}, body='name=x', id='abc')

        encoded = json.dumps(pending, cls=util.DataclassJSONEncoder)
        decoded = json.loads(encoded, cls=util.DataclassJSONDecoder, class_type=PendingRequest)

        self.assertEqual(pending, decoded)
