import dataclasses
import json
import os
from pathlib import Path
import tempfile
from typing import Type


def clamp(value, min, max):
    return sorted((min, value, max))[1]


class DataclassJSONEncoder(json.JSONEncoder):
    def default(self, o):
        if dataclasses.is_dataclass(o):
            return dataclasses.asdict(o)
        return super().default(o)


class DataclassJSONDecoder(json.JSONDecoder):
    def __init__(self, class_type: Type, **kwargs) -> None:
        super().__init__(**kwargs)
        self.__class_type = class_type

    def decode(self, s):
        result = super().decode(s)
        return self.__class_type(**result)


def atomic_write(path: Path, data: bytes) -> None:
    """
    Write `data` to `path` so that readers see either the old file or the new
    one, never a partial write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=str(path.parent), prefix='.tmp-')
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        os.replace(temp_name, str(path))
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise
