"""
Atomic JSON file persistence.

Durable state (the publish queue, the attachment privacy map) is rewritten as
a whole snapshot on every mutation. The snapshot is written to a temporary file
in the same directory and moved over the target, so readers only ever see the
previous or the new complete file.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from core.exceptions import EncodingError


def atomic_write_json(path: Path, data: Any) -> None:
    try:
        text = json.dumps(data, indent=2, default=str)
    except (TypeError, ValueError) as e:
        raise EncodingError(str(path), str(e))

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
