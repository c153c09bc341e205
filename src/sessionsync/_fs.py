"""Private filesystem helpers shared by the local stores."""

from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path

from .errors import InvalidIdentifier

# One path component, never hidden, never "." or "..".
_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def safe_name(identifier: str, what: str = "conversation id") -> str:
    """Return ``identifier`` if it can be used as a file name.

    Raises:
        InvalidIdentifier: If it is empty, hidden, or contains a path separator.
    """
    if not _SAFE_ID.match(identifier or ""):
        raise InvalidIdentifier(
            f"Invalid {what}: {identifier!r}",
            identifier=identifier,
        )
    return identifier


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` so readers see either the old file or the new one.

    The bytes go to a temp file in the same directory, which then
    replaces ``path`` in a single rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def atomic_write_text(path: Path, text: str) -> None:
    atomic_write_bytes(path, text.encode("utf-8"))
