"""
blobstore.py
------------
Flat, name-keyed file storage behind the upload/download endpoints.

Every name is resolved to an absolute path and must stay inside the root.
Saving an existing name overwrites it.
"""

import logging
import os
import shutil

log = logging.getLogger(__name__)


class BlobPathError(ValueError):
    """The requested name is unusable or resolves outside the store root."""


def clean_upload_name(filename: str | None) -> str:
    """Base name of a client-supplied filename, with any directory parts dropped."""
    name = os.path.basename((filename or "").replace("\\", "/"))
    if name in ("", ".", ".."):
        raise BlobPathError(f"unusable file name: {filename!r}")
    return name


class BlobStore:
    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)

    def resolve(self, name: str) -> str:
        """
        Absolute path for `name`. Raises BlobPathError when the path would
        leave the root, whether or not anything exists there.
        """
        path = os.path.abspath(os.path.join(self.root, name))
        if os.path.commonpath([self.root, path]) != self.root:
            raise BlobPathError(f"{name!r} escapes the store root")
        return path

    def save(self, filename: str, fileobj) -> str:
        """Copy `fileobj` into the store; returns the stored name."""
        name = clean_upload_name(filename)
        path = self.resolve(name)
        with open(path, "wb") as out:
            shutil.copyfileobj(fileobj, out)
        log.info("[store] saved %s (%d bytes)", name, os.path.getsize(path))
        return name

    def exists(self, name: str) -> bool:
        return os.path.isfile(self.resolve(name))

    def list_names(self) -> list[str]:
        """Names of regular files directly under the root, sorted."""
        with os.scandir(self.root) as entries:
            return sorted(e.name for e in entries if not e.is_dir())
