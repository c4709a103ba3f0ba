"""Persistent INI-file store with merge-on-save and single-flight loading.

Both the user's ``~/.npmrc`` (credentials) and ``~/.ado-npm`` (defaults)
are plain INI files that other programs -- ``npm`` itself, editors, a
second ado-npm process -- may modify at any time. :class:`IniStore` keeps
an in-memory copy that callers mutate in place, and reconciles it with the
file on :meth:`IniStore.save`:

1. The file is opened in append-or-create mode, so it is never truncated
   before the new content is ready.
2. The *current* on-disk contents are re-read and deep-merged with the
   in-memory data (:func:`deep_merge`): lists concatenate, mappings
   recurse, and scalars from memory win.
3. The merged document is written back through the same handle.

Keys another process appended between ``load`` and ``save`` therefore
survive. There is no cross-process locking; the last writer wins per
scalar key.

:class:`StoreRegistry` hands out exactly one :class:`IniStore` per absolute
path. It is created once at the composition root and passed to every
consumer, so concurrent requests for the same file share a single load.

See Also:
    :mod:`ado_npm.ini` -- the file format.
    :mod:`ado_npm.config` -- the well-known store paths.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable, Optional, Union

from ado_npm import ini
from ado_npm.utils import unique

logger = logging.getLogger(__name__)

Parser = Callable[[dict[str, Any]], dict[str, Any]]

_FILE_MODE = 0o600


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *override* into a copy of *base*.

    * Lists from both sides are concatenated (duplicates dropped, order kept).
    * Nested mappings are merged recursively.
    * Any other value from *override* replaces the one in *base*.
    * A ``None`` value in *override* removes the key.

    Neither argument is modified.

    Example::

        deep_merge({"a": 1, "b": 2}, {"a": 3}) == {"a": 3, "b": 2}
    """
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, dict) and isinstance(current, dict):
            merged[key] = deep_merge(current, value)
        elif isinstance(value, list) and isinstance(current, list):
            merged[key] = _unique_items(current + value)
        elif isinstance(value, dict):
            merged[key] = deep_merge({}, value)
        elif isinstance(value, list):
            merged[key] = list(value)
        else:
            merged[key] = value
    return merged


def _unique_items(items: list[Any]) -> list[Any]:
    if all(isinstance(item, (str, int, float, bool)) for item in items):
        return unique(items)
    return items


def _snapshot(data: dict[str, Any]) -> str:
    return json.dumps(data, default=str)


class IniStore:
    """In-memory view of one INI file, saved with merge semantics.

    Instances are normally obtained from :meth:`StoreRegistry.get`, which
    also performs the initial :meth:`load`.

    Args:
        path: Path of the backing file. Made absolute.
        parse: Optional validator applied to the decoded document on load.
            It receives the raw mapping and returns the mapping to keep.

    Example::

        store = IniStore(Path.home() / ".npmrc")
        store.load()
        store.data["registry"] = "https://registry.npmjs.org/"
        store.save()
    """

    def __init__(self, path: Union[str, Path], parse: Optional[Parser] = None) -> None:
        self._path = Path(path).expanduser().absolute()
        self._parse = parse
        self._data: dict[str, Any] = {}
        self._snapshot = _snapshot(self._data)

    @property
    def path(self) -> Path:
        """Absolute path of the backing file."""
        return self._path

    @property
    def data(self) -> dict[str, Any]:
        """The live in-memory document. Mutate it in place, then :meth:`save`."""
        return self._data

    def load(self) -> None:
        """Replace the in-memory data with the file contents.

        A missing file is an empty document and not an error.

        Raises:
            OSError: For any read failure other than a missing file.
        """
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("No file at %s, starting empty", self._path)
            self._data = {}
            self._snapshot = _snapshot(self._data)
            return

        raw = ini.decode(text)
        self._data = self._parse(raw) if self._parse else raw
        self._snapshot = _snapshot(self._data)

    def save(self) -> bool:
        """Merge the in-memory data into the file on disk.

        Does nothing when the data is unchanged since the last load or save.

        Returns:
            ``True`` if the file was written, ``False`` if there was nothing
            to save.

        Raises:
            OSError: If the file cannot be opened, read or written.
        """
        if _snapshot(self._data) == self._snapshot:
            return False

        self._path.parent.mkdir(parents=True, exist_ok=True)

        # O_APPEND creates the file without truncating it; writes go to the
        # end, which is offset 0 once the handle has been truncated. The file
        # is kept owner-only (0600).
        fd = os.open(self._path, os.O_RDWR | os.O_CREAT | os.O_APPEND, _FILE_MODE)
        with os.fdopen(fd, "a+", encoding="utf-8") as handle:
            handle.seek(0)
            on_disk = ini.decode(handle.read())
            merged = deep_merge(on_disk, self._data)
            handle.seek(0)
            handle.truncate()
            handle.write(ini.encode(merged))
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(self._path, _FILE_MODE)

        self._data = merged
        self._snapshot = _snapshot(merged)
        logger.debug("Saved %s", self._path)
        return True


class StoreRegistry:
    """Single-flight cache of :class:`IniStore` instances keyed by absolute path.

    The first :meth:`get` for a path creates and loads the store; any other
    caller asking for the same path while that load is in progress blocks
    on the same pending result instead of reading the file again. A failed
    load is not cached, so a later :meth:`get` retries it.

    Example::

        stores = StoreRegistry()
        npmrc = stores.get(Path.home() / ".npmrc")
        assert stores.get(Path.home() / ".npmrc") is npmrc
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[Path, Future[IniStore]] = {}

    def get(self, path: Union[str, Path], parse: Optional[Parser] = None) -> IniStore:
        """Return the loaded store for *path*, loading it at most once.

        Args:
            path: File path; relative paths are resolved against the
                current directory.
            parse: Validator used only when this call creates the store.

        Raises:
            OSError: If the initial load fails.
        """
        key = Path(path).expanduser().absolute()

        with self._lock:
            future = self._pending.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._pending[key] = future

        assert future is not None
        if not owner:
            return future.result()

        store = IniStore(key, parse=parse)
        try:
            store.load()
        except BaseException as exc:
            with self._lock:
                self._pending.pop(key, None)
            future.set_exception(exc)
            raise

        future.set_result(store)
        return store

    def clear(self) -> None:
        """Forget every cached store. Intended for tests."""
        with self._lock:
            self._pending.clear()
