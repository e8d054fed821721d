"""Frame discovery -- enumerate captured screenshots in a stable order.

:class:`FrameSource` walks an input directory (flat or recursive) and
lazily yields :class:`~src.annotation.types.FrameDescriptor` values in
lexicographic order of their path relative to the root, so re-running
on an unchanged directory reproduces the same frame indices.  It only
lists directories; images are decoded later by the workers.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Iterator

from src.annotation.errors import SourceEmptyError, SourceNotFoundError
from src.annotation.types import FrameDescriptor

logger = logging.getLogger(__name__)


class FrameSource:
    """Lazy, ordered sequence of frames under a root directory.

    Parameters
    ----------
    root : str or Path
        Directory to scan.
    extensions : iterable of str
        Supported file extensions including the leading dot.  Matching
        is case-insensitive.
    recursive : bool
        Descend into subdirectories.  Default ``False``.
    """

    def __init__(
        self,
        root: str | Path,
        extensions: Iterable[str],
        recursive: bool = False,
    ) -> None:
        self.root = Path(root)
        self.extensions = frozenset(ext.lower() for ext in extensions)
        self.recursive = recursive

    def validate(self) -> None:
        """Check that the root exists and is a directory.

        Raises
        ------
        SourceNotFoundError
            If the root is missing or not a directory.
        """
        if not self.root.exists():
            raise SourceNotFoundError(f"Input directory not found: {self.root}")
        if not self.root.is_dir():
            raise SourceNotFoundError(f"Input path is not a directory: {self.root}")

    def __iter__(self) -> Iterator[FrameDescriptor]:
        """Yield frame descriptors in deterministic order.

        Raises
        ------
        SourceNotFoundError
            If the root does not exist.
        SourceEmptyError
            After exhausting the directory without finding any
            supported image.
        """
        self.validate()
        root = self.root.resolve()

        index = 0
        for path in self._walk(root):
            yield FrameDescriptor(
                index=index,
                path=path,
                relative_path=path.relative_to(root),
            )
            index += 1

        if index == 0:
            raise SourceEmptyError(
                f"No images with extensions {sorted(self.extensions)} found in {self.root}"
            )
        logger.debug("Frame source exhausted: %d frames under %s", index, root)

    def _walk(self, directory: Path) -> Iterator[Path]:
        """Yield supported files under ``directory`` in sorted order.

        Files and subdirectories are merged into one listing sorted by
        :func:`_sort_key`, so the overall order is the plain string order
        of the relative POSIX paths.
        """
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=_sort_key)
        except OSError as exc:
            if directory == self.root.resolve():
                raise
            logger.warning("Skipping unreadable directory %s: %s", directory, exc)
            return

        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                if self.recursive:
                    yield from self._walk(Path(entry.path))
                continue
            if not entry.is_file():
                continue
            if os.path.splitext(entry.name)[1].lower() in self.extensions:
                yield Path(entry.path)


def _sort_key(entry: os.DirEntry) -> str:
    # A directory sorts as "<name>/" so "a.png" < "a/b.png" < "a0.png",
    # matching a string sort of the full relative paths.
    if entry.is_dir(follow_symlinks=False):
        return entry.name + "/"
    return entry.name
