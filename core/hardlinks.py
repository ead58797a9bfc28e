from __future__ import annotations

import logging
import os
from typing import Dict


class HardlinkInspector:
    """Counts hardlinks of downloaded files that live outside an ignored root.

    ``populate_inode_counts`` walks the ignored root once so links inside it
    (the download itself, cross-seeds) can be subtracted from ``st_nlink``.
    """

    def __init__(self) -> None:
        self._inode_counts: Dict[int, int] = {}

    def populate_inode_counts(self, root: str) -> None:
        self._inode_counts.clear()
        if not root:
            return
        for dirpath, dirnames, filenames in os.walk(root, onerror=lambda e: logging.warning(f'failed to read {e.filename}: {e}')):
            for entry in dirnames + filenames:
                full = os.path.join(dirpath, entry)
                try:
                    inode = os.stat(full).st_ino
                except OSError as e:
                    logging.debug(f'failed to stat {full}: {e}')
                    continue
                self._inode_counts[inode] = self._inode_counts.get(inode, 0) + 1
        logging.debug(f'populated {len(self._inode_counts)} inodes under {root}')

    def get_hardlink_count(self, path: str, ignore_root_dir: bool) -> int:
        """Return the number of links outside the ignored root, or -1 if the file can't be inspected."""
        try:
            st = os.stat(path)
        except OSError as e:
            logging.error(f'failed to stat file {path}: {e}')
            return -1

        nlink = int(st.st_nlink)
        if not ignore_root_dir:
            return max(0, nlink - 1)
        inside = self._inode_counts.get(st.st_ino, 1)
        return max(0, nlink - inside)
