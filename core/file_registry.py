"""Read-only access to the SQLite file registry maintained by the indexer."""
import logging
import os
import sqlite3
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """The file registry cannot be opened or queried."""


class FileRegistry:
    """
    Read-only view of the indexer's SQLite database: the ``file`` table lists
    every known source path, sidecar entries included.

    Each background stage opens its own instance; a connection is never
    shared between threads.
    """

    _QUERY = "SELECT path FROM file"

    def __init__(self, db_path: str):
        self.db_path = os.path.expanduser(db_path)
        uri = Path(self.db_path).absolute().as_uri() + "?mode=ro"
        try:
            self.conn = sqlite3.connect(uri, uri=True)
        except sqlite3.Error as e:
            raise RegistryError(f"cannot open file registry {self.db_path}: {e}") from e
        logger.debug("Opened file registry %s", self.db_path)

    def all_paths(self) -> List[str]:
        try:
            rows = self.conn.execute(self._QUERY).fetchall()
        except sqlite3.Error as e:
            raise RegistryError(f"file registry query failed on {self.db_path}: {e}") from e
        return [row[0] for row in rows if row[0]]

    def close(self) -> None:
        try:
            self.conn.close()
        except sqlite3.Error as e:
            logger.debug("Error closing file registry: %s", e)
