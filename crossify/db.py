"""
LevelDB wrapper backing the persistence collaborator.
"""
import plyvel
import logging
from typing import Optional, Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class DB:
    def __init__(self, db_path: str, create_if_missing: bool = True,
                 write_buffer_size: int = 4 * 1024 * 1024,
                 max_open_files: int = 1000):
        """
        Open (or create) a LevelDB database.

        Args:
            db_path: Path to database directory
            create_if_missing: Create database if it doesn't exist
            write_buffer_size: Size of write buffer
            max_open_files: Maximum number of open files
        """
        try:
            self._db = plyvel.DB(
                db_path,
                create_if_missing=create_if_missing,
                write_buffer_size=write_buffer_size,
                max_open_files=max_open_files,
            )
            self._closed = False
            self.path = db_path
            logger.info(f"Database opened at {db_path}")
        except Exception as e:
            logger.error(f"Failed to open database at {db_path}: {e}")
            raise

    def _check_open(self):
        if self._closed:
            raise RuntimeError("Database is closed")

    def get(self, key: bytes) -> Optional[bytes]:
        """Get value by key, None if missing."""
        self._check_open()
        return self._db.get(key)

    def put(self, key: bytes, value: bytes):
        self._check_open()
        self._db.put(key, value)

    def delete(self, key: bytes):
        self._check_open()
        self._db.delete(key)

    @contextmanager
    def write_batch(self):
        """
        Context manager for atomic batch writes.

        Example:
            with db.write_batch() as batch:
                batch.put(b'key1', b'value1')
                batch.delete(b'key2')
        """
        self._check_open()
        batch = self._db.write_batch(transaction=True)
        with batch:
            yield batch
        logger.debug("Batch committed")

    def iterator(self, prefix: bytes) -> Iterator[tuple[bytes, bytes]]:
        """Iterate (key, value) pairs whose key starts with prefix."""
        self._check_open()
        with self._db.iterator(prefix=prefix) as it:
            for key, value in it:
                yield key, value

    def close(self):
        if not self._closed:
            self._db.close()
            self._closed = True
            logger.info("Database closed")

    def is_closed(self) -> bool:
        return self._closed
