import logging
import os
import shutil
from pathlib import Path

from ..core.errors import StorageError

logger = logging.getLogger(__name__)

HANDLER_FILENAME = "handler.py"


class LocalCodeStorage:
    """Stores uploaded handler code on disk, one directory per function id."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)

    def save(self, function_id: str, code: bytes) -> str:
        """Write the code and return its location (the function's directory)."""
        code_dir = self.base_dir / function_id
        try:
            code_dir.mkdir(parents=True, exist_ok=True)
            (code_dir / HANDLER_FILENAME).write_bytes(code)
        except OSError as e:
            raise StorageError(f"save handler code for '{function_id}': {e}") from e
        logger.info(f"Saved {len(code)} bytes of handler code to {code_dir}")
        return os.path.abspath(code_dir)

    def load(self, location: str) -> bytes:
        try:
            return (Path(location) / HANDLER_FILENAME).read_bytes()
        except OSError as e:
            raise StorageError(f"read handler code from {location}: {e}") from e

    def delete(self, location: str):
        if not location:
            return
        try:
            shutil.rmtree(location)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"delete handler code at {location}: {e}") from e
        logger.info(f"Deleted handler code at {location}")
