"""Read side of the vault file access layer."""
import logging
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import List, Optional

from graphon_index.exceptions import ErrorCode, ExtractError, PathTraversalError
from graphon_index.models.schema import FileNode
from graphon_index.storage.scanner import VaultScanner

logger = logging.getLogger(__name__)


class VaultFileAccess:
    """Lists and reads notes of one vault, bound to its validated root."""

    def __init__(self, vault_path: Path, scanner: VaultScanner):
        self.vault_path = Path(vault_path).resolve()
        self.scanner = scanner

    def list(self) -> List[FileNode]:
        """Return the vault tree as shown in the file explorer."""
        return self.scanner.scan().tree

    def resolve(self, path: str) -> Path:
        """Map a vault-relative path to an absolute path inside the vault.

        Raises:
            PathTraversalError: For absolute paths, ``..`` components or
                paths that resolve (through symlinks) outside the vault.
        """
        if not path or PurePosixPath(path).is_absolute() or PureWindowsPath(path).is_absolute():
            raise PathTraversalError(path)
        if ".." in PurePosixPath(path.replace("\\", "/")).parts:
            raise PathTraversalError(path)

        target = (self.vault_path / path).resolve()
        if target != self.vault_path and self.vault_path not in target.parents:
            raise PathTraversalError(path)
        return target

    def read(self, path: str) -> Optional[str]:
        """Read a note as UTF-8 text, line endings untouched.

        Returns:
            The note's text, or None if the file does not exist.

        Raises:
            PathTraversalError: If the path escapes the vault.
            ExtractError: If the file exists but cannot be read or decoded.
        """
        target = self.resolve(path)
        try:
            raw = target.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ExtractError(
                f"Cannot read note {path}: {e}",
                path=path,
                code=ErrorCode.EXTRACT_READ_FAILED,
                original_error=e,
            ) from e
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ExtractError(
                f"Note is not valid UTF-8: {path}",
                path=path,
                code=ErrorCode.EXTRACT_DECODE_FAILED,
                original_error=e,
            ) from e
