"""Vault scanner: walks the vault folder and lists candidate notes."""
import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

from graphon_index.exceptions import ErrorCode, ScanError
from graphon_index.models.schema import FileNode, NoteCandidate, ScanResult

logger = logging.getLogger(__name__)


def _sort_key(node: FileNode) -> Tuple[int, str, str]:
    # Folders first, then case-insensitive name with the raw name as tie-break
    return (0 if node.type == "folder" else 1, node.name.casefold(), node.name)


class VaultScanner:
    """Walks a vault and produces the display tree plus the flat note list.

    Hidden entries, the index's own metadata folder and ignored names are
    skipped at every depth. Only files with a note extension are kept.
    Symlinks are followed when they stay inside the vault; a link whose
    target resolves outside the vault root is skipped, and so is a link
    back into a directory that is already being walked.
    """

    def __init__(
        self,
        vault_path: Path,
        note_extensions: Iterable[str] = (".md", ".txt"),
        metadata_dir_name: str = ".graphon",
        ignored_names: Iterable[str] = ("node_modules",),
    ):
        self.vault_path = Path(vault_path)
        self.note_extensions = {ext.lower() for ext in note_extensions}
        self.metadata_dir_name = metadata_dir_name
        self.ignored_names = set(ignored_names)
        self._root_real = os.path.realpath(self.vault_path)

    def scan(self) -> ScanResult:
        """Walk the vault.

        Returns:
            ScanResult with the sorted tree and the candidates sorted by path.

        Raises:
            ScanError: If the root is missing or any directory is unreadable.
        """
        root = self.vault_path
        if not root.is_dir():
            raise ScanError(
                f"Vault root does not exist or is not a directory: {root}",
                path=str(root),
                code=ErrorCode.SCAN_ROOT_MISSING,
            )

        candidates: List[NoteCandidate] = []
        tree = self._walk(root, "", {self._root_real}, candidates)
        candidates.sort(key=lambda c: c.path)
        logger.debug(f"Scanned {root}: {len(candidates)} notes")
        return ScanResult(tree=tree, candidates=candidates)

    def is_note_path(self, relative_path: str) -> bool:
        """Whether a vault-relative path would be picked up by a scan."""
        parts = Path(relative_path).parts
        if not parts or any(self.is_skipped_name(part) for part in parts):
            return False
        return Path(parts[-1]).suffix.lower() in self.note_extensions

    def is_skipped_name(self, name: str) -> bool:
        return (
            name.startswith(".")
            or name == self.metadata_dir_name
            or name in self.ignored_names
        )

    def _inside_root(self, real: str) -> bool:
        return real == self._root_real or real.startswith(self._root_real.rstrip(os.sep) + os.sep)

    def _walk(
        self,
        directory: Path,
        relative: str,
        stack: Set[str],
        candidates: List[NoteCandidate],
    ) -> List[FileNode]:
        try:
            entries = list(os.scandir(directory))
        except OSError as e:
            raise ScanError(
                f"Cannot read directory {directory}: {e}",
                path=str(directory),
                code=ErrorCode.SCAN_DIRECTORY_UNREADABLE,
                original_error=e,
            ) from e

        nodes: List[FileNode] = []
        for entry in entries:
            if self.is_skipped_name(entry.name):
                continue
            rel_path = f"{relative}/{entry.name}" if relative else entry.name
            node = self._visit(entry, rel_path, stack, candidates)
            if node is not None:
                nodes.append(node)

        nodes.sort(key=_sort_key)
        return nodes

    def _visit(
        self,
        entry: os.DirEntry,
        rel_path: str,
        stack: Set[str],
        candidates: List[NoteCandidate],
    ) -> Optional[FileNode]:
        try:
            is_dir = entry.is_dir(follow_symlinks=True)
            is_file = not is_dir and entry.is_file(follow_symlinks=True)
        except OSError as e:
            # Broken symlink or entry vanished mid-walk
            logger.debug(f"Skipping {entry.path}: {e}")
            return None

        if entry.is_symlink() and not self._inside_root(os.path.realpath(entry.path)):
            logger.warning(f"Skipping {rel_path}: symlink target is outside the vault")
            return None

        if is_dir:
            real = os.path.realpath(entry.path)
            if real in stack:
                logger.warning(f"Skipping symlink cycle at {rel_path} -> {real}")
                return None
            stack.add(real)
            try:
                children = self._walk(Path(entry.path), rel_path, stack, candidates)
            finally:
                stack.discard(real)
            return FileNode(name=entry.name, path=rel_path, type="folder", children=children)

        if is_file and Path(entry.name).suffix.lower() in self.note_extensions:
            candidates.append(NoteCandidate(path=rel_path, absolute_path=Path(entry.path)))
            return FileNode(name=entry.name, path=rel_path, type="file")
        return None
