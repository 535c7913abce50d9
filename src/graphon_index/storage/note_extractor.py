"""Note extraction: raw note text to title, searchable text, links and tasks.

Parsing is lenient. Broken front-matter, unterminated wiki-links and other
partial syntax are ignored rather than reported.
"""
import logging
import re
from typing import Iterator, List, Tuple

import frontmatter
import yaml

from graphon_index.exceptions import ErrorCode, ExtractError
from graphon_index.models.schema import ExtractedNote, TaskItem
from graphon_index.utils import note_stem

logger = logging.getLogger(__name__)

# Front-matter block at the very start of the note
FRONTMATTER_PATTERN = re.compile(r"\A---[ \t]*\r?\n.*?^---[ \t]*$\r?\n?", re.DOTALL | re.MULTILINE)
H1_PATTERN = re.compile(r"^#[ \t]+(.+?)[ \t#]*$", re.MULTILINE)
FENCE_PATTERN = re.compile(r"^[ \t]*(```|~~~)")
WIKI_LINK_PATTERN = re.compile(r"\[\[([^\[\]\n]+?)\]\]")
TASK_PATTERN = re.compile(r"^[ \t]*[-*+][ \t]+\[([ xX])\][ \t]+(.*?)[ \t]*$")

# Markdown stripping for the full-text content, applied in order
_PLAIN_TEXT_RULES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"^[ \t]*(```|~~~).*?^[ \t]*\1[^\n]*$", re.DOTALL | re.MULTILINE), ""),
    (re.compile(r"`[^`\n]+`"), ""),
    (re.compile(r"!\[[^\]]*\]\([^)]*\)"), ""),
    (re.compile(r"\[([^\]]+)\]\([^)]+\)"), r"\1"),
    (re.compile(r"\[\[([^\[\]|#\n]*)(?:#[^\[\]|\n]*)?\|([^\[\]\n]+)\]\]"), r"\2"),
    (re.compile(r"\[\[([^\[\]|#\n]*)(?:#[^\[\]\n]*)?\]\]"), r"\1"),
    (re.compile(r"^#{1,6}[ \t]+", re.MULTILINE), ""),
    (re.compile(r"^[ \t]*>[ \t]?", re.MULTILINE), ""),
    (re.compile(r"^[ \t]*[-*_]{3,}[ \t]*$", re.MULTILINE), ""),
    (re.compile(r"^[ \t]*[-*+][ \t]+(\[[ xX]\][ \t]+)?", re.MULTILINE), ""),
    (re.compile(r"^[ \t]*\d+\.[ \t]+", re.MULTILINE), ""),
    (re.compile(r"\*\*([^*]+)\*\*"), r"\1"),
    (re.compile(r"\*([^*\n]+)\*"), r"\1"),
    (re.compile(r"__([^_]+)__"), r"\1"),
    (re.compile(r"\b_([^_\n]+)_\b"), r"\1"),
    (re.compile(r"\n{3,}"), "\n\n"),
]


def split_frontmatter(raw_text: str) -> Tuple[dict, str]:
    """Split a note into its front-matter mapping and body.

    Unparseable front-matter yields an empty mapping and the block is still
    removed from the body.
    """
    try:
        post = frontmatter.loads(raw_text)
        metadata = post.metadata if isinstance(post.metadata, dict) else {}
        return metadata, post.content
    except (yaml.YAMLError, ValueError, TypeError) as e:
        logger.debug(f"Ignoring malformed front-matter: {e}")
        return {}, FRONTMATTER_PATTERN.sub("", raw_text, count=1)


def iter_lines_outside_code(text: str) -> Iterator[str]:
    """Yield the lines of ``text`` that are not inside fenced code blocks."""
    fence = None
    for line in text.splitlines():
        match = FENCE_PATTERN.match(line)
        if match:
            if fence is None:
                fence = match.group(1)
            elif match.group(1) == fence:
                fence = None
            continue
        if fence is None:
            yield line


def normalize_link_target(raw: str) -> str:
    """``target|alias`` and ``target#heading`` to ``target``, ``.md`` dropped."""
    target = raw.split("|", 1)[0].split("#", 1)[0].strip()
    if target.lower().endswith(".md"):
        target = target[:-3].rstrip()
    return target


class NoteExtractor:
    """Derives the indexed representation of a note from its raw text."""

    def extract(self, raw_text: str, path: str) -> ExtractedNote:
        """Extract title, plain content, wiki-links and tasks.

        Args:
            raw_text: The note's full text.
            path: Vault-relative path, used for the fallback title.

        Raises:
            ExtractError: If extraction fails unexpectedly.
        """
        try:
            metadata, body = split_frontmatter(raw_text.replace("\r\n", "\n"))
            lines = list(iter_lines_outside_code(body))
            return ExtractedNote(
                title=self.extract_title(metadata, body, path),
                content=self.extract_plain_text(body),
                links=self.extract_links(lines),
                tasks=self.extract_tasks(lines),
            )
        except ExtractError:
            raise
        except Exception as e:
            raise ExtractError(
                f"Failed to extract note {path}: {e}",
                path=path,
                code=ErrorCode.EXTRACT_FAILED,
                original_error=e,
            ) from e

    @staticmethod
    def extract_title(metadata: dict, body: str, path: str) -> str:
        """Front-matter title, else the first ``# `` heading, else the file name."""
        title = metadata.get("title")
        if title is not None and str(title).strip():
            return str(title).strip()

        for line in iter_lines_outside_code(body):
            match = H1_PATTERN.match(line)
            if match:
                return match.group(1).strip()

        return note_stem(path)

    @staticmethod
    def extract_plain_text(body: str) -> str:
        text = body
        for pattern, replacement in _PLAIN_TEXT_RULES:
            text = pattern.sub(replacement, text)
        return text.strip()

    @staticmethod
    def extract_links(lines: List[str]) -> List[str]:
        """Wiki-link targets in first-seen order, without duplicates."""
        seen = set()
        links: List[str] = []
        for line in lines:
            for match in WIKI_LINK_PATTERN.finditer(line):
                target = normalize_link_target(match.group(1))
                if target and target not in seen:
                    seen.add(target)
                    links.append(target)
        return links

    @staticmethod
    def extract_tasks(lines: List[str]) -> List[TaskItem]:
        tasks: List[TaskItem] = []
        for line in lines:
            match = TASK_PATTERN.match(line)
            if match and match.group(2):
                tasks.append(TaskItem(content=match.group(2), completed=match.group(1) in "xX"))
        return tasks
