"""Reading product requirements documents.

A PRD is plain text or markdown. The parser checks that the file is usable,
finds a project title for the batch metadata and trims oversized documents
before they are sent to a model.
"""

import re
from dataclasses import dataclass
from pathlib import Path


# Supported PRD file extensions
SUPPORTED_EXTENSIONS: set[str] = {".txt", ".md", ".markdown", ".prd"}

# Minimum content length for a usable PRD (characters)
MIN_CONTENT_LENGTH = 50

# Maximum content length to send to a model (characters)
MAX_CONTENT_LENGTH = 100000

TRUNCATION_NOTICE = "[PRD truncated: {kept} of {total} characters included]"

# "Title: Foo" / "Product: Foo" / "Project Name: Foo" on the first lines
_LABELLED_TITLE_RE = re.compile(
    r"^\s*(?:title|product|project(?:\s+name)?)\s*:\s*(.+?)\s*$", re.IGNORECASE
)
_SETEXT_UNDERLINE_RE = re.compile(r"^\s*=+\s*$")


@dataclass
class ParsedPrd:
    """A PRD ready for task generation."""

    file_path: Path
    content: str
    title: str
    word_count: int

    @property
    def is_truncated(self) -> bool:
        return len(self.content) > MAX_CONTENT_LENGTH

    def get_truncated_content(self, max_length: int = MAX_CONTENT_LENGTH) -> str:
        """Content limited to ``max_length`` characters.

        Long documents are cut at the last paragraph break in the final fifth
        of the allowed length, or hard at ``max_length`` if there is none.
        """
        if len(self.content) <= max_length:
            return self.content

        kept = self.content[:max_length]
        paragraph_end = kept.rfind("\n\n")
        if paragraph_end >= max_length * 0.8:
            kept = kept[:paragraph_end]
        kept = kept.rstrip()

        notice = TRUNCATION_NOTICE.format(kept=len(kept), total=len(self.content))
        return f"{kept}\n\n{notice}"


def _check_file(path: Path) -> str:
    """Return why ``path`` cannot be used as a PRD, or "" if it can."""
    if not path.exists():
        return f"PRD file not found: {path}"
    if not path.is_file():
        return f"Path is not a file: {path}"

    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_EXTENSIONS:
        return (
            f"Unsupported file extension: {suffix or '(none)'}. "
            f"Supported: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
        )
    return ""


# Non-blank lines searched for an explicit heading or label
TITLE_SEARCH_LINES = 5


def _find_title(lines: list[str]) -> str | None:
    """Title from the top of the document.

    Looks for an ATX ``# Heading``, a setext heading underlined with ``===``
    or a ``Title:``-style label, then falls back to a short first line.
    """
    candidates = [
        (index, line.strip()) for index, line in enumerate(lines) if line.strip()
    ][:TITLE_SEARCH_LINES]
    if not candidates:
        return None

    for index, stripped in candidates:
        if stripped.startswith("# "):
            return stripped[2:].strip().strip("#").strip()

        following = lines[index + 1] if index + 1 < len(lines) else ""
        if _SETEXT_UNDERLINE_RE.match(following):
            return stripped

        labelled = _LABELLED_TITLE_RE.match(stripped)
        if labelled:
            return labelled.group(1)

    first = candidates[0][1]
    if len(first) < 100 and not first.startswith(("-", "*", "{", "<", "|", "#")):
        return first.rstrip(".:")
    return None


class PrdParser:
    """Loads and checks a PRD file."""

    def __init__(self, prd_path: Path | str):
        """Initialize the parser.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            ValueError: If the path is not a file or the extension is not supported.
        """
        self.prd_path = Path(prd_path).resolve()

        problem = _check_file(self.prd_path)
        if problem and not self.prd_path.exists():
            raise FileNotFoundError(problem)
        if problem:
            raise ValueError(problem)

    def parse(self) -> ParsedPrd:
        """Read the PRD.

        A UTF-8 byte order mark is dropped and line endings are normalized.
        Documents without a recognizable title are named after the file.

        Raises:
            ValueError: If the content is too short or not UTF-8.
        """
        try:
            raw = self.prd_path.read_text(encoding="utf-8-sig")
        except UnicodeDecodeError as e:
            raise ValueError(f"PRD file is not valid UTF-8 text: {self.prd_path}") from e

        content = raw.replace("\r\n", "\n").replace("\r", "\n")
        length = len(content.strip())
        if length < MIN_CONTENT_LENGTH:
            raise ValueError(
                f"PRD file too short ({length} chars). "
                f"Minimum required: {MIN_CONTENT_LENGTH} characters."
            )

        title = _find_title(content.split("\n")) or self.prd_path.stem.replace("_", " ")
        return ParsedPrd(
            file_path=self.prd_path,
            content=content,
            title=title,
            word_count=len(content.split()),
        )

    @staticmethod
    def validate_path(path: Path | str) -> tuple[bool, str]:
        """Check a path without raising.

        Returns:
            Tuple of (is_valid, error_message).
        """
        try:
            PrdParser(path).parse()
        except (OSError, ValueError) as e:
            return False, str(e)
        return True, ""
