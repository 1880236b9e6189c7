"""
Vocabulary hints: domain terms sent to the provider as a keyterms prompt.

Terms live in a markdown file, one per line. Headings, quotes, HTML comments
and fenced code blocks are ignored; list markers are stripped.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from logging import getLogger
from pathlib import Path
from typing import List, Optional

from config import STT_MAX_KEYTERM_LENGTH, STT_MAX_KEYTERMS, VOCAB_PATH

logger = getLogger(__name__)


DEFAULT_VOCAB_CONTENT = """# Vocabulary

<!-- Add one term per line. -->
"""

_WHITESPACE_RE = re.compile(r"\s+")
_BULLET_RE = re.compile(r"^[-*+]\s+")
_NUMBERED_RE = re.compile(r"^\d+[).\s]+")


class AppendStatus(str, Enum):
    ADDED = "added"
    EXISTS = "exists"
    INVALID = "invalid"
    TOO_LONG = "too-long"


@dataclass(frozen=True)
class AppendResult:
    status: AppendStatus
    path: Path
    term: Optional[str] = None


def normalize_vocab_term(raw: str) -> Optional[str]:
    trimmed = _WHITESPACE_RE.sub(" ", raw).strip()
    if not trimmed:
        return None
    without_marker = _NUMBERED_RE.sub("", _BULLET_RE.sub("", trimmed)).strip()
    normalized = _WHITESPACE_RE.sub(" ", without_marker).strip()
    return normalized or None


def parse_vocab_terms(content: str) -> List[str]:
    terms: List[str] = []
    seen = set()
    in_code_fence = False

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("```"):
            in_code_fence = not in_code_fence
            continue
        if in_code_fence or line.startswith(("#", ">", "<!--")):
            continue

        term = normalize_vocab_term(line)
        if not term or len(term) > STT_MAX_KEYTERM_LENGTH or term in seen:
            continue
        seen.add(term)
        terms.append(term)

    return terms


def ensure_vocab_file(path: Path = VOCAB_PATH) -> Path:
    """Create the vocabulary file (and its folder) with a short header if it does not exist."""
    if path.exists():
        if not path.is_file():
            raise IsADirectoryError(f'Vocabulary path "{path}" is not a file.')
        return path
    if path.parent.exists() and not path.parent.is_dir():
        raise NotADirectoryError(f'Vocabulary folder path "{path.parent}" is a file.')
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_VOCAB_CONTENT, encoding="utf-8")
    logger.info("[VOCAB] created %s", path)
    return path


def read_vocab_terms(path: Path = VOCAB_PATH) -> List[str]:
    path = ensure_vocab_file(path)
    return parse_vocab_terms(path.read_text(encoding="utf-8"))[:STT_MAX_KEYTERMS]


def append_vocab_term(raw: str, path: Path = VOCAB_PATH) -> AppendResult:
    path = ensure_vocab_file(path)
    normalized = normalize_vocab_term(raw)
    if not normalized:
        return AppendResult(AppendStatus.INVALID, path)
    if len(normalized) > STT_MAX_KEYTERM_LENGTH:
        return AppendResult(AppendStatus.TOO_LONG, path, normalized)

    content = path.read_text(encoding="utf-8")
    if normalized in parse_vocab_terms(content):
        return AppendResult(AppendStatus.EXISTS, path, normalized)

    prefix = "\n" if content and not content.endswith("\n") else ""
    path.write_text(f"{content}{prefix}{normalized}\n", encoding="utf-8")
    logger.info("[VOCAB] added %r", normalized)
    return AppendResult(AppendStatus.ADDED, path, normalized)


def vocab_hint_supplier(path: Path = VOCAB_PATH):
    """Async zero-argument supplier for RecordingSessionController.get_vocabulary_hints."""
    async def _supplier() -> List[str]:
        return await asyncio.to_thread(read_vocab_terms, path)
    return _supplier
