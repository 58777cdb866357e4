"""
Memory extraction - mines a user message for durable facts and preferences.

Pure pattern matching, no I/O. English and Portuguese phrasings are
recognized side by side; nothing is translated. Persistence is done by
MemoryService.

Sensitive-data detection is pluggable (SensitiveDataDetector) so rules can
be upgraded without touching the extractor. The regex detector is a
best-effort filter: anything it does not recognize is not caught.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Protocol

from app.db.models import MemoryKind

MAX_MEMORY_LENGTH = 500


@dataclass(frozen=True)
class MemoryCandidate:
    """A memory the extractor proposes to persist"""
    content: str
    kind: MemoryKind
    source: Optional[str]
    is_explicit: bool = False


@dataclass(frozen=True)
class _Pattern:
    kind: MemoryKind
    regex: re.Pattern
    group: int
    is_name: bool = False


class SensitiveDataDetector(Protocol):
    def is_sensitive(self, text: str) -> bool:
        ...


class RegexSensitiveDataDetector:
    """Flags credential-looking tokens, key prefixes, emails and phone numbers."""

    CREDENTIAL_REGEX = re.compile(
        r"(sk-[\w-]{8,}|xai-[\w-]{8,}|whsec_\w+|eyJ[a-zA-Z0-9_-]{10,}|AKIA[0-9A-Z]{10,}"
        r"|-----BEGIN|api[_-]?key|senha|password|secret|token|jwt)",
        re.IGNORECASE,
    )
    EMAIL_REGEX = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
    PHONE_REGEX = re.compile(r"(\+?\d[\d\s().-]{7,}\d)")

    def is_sensitive(self, text: str) -> bool:
        return bool(
            self.CREDENTIAL_REGEX.search(text)
            or self.EMAIL_REGEX.search(text)
            or self.PHONE_REGEX.search(text)
        )


class MemoryExtractor:
    """
    Two strategies:
    - explicit directive ("remember: X", "salvar - X") -> one instruction
    - implicit signals (name, preference, standing instruction, location,
      language) -> fact / preference / instruction
    """

    EXPLICIT_SAVE_REGEX = re.compile(
        r"(lembrar|lembre|remember|save|salvar|guarde)\s*[:\-]\s*(.+)$",
        re.IGNORECASE,
    )

    IMPLICIT_PATTERNS = [
        _Pattern(
            MemoryKind.FACT,
            re.compile(r"(meu nome(?:\s+e| é)?|me chamo|chamo-me|my name is|call me)\s+(.+)", re.IGNORECASE),
            group=2,
            is_name=True,
        ),
        _Pattern(
            MemoryKind.PREFERENCE,
            re.compile(
                r"(prefiro que você|prefiro que voce|minha preferência|my preference is|i prefer you to)\s+(.+)",
                re.IGNORECASE,
            ),
            group=2,
        ),
        _Pattern(
            MemoryKind.INSTRUCTION,
            re.compile(r"(sempre|nunca|always|never)\s+(responda|fale|use|respond|answer)\s+(.+)", re.IGNORECASE),
            group=3,
        ),
        _Pattern(
            MemoryKind.FACT,
            re.compile(r"(moro em|estou em|i live in|i am in|based in)\s+(.+)", re.IGNORECASE),
            group=2,
        ),
        _Pattern(
            MemoryKind.PREFERENCE,
            re.compile(r"(minha lingua|minha linguagem|eu falo|i speak|language is)\s+(.+)", re.IGNORECASE),
            group=2,
        ),
    ]

    _LETTER_REGEX = re.compile(r"[^\W\d_]")

    def __init__(self, detector: Optional[SensitiveDataDetector] = None):
        self.detector = detector or RegexSensitiveDataDetector()

    @staticmethod
    def normalize(text: str) -> str:
        return " ".join(text.split())[:MAX_MEMORY_LENGTH]

    def _is_likely_name(self, text: str) -> bool:
        return len(text) >= 2 and bool(self._LETTER_REGEX.search(text))

    def extract(self, message: str) -> List[MemoryCandidate]:
        """Return accepted memory candidates for a user message."""
        candidates: List[MemoryCandidate] = []
        if not message:
            return candidates
        source: Optional[str] = message[:MAX_MEMORY_LENGTH]
        if self.detector.is_sensitive(source):
            # Never carry the raw message when it holds sensitive data
            source = None

        explicit = self.EXPLICIT_SAVE_REGEX.search(message)
        if explicit:
            content = self.normalize(explicit.group(2) or "")
            if content and not self.detector.is_sensitive(content):
                candidates.append(MemoryCandidate(
                    content=content,
                    kind=MemoryKind.INSTRUCTION,
                    source=source,
                    is_explicit=True,
                ))

        for pattern in self.IMPLICIT_PATTERNS:
            match = pattern.regex.search(message)
            if not match:
                continue
            content = self.normalize(match.group(pattern.group) or "")
            if not content or self.detector.is_sensitive(content):
                continue
            if pattern.is_name and not self._is_likely_name(content):
                continue
            candidates.append(MemoryCandidate(
                content=content,
                kind=pattern.kind,
                source=source,
            ))

        return candidates


# Singleton instance
_memory_extractor: Optional[MemoryExtractor] = None


def get_memory_extractor() -> MemoryExtractor:
    """Get the memory extractor singleton."""
    global _memory_extractor
    if _memory_extractor is None:
        _memory_extractor = MemoryExtractor()
    return _memory_extractor


def extract(message: str) -> List[MemoryCandidate]:
    return get_memory_extractor().extract(message)
