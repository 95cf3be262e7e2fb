"""Per-line SHA-256 records and the final hash-of-hashes.

Each processed prompt line yields three digests (prompt text, response text,
rendered score line). They are kept in order for the whole run; at the end
each category's hex digests are concatenated and hashed once more. Any
single-byte divergence anywhere in the run therefore shows up in the three
final values.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Iterable


class HashCategory(Enum):
    PROMPT = "prompt"
    RESPONSE = "response"
    SCORES = "scores"

    @property
    def label(self) -> str:
        # Score lines are labelled "Logits" in the results file.
        return {"prompt": "Prompt", "response": "Response", "scores": "Logits"}[self.value]


@dataclass(frozen=True)
class HashRecord:
    category: HashCategory
    digest: str

    def render(self) -> str:
        return f"{self.category.label} Hash: {self.digest}\n"


def sha256_hex(data: bytes | str) -> str:
    """Lowercase hex SHA-256 of raw bytes.

    str is encoded as UTF-8; lone surrogates from a "surrogateescape" decode
    turn back into the bytes they were decoded from.
    """
    if isinstance(data, str):
        data = data.encode("utf-8", "surrogateescape")
    return hashlib.sha256(data).hexdigest()


def format_score_line(scores: Iterable[tuple[int, float]]) -> str:
    """Render (token, score) pairs exactly as they are logged and hashed.

    >>> format_score_line([(15, 3.5), (7, -1.25)])
    'Logits: 15:3.500000 7:-1.250000 \\n\\n'
    """
    return "Logits: " + "".join(f"{token}:{score:.6f} " for token, score in scores) + "\n\n"


def render_final(category: HashCategory, digest: str) -> str:
    return f"Final {category.label} Hash-of-Hashes: {digest}\n"


class HashLedger:
    """Append-only digests per category, in processing order across all iterations."""

    def __init__(self) -> None:
        self._records: dict[HashCategory, list[HashRecord]] = {c: [] for c in HashCategory}

    def __len__(self) -> int:
        # Lines recorded; all three categories grow together.
        return len(self._records[HashCategory.PROMPT])

    def add(self, category: HashCategory, data: bytes | str) -> HashRecord:
        record = HashRecord(category, sha256_hex(data))
        self._records[category].append(record)
        return record

    def record(self, prompt: str, response: str, score_line: str) -> tuple[HashRecord, HashRecord, HashRecord]:
        """Hash one finished line. Returns (prompt, response, scores) records."""
        return (
            self.add(HashCategory.PROMPT, prompt),
            self.add(HashCategory.RESPONSE, response),
            self.add(HashCategory.SCORES, score_line),
        )

    def digests(self, category: HashCategory) -> list[str]:
        return [r.digest for r in self._records[category]]

    def hash_of_hashes(self, category: HashCategory) -> str:
        return hash_of_hashes(self.digests(category))

    def finals(self) -> dict[HashCategory, str]:
        return {c: self.hash_of_hashes(c) for c in HashCategory}


def hash_of_hashes(digests: Iterable[str]) -> str:
    """SHA-256 over the hex digests concatenated without separators."""
    return sha256_hex("".join(digests))
