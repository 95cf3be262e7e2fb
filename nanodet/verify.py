"""
Re-check a results file written by `nanodet`.

1) recompute every Final ... Hash-of-Hashes from the per-line hash records
2) check that every iteration produced the same per-line digests

Usage:
    python -m nanodet.verify determinism_results.txt
"""

from __future__ import annotations

import argparse
import re
import sys
from dataclasses import dataclass, field
from typing import Iterator, Sequence

from nanodet.hashing import HashCategory, hash_of_hashes, sha256_hex

_BY_LABEL = {c.label: c for c in HashCategory}
_LABELS = "|".join(_BY_LABEL)
RECORD_RE = re.compile(rf"^({_LABELS}) Hash: ([0-9a-f]{{64}})$")
FINAL_RE = re.compile(rf"^Final ({_LABELS}) Hash-of-Hashes: ([0-9a-f]{{64}})$")
ITERATION_RE = re.compile(r"^== Iteration (\d+) of (\d+) ==$")
SCORE_LINE_RE = re.compile(r"^Logits: (-?\d+:\S+ )*$")
RESPONSE_PREFIX = "Response: "
_RECORD_ORDER = (HashCategory.PROMPT, HashCategory.RESPONSE, HashCategory.SCORES)


def _empty_digests() -> dict[HashCategory, list[str]]:
    return {c: [] for c in HashCategory}


@dataclass
class ResultsFile:
    iterations: list[dict[HashCategory, list[str]]] = field(default_factory=list)
    finals: dict[HashCategory, str] = field(default_factory=dict)

    def digests(self, category: HashCategory) -> list[str]:
        return [d for it in self.iterations for d in it[category]]


@dataclass
class Divergence:
    iteration: int
    line: int
    category: HashCategory


@dataclass
class VerifyReport:
    recomputed: dict[HashCategory, str]
    recorded: dict[HashCategory, str]
    divergence: Divergence | None = None
    line_counts: list[int] = field(default_factory=list)

    @property
    def mismatched(self) -> list[HashCategory]:
        return [c for c in HashCategory if self.recomputed[c] != self.recorded.get(c)]

    @property
    def iterations_agree(self) -> bool:
        return self.divergence is None and len(set(self.line_counts)) <= 1

    @property
    def ok(self) -> bool:
        return not self.mismatched and self.iterations_agree


def _closing_blocks(lines: list[str], start: int) -> Iterator[tuple[int, list[str]]]:
    """Candidate ends of the response starting at lines[start].

    A response is closed by its score line, a blank line and the three hash
    records in order. Yields (index of the score line, digests).
    """
    for end in range(start, len(lines) - 4):
        if not SCORE_LINE_RE.match(lines[end]) or lines[end + 1] != "":
            continue
        matches = [RECORD_RE.match(line) for line in lines[end + 2 : end + 5]]
        if all(m and _BY_LABEL[m.group(1)] is c for m, c in zip(matches, _RECORD_ORDER)):
            yield end, [m.group(2) for m in matches]


def parse_results(text: str) -> ResultsFile:
    """Pick hash records, final lines and iteration markers out of a results file.

    Hash records are only taken from the block closing a `Response:` payload,
    so generated text spanning several lines cannot inject records or
    iteration markers. If the payload itself contains a well-formed closing
    block, the candidate whose Response Hash matches the captured text wins.
    """
    results = ResultsFile()
    current: dict[HashCategory, list[str]] | None = None
    lines = text.split("\n")

    i = 0
    while i < len(lines):
        line = lines[i]
        if ITERATION_RE.match(line):
            current = _empty_digests()
            results.iterations.append(current)
            i += 1
            continue
        if line.startswith(RESPONSE_PREFIX):
            if current is None:
                raise ValueError("response found before any '== Iteration' marker")
            block = None
            for end, digests in _closing_blocks(lines, i):
                if block is None:
                    block = end, digests
                response = "\n".join(lines[i:end])[len(RESPONSE_PREFIX) :]
                if sha256_hex(response) == digests[1]:
                    block = end, digests
                    break
            if block is None:
                raise ValueError(f"line {i + 1}: response without hash records")
            end, digests = block
            for category, digest in zip(_RECORD_ORDER, digests):
                current[category].append(digest)
            i = end + 5
            continue
        m = FINAL_RE.match(line)
        if m:
            results.finals[_BY_LABEL[m.group(1)]] = m.group(2)
        i += 1

    missing = [c.label for c in HashCategory if c not in results.finals]
    if missing:
        raise ValueError(f"missing final hash-of-hashes for: {', '.join(missing)}")
    return results


def _first_divergence(results: ResultsFile) -> Divergence | None:
    if not results.iterations:
        return None
    reference = results.iterations[0]
    for it_index, iteration in enumerate(results.iterations[1:], start=2):
        for category in HashCategory:
            for line_index, (want, got) in enumerate(zip(reference[category], iteration[category]), start=1):
                if want != got:
                    return Divergence(it_index, line_index, category)
    return None


def verify(results: ResultsFile) -> VerifyReport:
    recomputed = {c: hash_of_hashes(results.digests(c)) for c in HashCategory}
    return VerifyReport(
        recomputed=recomputed,
        recorded=dict(results.finals),
        divergence=_first_divergence(results),
        line_counts=[len(it[HashCategory.PROMPT]) for it in results.iterations],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nanodet-verify",
        description="Recompute hash-of-hashes from a nanodet results file and check iterations agree.",
    )
    parser.add_argument("results", help="Results file written by nanodet (-o)")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        with open(args.results, encoding="utf-8", newline="") as f:
            results = parse_results(f.read())
    except (OSError, ValueError) as exc:
        print(f"Error: {args.results}: {exc}", file=sys.stderr)
        return 2

    report = verify(results)

    print("=" * 60)
    print(f"Verification of {args.results}")
    print("=" * 60)
    for category in HashCategory:
        tag = "[PASS]" if category not in report.mismatched else "[FAIL]"
        print(f"  {tag} {category.label} hash-of-hashes  recorded={report.recorded[category]}")
        if category in report.mismatched:
            print(f"         recomputed={report.recomputed[category]}")

    counts = ", ".join(str(n) for n in report.line_counts)
    print(f"  iterations: {len(report.line_counts)}  lines per iteration: {counts}")
    if report.divergence is not None:
        d = report.divergence
        print(f"  [FAIL] iteration {d.iteration} differs from iteration 1 at line {d.line} ({d.category.label})")
    elif not report.iterations_agree:
        print("  [FAIL] iterations hashed different numbers of lines")
    elif len(report.line_counts) > 1:
        print("  [PASS] all iterations produced identical per-line digests")
    print("=" * 60)

    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
