"""Fuzzy matching of source columns onto target field names."""

import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional, Tuple

from rowbridge.core.errors import APIException, ErrorCategory, ErrorCode, MappingLocked
from rowbridge.models.mapping import IGNORE_TARGET, ColumnMapping, MappingStats

logger = logging.getLogger(__name__)

MATCH_THRESHOLD = 70

# Canonical token -> common spellings (English and German)
COLUMN_VARIATIONS: Dict[str, List[str]] = {
    "email": ["e-mail", "e_mail", "mail", "email_address", "email address"],
    "firstname": ["first_name", "first name", "vorname", "given_name", "fname"],
    "lastname": ["last_name", "last name", "nachname", "surname", "family_name", "lname"],
    "company": ["unternehmen", "firma", "organization", "organisation", "business"],
    "phone": ["telefon", "tel", "telephone", "mobile", "handy"],
    "address": ["adresse", "street", "strasse", "location"],
}


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance with unit cost insert, delete and substitute."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + cost,
                )
            )
        previous = current
    return previous[-1]


def calculate_similarity(a: str, b: str) -> int:
    """Similarity in 0..100 of two names, compared lower-cased and trimmed."""
    left = a.lower().strip()
    right = b.lower().strip()
    if left == right:
        return 100
    max_length = max(len(left), len(right))
    distance = levenshtein_distance(left, right)
    # Round half up
    return int((100 * (max_length - distance) / max_length) + 0.5)


def find_best_matches(source: str, candidates: Iterable[str]) -> List[Tuple[str, int]]:
    """Candidates paired with their similarity, best first."""
    scored = [(candidate, calculate_similarity(source, candidate)) for candidate in candidates]
    return sorted(scored, key=lambda item: item[1], reverse=True)


def smart_match(source: str, candidates: List[str]) -> Optional[str]:
    """
    Pick the target field for a source column, or None.

    Tried in order: case-insensitive exact match, the synonym table, then the
    closest name by edit distance when its similarity reaches the threshold.
    """
    normalized = source.lower().strip()

    for candidate in candidates:
        if candidate.lower().strip() == normalized:
            return candidate

    for canonical, variations in COLUMN_VARIATIONS.items():
        if normalized in variations or canonical in normalized:
            for candidate in candidates:
                lowered = candidate.lower()
                if canonical in lowered or any(v in lowered for v in variations):
                    return candidate

    best = find_best_matches(source, candidates)
    if best and best[0][1] >= MATCH_THRESHOLD:
        return best[0][0]
    return None


class ColumnMapper:
    """Per-upload mapping state, keyed by source column in header order."""

    def __init__(self, columns: List[str], targets: List[str]):
        self.columns = list(columns)
        self.targets = list(targets)
        self.mappings: Dict[str, ColumnMapping] = {
            column: ColumnMapping(source_column=column) for column in self.columns
        }

    @classmethod
    def propose(cls, columns: List[str], targets: List[str]) -> "ColumnMapper":
        """Initial proposal from smart matching.

        When two columns land on the same field the higher similarity keeps
        it (the earlier column on a tie) and the other is left unmapped.
        """
        mapper = cls(columns, targets)
        holders: Dict[str, str] = {}
        for column in mapper.columns:
            target = smart_match(column, targets)
            if not target:
                continue
            similarity = calculate_similarity(column, target)
            holder = holders.get(target)
            if holder is not None:
                if mapper.mappings[holder].similarity >= similarity:
                    continue
                mapper.mappings[holder] = ColumnMapping(source_column=holder)
            holders[target] = column
            mapper.mappings[column] = ColumnMapping(
                source_column=column,
                target_field=target,
                is_matched=similarity >= MATCH_THRESHOLD,
                similarity=similarity,
            )

        stats = mapper.stats()
        logger.info(
            f"Proposed mapping: {stats.matched}/{stats.total} columns matched",
            extra={"columns": stats.total, "matched": stats.matched},
        )
        return mapper

    def handle_mapping_change(self, column: str, target: str, force: bool = False) -> ColumnMapping:
        """
        Map ``column`` onto ``target`` or mark it ignored.

        Any other column holding ``target`` is reset to unmapped, so no two
        columns ever share a field. A holder whose exact match is locked is
        only evicted with ``force``.
        """
        if column not in self.mappings:
            raise APIException(
                code=ErrorCode.MAPPING_UNKNOWN_COLUMN,
                message=f"Unknown source column '{column}'",
                category=ErrorCategory.VALIDATION,
                status_code=422,
            )

        if target == IGNORE_TARGET:
            updated = ColumnMapping(source_column=column, is_ignored=True)
            self.mappings[column] = updated
            return updated

        if target not in self.targets:
            raise APIException(
                code=ErrorCode.MAPPING_UNKNOWN_COLUMN,
                message=f"Unknown target field '{target}'",
                category=ErrorCategory.VALIDATION,
                status_code=422,
            )

        for other, mapping in self.mappings.items():
            if other == column or mapping.target_field != target:
                continue
            if mapping.is_locked and not force:
                raise MappingLocked(target=target, holder=other)
            self.mappings[other] = ColumnMapping(source_column=other)

        updated = ColumnMapping(
            source_column=column,
            target_field=target,
            is_matched=True,
            similarity=calculate_similarity(column, target),
        )
        self.mappings[column] = updated
        return updated

    def available_targets(self, column: str) -> List[str]:
        """Targets not held by another column."""
        used = {
            m.target_field
            for c, m in self.mappings.items()
            if c != column and m.target_field and not m.is_ignored
        }
        return [t for t in self.targets if t not in used]

    def unmapped_columns(self) -> List[str]:
        return [c for c in self.columns if self.mappings[c].status == "unmapped"]

    def final_mapping(self) -> Dict[str, str]:
        return {
            c: self.mappings[c].target_field
            for c in self.columns
            if self.mappings[c].status == "mapped"
        }

    def stats(self) -> MappingStats:
        total = len(self.columns)
        counts = Counter(self.mappings[c].status for c in self.columns)
        return MappingStats(
            total=total,
            matched=counts["mapped"],
            ignored=counts["ignored"],
            unmapped=counts["unmapped"],
        )

    def to_dict(self) -> dict:
        return {
            "columns": self.columns,
            "targets": self.targets,
            "mappings": [self.mappings[c].model_dump() for c in self.columns],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ColumnMapper":
        mapper = cls(data["columns"], data["targets"])
        for item in data["mappings"]:
            mapping = ColumnMapping(**item)
            mapper.mappings[mapping.source_column] = mapping
        return mapper
