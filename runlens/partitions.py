"""
Partition Classifier - business-unit labels derived from package names.

Every package belongs to exactly one business unit, decided by an ordered
list of case-insensitive name prefixes. The first matching rule wins; a
name that matches no rule is "Uncategorized".

The same rules drive filtering. A label is translated into a structured
FilterPredicate that can be evaluated in Python (matches) or rendered as
a parameterized SQL fragment (to_sql). Labels are never interpolated into
query text.

Rules:
------
- classify() is pure and total: every string, including empty, gets a label
- A predicate for label L selects exactly the names classify() maps to L
- Blank or missing labels select everything
- Unknown labels raise UnknownPartitionError
- Adding a business unit means adding a PartitionRule, nothing else
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from runlens.errors import UnknownPartitionError


UNCATEGORIZED = "Uncategorized"

# Escape character used in generated LIKE clauses.
_LIKE_ESCAPE = "\\"


@dataclass(frozen=True)
class PartitionRule:
    """A single prefix rule mapping package names to a business unit."""

    label: str
    """Business unit name exposed to callers."""

    prefix: str
    """Case-insensitive package name prefix."""

    def applies_to(self, name: str) -> bool:
        return name.upper().startswith(self.prefix.upper())


DEFAULT_RULES: Tuple[PartitionRule, ...] = (
    PartitionRule(label="ClientRepo", prefix="CR"),
    PartitionRule(label="ChartNav", prefix="CN"),
    PartitionRule(label="EDS", prefix="EDS"),
    PartitionRule(label="HIM", prefix="HIM"),
)


def _escape_like(value: str) -> str:
    """Escape LIKE wildcards so a prefix matches literally."""
    return (
        value.replace(_LIKE_ESCAPE, _LIKE_ESCAPE * 2)
        .replace("%", _LIKE_ESCAPE + "%")
        .replace("_", _LIKE_ESCAPE + "_")
    )


@dataclass(frozen=True)
class FilterPredicate:
    """
    Structured package-name filter.

    A name matches when it starts with one of include_prefixes (or
    include_prefixes is empty) and starts with none of exclude_prefixes.
    Both empty means match-all.
    """

    label: Optional[str] = None
    """Business unit this predicate selects. None for match-all."""

    include_prefixes: Tuple[str, ...] = ()
    exclude_prefixes: Tuple[str, ...] = ()

    @property
    def is_match_all(self) -> bool:
        return not self.include_prefixes and not self.exclude_prefixes

    def matches(self, name: Optional[str]) -> bool:
        """Evaluate the predicate against a package name."""
        upper = (name or "").upper()
        if self.include_prefixes and not any(
            upper.startswith(p.upper()) for p in self.include_prefixes
        ):
            return False
        return not any(upper.startswith(p.upper()) for p in self.exclude_prefixes)

    def to_sql(self, column: str) -> Tuple[str, List[str]]:
        """
        Render as a parameterized SQL condition.

        Args:
            column: Column expression holding the package name. Must be a
                trusted identifier, never user input.

        Returns:
            (clause, params) where clause uses ? placeholders. Match-all
            renders as "1=1" with no params.
        """
        if self.is_match_all:
            return "1=1", []

        clauses: List[str] = []
        params: List[str] = []

        if self.include_prefixes:
            includes = []
            for prefix in self.include_prefixes:
                includes.append(f"{column} LIKE ? ESCAPE '{_LIKE_ESCAPE}'")
                params.append(_escape_like(prefix) + "%")
            clauses.append("(" + " OR ".join(includes) + ")")

        for prefix in self.exclude_prefixes:
            clauses.append(f"{column} NOT LIKE ? ESCAPE '{_LIKE_ESCAPE}'")
            params.append(_escape_like(prefix) + "%")

        return " AND ".join(clauses), params


MATCH_ALL = FilterPredicate()


class Partitioner:
    """
    Ordered prefix classifier.

    Rules are evaluated in declared order; the first match wins.
    """

    def __init__(self, rules: Sequence[PartitionRule] = DEFAULT_RULES):
        if not rules:
            raise ValueError("Partitioner requires at least one rule")
        labels = [r.label for r in rules]
        if len(set(l.upper() for l in labels)) != len(labels):
            raise ValueError(f"Duplicate business unit labels: {labels}")
        if UNCATEGORIZED.upper() in (l.upper() for l in labels):
            raise ValueError(f"'{UNCATEGORIZED}' is reserved for the default partition")
        self._rules: Tuple[PartitionRule, ...] = tuple(rules)

    @property
    def labels(self) -> List[str]:
        """All labels in rule order, followed by the default."""
        return [r.label for r in self._rules] + [UNCATEGORIZED]

    def classify(self, name: Optional[str]) -> str:
        """Business unit for a package name."""
        if not name:
            return UNCATEGORIZED
        for rule in self._rules:
            if rule.applies_to(name):
                return rule.label
        return UNCATEGORIZED

    def resolve_label(self, label: Optional[str]) -> Optional[str]:
        """
        Normalize a caller-supplied label.

        Returns:
            Canonical label, or None for blank input (match-all)

        Raises:
            UnknownPartitionError: If the label is not recognised
        """
        if label is None or not label.strip():
            return None
        wanted = label.strip().upper()
        for known in self.labels:
            if known.upper() == wanted:
                return known
        raise UnknownPartitionError(label, valid=self.labels)

    def to_filter_predicate(self, label: Optional[str]) -> FilterPredicate:
        """
        Translate a label into a FilterPredicate.

        Rule k includes its own prefix and excludes the prefixes of rules
        0..k-1, so overlapping prefixes still honour first-match-wins.
        """
        resolved = self.resolve_label(label)
        if resolved is None:
            return MATCH_ALL

        if resolved == UNCATEGORIZED:
            return FilterPredicate(
                label=UNCATEGORIZED,
                exclude_prefixes=tuple(r.prefix for r in self._rules),
            )

        earlier: List[str] = []
        for rule in self._rules:
            if rule.label == resolved:
                return FilterPredicate(
                    label=rule.label,
                    include_prefixes=(rule.prefix,),
                    exclude_prefixes=tuple(earlier),
                )
            earlier.append(rule.prefix)

        # resolve_label only returns known labels
        raise UnknownPartitionError(resolved, valid=self.labels)


_default_partitioner = Partitioner()


def get_partitioner() -> Partitioner:
    """Get the process-wide default partitioner."""
    return _default_partitioner


def classify(name: Optional[str]) -> str:
    """Classify a package name with the default rules."""
    return _default_partitioner.classify(name)


def to_filter_predicate(label: Optional[str]) -> FilterPredicate:
    """Build a filter predicate with the default rules."""
    return _default_partitioner.to_filter_predicate(label)
