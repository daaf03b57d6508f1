# portbuild/modules/versions.py
"""
Natural version ordering and constraint checks.

A version is split on the separators `. + _ -`, and each part further into
numeric / non-numeric runs ("1.10rc2" -> [1, 10, "rc", 2]). Text runs are
lowercased. Runs are compared pairwise:

 - numeric vs numeric: as integers ("1.9" < "1.10")
 - text vs text: lexicographically
 - numeric vs text: the numeric run is greater ("1.0" > "1.a")

When one key is a strict prefix of the other, the shorter version is lesser
("1.10" < "1.10.1"), unless the remaining tail is made only of zero
numeric runs, in which case both compare equal ("2" == "2.0").
"""

from __future__ import annotations

import re
from typing import List, NamedTuple, Optional, Union

OPERATORS = (">=", "<=", "=", ">", "<")

_SEP_RE = re.compile(r"[.+_\-]")
_RUN_RE = re.compile(r"\d+|\D+")

Run = Union[int, str]


def version_key(v: Optional[str]) -> List[Run]:
    if v is None:
        return []
    s = str(v).strip()
    if re.match(r"v\d", s):
        s = s[1:]
    key: List[Run] = []
    for part in _SEP_RE.split(s):
        for r in _RUN_RE.findall(part):
            key.append(int(r) if r.isdigit() else r.lower())
    return key


def _is_padding(run: Run) -> bool:
    return isinstance(run, int) and run == 0


def compare_versions(a: Optional[str], b: Optional[str]) -> int:
    """Return -1, 0 or 1 as `a` is lesser, equal or greater than `b`."""
    ka = version_key(a)
    kb = version_key(b)
    for x, y in zip(ka, kb):
        if isinstance(x, int) and isinstance(y, int):
            if x != y:
                return -1 if x < y else 1
        elif isinstance(x, str) and isinstance(y, str):
            if x != y:
                return -1 if x < y else 1
        else:
            return 1 if isinstance(x, int) else -1
    n = min(len(ka), len(kb))
    if len(ka) == len(kb):
        return 0
    longer, sign = (kb, -1) if len(ka) < len(kb) else (ka, 1)
    if all(_is_padding(r) for r in longer[n:]):
        return 0
    return sign


def satisfies(installed: Optional[str], operator: Optional[str], required: Optional[str]) -> bool:
    if not operator:
        return True
    if operator not in OPERATORS:
        raise ValueError(f"Unknown version operator: {operator!r}")
    if installed is None:
        return False
    c = compare_versions(installed, required)
    if operator == ">=":
        return c >= 0
    if operator == "<=":
        return c <= 0
    if operator == "=":
        return c == 0
    if operator == ">":
        return c > 0
    return c < 0


class Constraint(NamedTuple):
    operator: str
    version: str

    def describe(self) -> str:
        return f"{self.operator}{self.version}"

    def is_satisfied_by(self, installed: Optional[str]) -> bool:
        return satisfies(installed, self.operator, self.version)
