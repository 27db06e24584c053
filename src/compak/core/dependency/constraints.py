"""Semantic versions, version constraints, and dependency edges.

This module provides the foundational data types for declaring version
requirements between compak packages.

Constraint semantics follow npm / SemVer conventions with support for
exact match (``1.2.3``, ``=1.2.3``, ``==1.2.3``), range (``>=``, ``<=``,
``>``, ``<``), not-equal (``!=``), caret (``^``), tilde (``~``), x-ranges
(``1.x``, ``1.2.*``), any (``*``), and compound constraints whose atoms are
separated by commas or whitespace.

References
----------
.. [SemVer] Preston-Werner, T. (2013). "Semantic Versioning 2.0.0."
   https://semver.org/
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import total_ordering


# ---------------------------------------------------------------------------
# Version: totally ordered semantic version
# ---------------------------------------------------------------------------

_SEMVER_RE = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<pre>[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*))?$"
)


def _prerelease_key(pre: tuple[str, ...]) -> tuple:
    """Precedence key for pre-release identifiers (SemVer 2.0.0 section 11).

    A version without pre-release sorts above any pre-release of the same
    core version. Numeric identifiers compare numerically and rank below
    alphanumeric ones.
    """
    if not pre:
        return (1,)
    parts = []
    for ident in pre:
        if ident.isdigit():
            parts.append((0, int(ident), ""))
        else:
            parts.append((1, 0, ident))
    return (0, tuple(parts))


@total_ordering
@dataclass(frozen=True)
class Version:
    """A semantic version ``major.minor.patch[-prerelease][+build]``.

    Build metadata is preserved for display but ignored for equality and
    ordering, as SemVer requires.
    """

    major: int
    minor: int
    patch: int
    prerelease: tuple[str, ...] = ()
    build: str = field(default="", compare=False)

    @classmethod
    def parse(cls, text: str) -> Version:
        """Parse a version string.

        Raises:
            ValueError: If *text* is not a semantic version.
        """
        if isinstance(text, Version):
            return text
        m = _SEMVER_RE.match(str(text).strip())
        if not m:
            raise ValueError(f"Invalid semantic version: {text!r}")
        pre = tuple(m.group("pre").split(".")) if m.group("pre") else ()
        for ident in pre:
            if ident.isdigit() and len(ident) > 1 and ident.startswith("0"):
                raise ValueError(f"Invalid semantic version: {text!r}")
        return cls(
            int(m.group("major")),
            int(m.group("minor")),
            int(m.group("patch")),
            pre,
            m.group("build") or "",
        )

    @property
    def core(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    def _key(self) -> tuple:
        return (self.core, _prerelease_key(self.prerelease))

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += "-" + ".".join(self.prerelease)
        if self.build:
            text += "+" + self.build
        return text

    def __repr__(self) -> str:
        return f"Version({str(self)!r})"


def parse_version(text: str | Version) -> Version:
    """Shorthand for :meth:`Version.parse`."""
    return Version.parse(text)


def sort_versions(versions, *, descending: bool = True) -> list[Version]:
    """Return versions sorted newest-first (or oldest-first)."""
    return sorted(versions, reverse=descending)


# ---------------------------------------------------------------------------
# VersionConstraint: Declarative version requirement
# ---------------------------------------------------------------------------

_VERSION_BODY = (
    r"(?:0|[1-9]\d*)\.(?:0|[1-9]\d*)\.(?:0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z\-.]+)?(?:\+[0-9A-Za-z\-.]+)?"
)

# A single atom such as ">=1.2.3", "^0.4.0", "!=2.0.0" or "1.2.3".
_CONSTRAINT_ATOM_RE = re.compile(
    r"^(?P<op>==|=|!=|>=|<=|>|<|\^|~)?v?(?P<ver>" + _VERSION_BODY + r")$"
)

# x-range atoms: "1.x", "1.2.x", "1.*", "1.2.*", "1", "1.2"
_XRANGE_RE = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)(?:\.(?P<minor>0|[1-9]\d*|[xX*]))?(?:\.[xX*])?$"
)

# Operators may be written with a space before the version: ">= 1.0.0".
_OP_SPACE_RE = re.compile(r"(==|!=|>=|<=|=|>|<|\^|~)\s+")


@dataclass(frozen=True)
class _Atom:
    op: str
    version: Version | None = None
    major: int | None = None
    minor: int | None = None

    def matches(self, v: Version) -> bool:
        op, target = self.op, self.version
        if op == "*":
            return True
        if op == "x":
            if v.major != self.major:
                return False
            return self.minor is None or v.minor == self.minor
        assert target is not None
        if op == "==":
            return v == target
        if op == "!=":
            return v != target
        if op == ">=":
            return v >= target
        if op == "<=":
            return v <= target
        if op == ">":
            return v > target
        if op == "<":
            return v < target
        if op == "^":
            # Caret: same major, >= target. With major 0, same major.minor.
            if target.major == 0:
                return (
                    v.major == 0 and v.minor == target.minor and v >= target
                )
            return v.major == target.major and v >= target
        if op == "~":
            # Tilde: same major.minor, >= target.
            return v.major == target.major and v.minor == target.minor and v >= target
        raise ValueError(f"Unknown operator: {op!r}")  # pragma: no cover


def _parse_atom(atom: str) -> _Atom:
    if atom in ("*", "x", "X"):
        return _Atom("*")
    m = _CONSTRAINT_ATOM_RE.match(atom)
    if m:
        op = m.group("op") or "=="
        if op == "=":
            op = "=="
        return _Atom(op, Version.parse(m.group("ver")))
    m = _XRANGE_RE.match(atom)
    if m:
        minor = m.group("minor")
        return _Atom(
            "x",
            major=int(m.group("major")),
            minor=int(minor) if minor and minor not in ("x", "X", "*") else None,
        )
    raise ValueError(f"Invalid constraint atom: {atom!r}")


@dataclass(frozen=True)
class VersionConstraint:
    """A version constraint, analogous to npm's range syntax.

    Supports:
    - Any version: ``*`` (or an empty string)
    - Exact match: ``1.0.0``, ``=1.0.0``, ``==1.0.0``
    - Not-equal: ``!=1.0.0``
    - Ranges: ``>=1.0.0``, ``<=2.0.0``, ``>1.0.0``, ``<2.0.0``
    - Caret: ``^1.2.0`` (same major; same minor when major is 0)
    - Tilde: ``~1.2.0`` (same major.minor)
    - X-ranges: ``1.x``, ``1.2.x``, ``2.*``
    - Compound (comma or space separated, all must hold):
      ``>=1.0.0,<2.0.0`` or ``>=1.0.0 <2.0.0``

    Pre-release versions only satisfy a constraint that names a pre-release
    of the same ``major.minor.patch`` in one of its atoms.

    Attributes:
        raw: The raw constraint string as authored.
    """

    raw: str

    def __post_init__(self) -> None:
        # Fail fast on grammar errors; the parsed form is cached.
        object.__setattr__(self, "_atoms", self._parse(self.raw))

    @staticmethod
    def _parse(raw: str) -> tuple[_Atom, ...]:
        if not isinstance(raw, str):
            raise ValueError(f"Invalid constraint: {raw!r}")
        text = _OP_SPACE_RE.sub(r"\1", raw.strip())
        tokens = [t for t in re.split(r"[,\s]+", text) if t]
        if not tokens:
            return (_Atom("*"),)
        return tuple(_parse_atom(t) for t in tokens)

    @classmethod
    def any(cls) -> VersionConstraint:
        return cls("*")

    @classmethod
    def exact(cls, version: Version | str) -> VersionConstraint:
        return cls(f"=={version}")

    @property
    def atoms(self) -> tuple[_Atom, ...]:
        return self._atoms  # type: ignore[attr-defined]

    def _allows_prerelease_of(self, v: Version) -> bool:
        return any(
            a.version is not None
            and a.version.is_prerelease
            and a.version.core == v.core
            for a in self.atoms
        )

    def satisfies(self, version: Version | str) -> bool:
        """Check whether a version satisfies this constraint.

        All atoms must be satisfied (conjunction semantics).

        Raises:
            ValueError: If *version* is not a valid semantic version.
        """
        v = Version.parse(version)
        if v.is_prerelease and not self._allows_prerelease_of(v):
            return False
        return all(a.matches(v) for a in self.atoms)

    def intersect(self, other: VersionConstraint) -> VersionConstraint:
        """Return the conjunction of two constraints."""
        mine, theirs = self.raw.strip(), other.raw.strip()
        if mine in ("", "*"):
            return other
        if theirs in ("", "*"):
            return self
        return VersionConstraint(f"{mine},{theirs}")

    def __str__(self) -> str:
        return self.raw.strip() or "*"

    def __repr__(self) -> str:
        return f"VersionConstraint({self.raw!r})"


# ---------------------------------------------------------------------------
# Dependency: an edge from one package-version to another package
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Dependency:
    """A directed dependency edge from one package-version to another package.

    Represents: "installing package X at version V *requires* that package
    ``name`` is also installed at some version satisfying ``constraint``."

    Attributes:
        name: The name of the required package.
        constraint: Version constraint that the dependency must satisfy.
    """

    name: str
    constraint: VersionConstraint


# Source label for constraints imposed by the user's own request.
REQUEST_SOURCE = "<request>"


@dataclass(frozen=True)
class ConstraintSource:
    """A constraint on a package together with the party that imposed it.

    Attributes:
        constraint: The version constraint.
        source: ``REQUEST_SOURCE`` for the user request, otherwise the
            ``(name, version)`` of the depending package-version.
    """

    constraint: VersionConstraint
    source: str | tuple[str, Version]

    @property
    def label(self) -> str:
        if isinstance(self.source, tuple):
            return f"{self.source[0]}@{self.source[1]}"
        return self.source

    def sort_key(self) -> tuple:
        if isinstance(self.source, tuple):
            return (1, self.source[0], self.source[1]._key(), self.constraint.raw)
        return (0, self.source, (), self.constraint.raw)
