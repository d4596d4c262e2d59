"""Git ref parsing and the branch/tag patterns bound to each environment.

A pattern is one of three tagged variants, matched through a single
dispatch function:

- ``ExactBranch(name)``: exactly one branch, e.g. ``dev`` or ``main``
- ``BranchPrefix(prefix)``: every branch below a prefix, e.g. ``release/``
- ``TagAny``: any tag

Refs may be given fully qualified (``refs/heads/main``, ``refs/tags/v1.2.0``)
or as a bare branch name (``main``). In configuration files the branch name
or prefix may also be given under ``value``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

BRANCH_PREFIX = "refs/heads/"
TAG_PREFIX = "refs/tags/"


class RefKind(Enum):
    """What a git ref points at."""

    BRANCH = "branch"
    TAG = "tag"
    OTHER = "other"  # pull request merge refs, notes, empty input


@dataclass(frozen=True)
class GitRef:
    """A parsed git ref."""

    kind: RefKind
    name: str

    def __str__(self) -> str:
        if self.kind == RefKind.BRANCH:
            return f"{BRANCH_PREFIX}{self.name}"
        if self.kind == RefKind.TAG:
            return f"{TAG_PREFIX}{self.name}"
        return self.name


def parse_ref(ref: str) -> GitRef:
    """Split a ref into its kind and short name."""
    ref = ref.strip()
    if ref.startswith(BRANCH_PREFIX):
        return GitRef(RefKind.BRANCH, ref[len(BRANCH_PREFIX):])
    if ref.startswith(TAG_PREFIX):
        return GitRef(RefKind.TAG, ref[len(TAG_PREFIX):])
    if not ref or ref.startswith("refs/"):
        return GitRef(RefKind.OTHER, ref)
    return GitRef(RefKind.BRANCH, ref)


class ExactBranch(BaseModel):
    """Matches a single branch by name."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["exact_branch"] = "exact_branch"
    name: str = Field(validation_alias=AliasChoices("name", "value"))

    def describe(self) -> str:
        return f"branch '{self.name}'"


class BranchPrefix(BaseModel):
    """Matches any branch whose name starts with ``prefix``."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["branch_prefix"] = "branch_prefix"
    prefix: str = Field(validation_alias=AliasChoices("prefix", "value"))

    def describe(self) -> str:
        return f"branches '{self.prefix}*'"


class TagAny(BaseModel):
    """Matches any tag."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["tag_any"] = "tag_any"

    def describe(self) -> str:
        return "any tag"


RefPattern = Annotated[
    Union[ExactBranch, BranchPrefix, TagAny],
    Field(discriminator="kind"),
]


def matches(pattern: ExactBranch | BranchPrefix | TagAny, ref: str) -> bool:
    """Return True if ``ref`` satisfies ``pattern``."""
    parsed = parse_ref(ref)
    if isinstance(pattern, ExactBranch):
        return parsed.kind == RefKind.BRANCH and parsed.name == pattern.name
    if isinstance(pattern, BranchPrefix):
        return (
            parsed.kind == RefKind.BRANCH
            and parsed.name.startswith(pattern.prefix)
            and len(parsed.name) > len(pattern.prefix)
        )
    if isinstance(pattern, TagAny):
        return parsed.kind == RefKind.TAG and bool(parsed.name)
    raise TypeError(f"Unsupported ref pattern: {pattern!r}")
