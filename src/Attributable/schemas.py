# schemas.py

from __future__ import annotations

import re
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, BeforeValidator, Field

SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
_LIST_SPLIT_RE = re.compile(r"[|,]")

# Definition fields an external caller (or an import row) may set
DEFINITION_FIELDS = (
    "slug",
    "name",
    "description",
    "sort_order",
    "group",
    "type",
    "entities",
    "is_required",
    "is_collection",
    "default",
    "options",
)


def _split_list(v: Any) -> Any:
    if isinstance(v, str):
        return [part.strip() for part in _LIST_SPLIT_RE.split(v) if part.strip()]
    return v


def _check_slug(v: str | None) -> str | None:
    if v is not None and not SLUG_RE.match(v):
        raise ValueError("slug may only contain lowercase letters, digits, '-' and '_'")
    return v


Slug = Annotated[str, Field(max_length=150), AfterValidator(_check_slug)]
NameList = Annotated[list[str], BeforeValidator(_split_list)]


class AttributeSpec(BaseModel):
    """Input for creating an attribute definition."""

    slug: Slug | None = None
    name: str = Field(min_length=1, max_length=150)
    description: str | None = None
    sort_order: int = 0
    group: str | None = Field(default=None, max_length=150)
    type: str
    entities: NameList = Field(default_factory=list)
    is_required: bool = False
    is_collection: bool = False
    default: Any = None
    options: NameList | None = None

    model_config = dict(extra="forbid")


class AttributeUpdate(BaseModel):
    """Partial update; only fields that were explicitly set are applied."""

    slug: Slug | None = None
    name: str | None = Field(default=None, min_length=1, max_length=150)
    description: str | None = None
    sort_order: int | None = None
    group: str | None = Field(default=None, max_length=150)
    type: str | None = None
    entities: NameList | None = None
    is_required: bool | None = None
    is_collection: bool | None = None
    default: Any = None
    options: NameList | None = None

    model_config = dict(extra="forbid")

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class StashResult(BaseModel):
    import_log_id: int
    resource_type: str
    filename: str | None = None
    record_ids: list[int] = Field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.record_ids)


class HoardSummary(BaseModel):
    """Outcome of committing a selection of staged records."""

    committed: list[int] = Field(default_factory=list)
    failed: dict[int, str] = Field(default_factory=dict)
    import_log_id: int | None = None

    @property
    def committed_count(self) -> int:
        return len(self.committed)

    @property
    def failed_count(self) -> int:
        return len(self.failed)
