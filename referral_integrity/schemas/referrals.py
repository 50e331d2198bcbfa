from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ChangeKind(str, Enum):
    SLUG = "slug"
    CATEGORY = "category"
    SOURCE_NULLIFIED = "source_nullified"
    SOURCE_TRIMMED = "source_trimmed"
    MASKED = "masked"
    TRACK_PATH = "track_path"
    RAW_URL_STRIPPED = "raw_url_stripped"
    ARCHIVED = "archived"


class ReferralEntry(BaseModel):
    slug: str
    category: str
    source_url: str = Field(default="", alias="sourceUrl")
    masked: str = ""
    track_path: str = Field(default="", alias="trackPath")
    archived: bool = False

    model_config = ConfigDict(extra="allow")

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ReferralMap(BaseModel):
    items: dict[str, ReferralEntry] = Field(default_factory=dict)
    total: int = 0
    categories: list[str] = Field(default_factory=list)
    generated_at: datetime | None = Field(default=None, alias="generatedAt")

    model_config = ConfigDict(extra="allow")

    @property
    def archived_count(self) -> int:
        return sum(1 for entry in self.items.values() if entry.archived)

    @property
    def active_count(self) -> int:
        return self.total - self.archived_count

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
