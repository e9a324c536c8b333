from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Literal, Optional
import re

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_MARKUP_PATTERNS = [
    re.compile(r"<\s*script\b", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=", re.IGNORECASE),
    re.compile(r"<\s*iframe\b", re.IGNORECASE),
]

ContentType = Literal["article", "document", "fact", "publication", "book", "interview"]


def is_valid_email(value: str) -> bool:
    return len(value) <= 255 and bool(EMAIL_RE.match(value))


def clean_text(v: str, *, keep_newlines: bool = False) -> str:
    """Strip NUL bytes and outer whitespace, collapse runs of spaces, reject control chars and markup."""
    v = v.replace("\x00", "").strip()
    if not v:
        raise ValueError("Field cannot be empty.")

    allowed = "\n\t" if keep_newlines else ""
    if any(ord(ch) < 32 and ch not in allowed for ch in v):
        raise ValueError("Field contains control characters.")
    if any(p.search(v) for p in _MARKUP_PATTERNS):
        raise ValueError("Field contains disallowed markup.")

    if keep_newlines:
        return "\n".join(" ".join(line.split()) for line in v.splitlines()).strip()
    return " ".join(v.split())


class ReportRequest(BaseModel):
    request: str = Field(..., min_length=1, max_length=500)
    entities: List[str] = Field(default_factory=list, max_length=20)

    @field_validator("request")
    @classmethod
    def request_must_be_clean(cls, v: str) -> str:
        return clean_text(v)

    @field_validator("entities")
    @classmethod
    def entities_are_names(cls, v: List[str]) -> List[str]:
        names = [e.strip() for e in v if e.strip()]
        for name in names:
            if not name.isidentifier():
                raise ValueError(f"Invalid entity name: {name!r}")
        return names


class TagRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    content: str = Field(..., min_length=1, max_length=50_000)
    content_type: ContentType = "article"
    max_tags: int = Field(10, ge=1, le=20)
    existing_tags: List[str] = Field(default_factory=list, max_length=50)

    @field_validator("title")
    @classmethod
    def title_must_be_clean(cls, v: str) -> str:
        return clean_text(v)

    @field_validator("content")
    @classmethod
    def content_must_be_clean(cls, v: str) -> str:
        return clean_text(v, keep_newlines=True)

    @field_validator("existing_tags")
    @classmethod
    def tags_normalized(cls, v: List[str]) -> List[str]:
        return [t.strip().lower() for t in v if t.strip()]


class ReportSection(BaseModel):
    title: str
    content: str
    chart_type: Optional[str] = None
    chart_data: Optional[Dict[str, Any]] = None


class ReportInsight(BaseModel):
    type: str
    message: str
    confidence: Optional[float] = None


class ReportResponse(BaseModel):
    title: str
    summary: str
    sections: List[ReportSection] = []
    insights: List[ReportInsight] = []
    recommendations: List[str] = []
    cached: bool = False


class TagResponse(BaseModel):
    suggested_tags: List[str]


class CacheStatsResponse(BaseModel):
    size: int
    keys: List[str]
    oldest_entry_timestamp: Optional[int] = None


class ClearCacheResponse(BaseModel):
    removed: int


class SweepResponse(BaseModel):
    removed_keys: int
    tracked_keys: int
