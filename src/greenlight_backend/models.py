from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ANALYSIS_SCHEMA_VERSION = 1

_YEAR_PATTERN = re.compile(r"\b(\d{4})\b")


class SubmissionStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SubmissionStatus.COMPLETED, SubmissionStatus.ERROR)


# Older records used different tags for the same states.
LEGACY_STATUS_ALIASES: Dict[str, SubmissionStatus] = {
    "pending": SubmissionStatus.UPLOADED,
    "analyzed": SubmissionStatus.COMPLETED,
}

STATUS_RANK: Dict[SubmissionStatus, int] = {
    SubmissionStatus.UPLOADED: 0,
    SubmissionStatus.PROCESSING: 1,
    SubmissionStatus.COMPLETED: 2,
    SubmissionStatus.ERROR: 2,
}


def coerce_status(value: str) -> SubmissionStatus:
    if value in LEGACY_STATUS_ALIASES:
        return LEGACY_STATUS_ALIASES[value]
    return SubmissionStatus(value)


def _parse_year(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value
    match = _YEAR_PATTERN.search(str(value))
    return int(match.group(1)) if match else None


class ComparableTitle(BaseModel):
    """A published book cited as similar to the manuscript."""

    title: str
    author: str
    year: Optional[int] = None
    publisher: Optional[str] = None
    imprint: Optional[str] = None
    estimated_sales: Optional[str] = None
    bestseller: Optional[bool] = None
    marketing_summary: Optional[str] = None
    reason: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _translate_legacy(cls, data: Any) -> Any:
        if isinstance(data, str):
            title, _, author = data.partition(" by ")
            return {"title": title.strip(), "author": author.strip() or "Unknown"}
        if not isinstance(data, dict):
            return data

        payload = dict(data)
        renames = {
            "publishingHouse": "publisher",
            "publishing_house": "publisher",
            "copies_sold": "estimated_sales",
            "estimatedCopiesSold": "estimated_sales",
            "nyt_bestseller": "bestseller",
            "isNYTBestseller": "bestseller",
            "marketing_strategy": "marketing_summary",
            "marketingStrategy": "marketing_summary",
            "summary": "marketing_summary",
        }
        for legacy, canonical in renames.items():
            if legacy in payload:
                value = payload.pop(legacy)
                payload.setdefault(canonical, value)

        if "year" not in payload and "publication_date" in payload:
            payload["year"] = payload.pop("publication_date")
        payload.pop("publication_date", None)
        if "year" in payload:
            payload["year"] = _parse_year(payload["year"])
        if payload.get("estimated_sales") is not None:
            payload["estimated_sales"] = str(payload["estimated_sales"])
        payload.setdefault("author", "Unknown")
        return payload


class AnalysisResult(BaseModel):
    """Structured output of one manuscript analysis.

    Field names follow schema version 1. Payloads produced by older prompts
    (``bestComps``/``recentComps``, bare title strings) are translated on the
    way in so stored records always carry a single shape.
    """

    schema_version: int = ANALYSIS_SCHEMA_VERSION
    genre: str = Field(min_length=1)
    tropes: List[str] = Field(default_factory=list)
    themes: List[str] = Field(default_factory=list)
    comparable_titles: List[ComparableTitle] = Field(default_factory=list)
    recent_titles: List[ComparableTitle] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _translate_legacy(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        payload = dict(data)
        for legacy, canonical in (("bestComps", "comparable_titles"), ("recentComps", "recent_titles")):
            if legacy in payload:
                value = payload.pop(legacy)
                payload.setdefault(canonical, value)
        for key in ("comparable_titles", "recent_titles", "tropes", "themes"):
            if payload.get(key) is None:
                payload.pop(key, None)
        payload.setdefault("schema_version", ANALYSIS_SCHEMA_VERSION)
        return payload

    @field_validator("genre")
    @classmethod
    def _strip_genre(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("genre must not be blank")
        return stripped


class BookMetadata(BaseModel):
    title: str
    author: Optional[str] = None
    imprint: Optional[str] = None
    publication_date: Optional[str] = None
    nyt_bestseller: Optional[bool] = None
    copies_sold: Optional[str] = None
    marketing_strategy: Optional[str] = None

    @field_validator("copies_sold", mode="before")
    @classmethod
    def _stringify_sales(cls, value: Any) -> Any:
        return None if value is None else str(value)


class SubmissionDetail(BaseModel):
    id: str
    synopsis: str
    text: str
    file_name: str
    file_size: int
    status: SubmissionStatus
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    analysis: Optional[AnalysisResult] = None
    error: Optional[str] = None


class UploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    submission_id: str = Field(alias="submissionId")


class ProcessResponse(BaseModel):
    message: str
    status: SubmissionStatus
    analysis: Optional[AnalysisResult] = None
    error: Optional[str] = None


class SignupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    submission_id: str = Field(alias="submissionId")


class SignupResponse(BaseModel):
    success: bool = True


class BookMetadataRequest(BaseModel):
    title: str

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("title must not be blank")
        return stripped


class BookDetailsRequest(BaseModel):
    text: str

    @field_validator("text")
    @classmethod
    def _require_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Text content is required")
        return value


class BookDetails(BaseModel):
    """Key selling details read from a manuscript excerpt, camelCase on the wire."""

    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = None
    genre: str = Field(min_length=1)
    target_audience: Optional[str] = Field(default=None, alias="targetAudience")
    comparable_titles: List[str] = Field(default_factory=list, alias="comparableTitles")
    market_potential: Optional[str] = Field(default=None, alias="marketPotential")
    unique_selling_points: List[str] = Field(default_factory=list, alias="uniqueSellingPoints")

    @field_validator("comparable_titles", mode="before")
    @classmethod
    def _flatten_titles(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        titles = []
        for item in value:
            if isinstance(item, dict) and item.get("title"):
                author = item.get("author")
                titles.append(f"{item['title']} by {author}" if author else str(item["title"]))
            else:
                titles.append(item)
        return titles


class ConnectionCheck(BaseModel):
    success: bool
    error: Optional[str] = None


class ConnectionReport(BaseModel):
    database: ConnectionCheck
    openai: ConnectionCheck
    env: Dict[str, bool]


class ConfigMetadata(BaseModel):
    limits: Dict[str, Any]
    model: str
    lifecycle: Dict[str, Any]
    statuses: List[str]
    notes: Dict[str, str]
