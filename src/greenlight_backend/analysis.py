"""
Language-model analysis of manuscripts.

``AnalysisClient`` turns manuscript text plus synopsis into an
``AnalysisResult`` with one chat completion. Failures are classified so the
lifecycle coordinator can record them verbatim:

- ``NoContent``: nothing to analyze, or the model returned nothing
- ``MalformedResponse``: the answer was not the JSON object we asked for
- ``InvalidCredentials``: 401 from the completion service (permanent)
- ``RateLimited``: 429 (transient)
- ``UpstreamError``: any other service failure, flagged transient or not

Nothing in this module retries. The OpenAI client is built with
``max_retries=0`` so the SDK does not retry behind our back either.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

import openai
from openai import OpenAI
from pydantic import ValidationError

from .configuration import OpenAISettings
from .models import AnalysisResult, BookDetails, BookMetadata
from .utils import truncate_text

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a literary agent's assistant analyzing manuscripts. "
    "Answer with a single JSON object and nothing else: no markdown, no code fences, no commentary."
)

ANALYSIS_PROMPT = """Analyze the following manuscript excerpt and synopsis. Identify the genre, tropes and themes,
and suggest comparable published books.

Text: {excerpt}

Synopsis: {synopsis}

Respond with a JSON object with exactly this structure:
{{
  "genre": "Primary genre of the manuscript",
  "tropes": ["Literary trope", "..."],
  "themes": ["Major theme", "..."],
  "comparable_titles": [
    {{
      "title": "Book title",
      "author": "Author name",
      "year": 2015,
      "publisher": "Publishing house",
      "imprint": "Publishing imprint",
      "estimated_sales": "Approximate copies sold",
      "bestseller": true,
      "marketing_summary": "Brief summary of the launch marketing approach",
      "reason": "Why this book is comparable"
    }}
  ],
  "recent_titles": ["Same structure as comparable_titles"]
}}

For comparable_titles, include 2-3 well-established books that share themes, style or audience.
For recent_titles, include 2-3 books published within the last 2 years that would appeal to the same readers."""

METADATA_PROMPT = """Provide detailed publication information for the book '{title}'. Respond with a JSON object:
{{
  "title": "Full title",
  "author": "Author name",
  "imprint": "Publishing house/imprint",
  "publication_date": "YYYY-MM-DD",
  "nyt_bestseller": true,
  "copies_sold": "Approximate number",
  "marketing_strategy": "Brief summary of launch marketing strategy"
}}"""

DETAILS_PROMPT = """Analyze this manuscript excerpt and provide its key details as a JSON object:
{{
  "title": "Working title, if one can be inferred",
  "genre": "Primary genre",
  "targetAudience": "Who the book is for",
  "comparableTitles": ["Comparable published book", "..."],
  "marketPotential": "Short assessment of commercial potential",
  "uniqueSellingPoints": ["What sets the manuscript apart", "..."]
}}

Text: {excerpt}"""

_CODE_FENCE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)


class AnalysisError(RuntimeError):
    transient = False


class NoContent(AnalysisError):
    pass


class MalformedResponse(AnalysisError):
    pass


class UpstreamError(AnalysisError):
    def __init__(self, message: str, transient: bool = False, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class InvalidCredentials(UpstreamError):
    def __init__(self, message: str, status_code: Optional[int] = 401) -> None:
        super().__init__(message, transient=False, status_code=status_code)


class RateLimited(UpstreamError):
    def __init__(self, message: str, status_code: Optional[int] = 429) -> None:
        super().__init__(message, transient=True, status_code=status_code)


def classify_openai_error(exc: Exception) -> AnalysisError:
    """Map an OpenAI SDK exception onto the analysis error taxonomy."""
    if isinstance(exc, openai.AuthenticationError):
        return InvalidCredentials(f"Completion service rejected credentials: {exc}")
    if isinstance(exc, openai.RateLimitError):
        return RateLimited(f"Completion service rate limit reached: {exc}")
    if isinstance(exc, openai.APITimeoutError):
        return UpstreamError(f"Completion service timed out: {exc}", transient=True)
    if isinstance(exc, openai.APIConnectionError):
        return UpstreamError(f"Could not reach completion service: {exc}", transient=True)
    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        return UpstreamError(
            f"Completion service error ({status}): {exc}",
            transient=status >= 500,
            status_code=status,
        )
    return UpstreamError(f"Completion service error: {exc}")


def parse_json_object(content: Optional[str]) -> Dict[str, Any]:
    if not content or not content.strip():
        raise NoContent("No content received from completion service")
    cleaned = _CODE_FENCE.sub("", content).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise MalformedResponse(f"Failed to parse analysis results: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedResponse("Failed to parse analysis results: expected a JSON object")
    return payload


def build_prompt(text: str, synopsis: str, excerpt_chars: int) -> str:
    return ANALYSIS_PROMPT.format(excerpt=truncate_text(text, excerpt_chars), synopsis=synopsis)


V = TypeVar("V")


class MetadataCache(Generic[V]):
    """
    Process-local cache with a time-to-live and a ceiling on entry count.

    The least recently used entry is evicted once ``max_entries`` is
    reached. Expired entries are dropped on read and purged on every insert.
    """

    def __init__(self, ttl_seconds: float, max_entries: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, tuple[float, V]]" = OrderedDict()
        self._lock = Lock()

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def set(self, key: str, value: V) -> None:
        with self._lock:
            now = self._clock()
            expired = [name for name, (stored_at, _) in self._entries.items() if now - stored_at >= self.ttl_seconds]
            for name in expired:
                del self._entries[name]
            self._entries[key] = (now, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class AnalysisClient:
    """Completion-service client for manuscript analysis, book metadata and book details."""

    def __init__(self, settings: OpenAISettings, client: Optional[OpenAI] = None) -> None:
        self.settings = settings
        self._client = client
        self._client_lock = Lock()
        self.metadata_cache: MetadataCache[BookMetadata] = MetadataCache(
            ttl_seconds=settings.metadata_cache_ttl_hours * 3600,
            max_entries=settings.metadata_cache_max_entries,
        )

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(self.settings.api_key)

    def _get_client(self) -> OpenAI:
        with self._client_lock:
            if self._client is None:
                if not self.settings.api_key:
                    raise InvalidCredentials("OpenAI API key is not configured", status_code=None)
                self._client = OpenAI(
                    api_key=self.settings.api_key,
                    organization=self.settings.organization,
                    base_url=self.settings.base_url,
                    timeout=self.settings.timeout_seconds,
                    max_retries=0,
                )
            return self._client

    def _complete(self, messages: List[Dict[str, str]], json_mode: bool = True, max_tokens: Optional[int] = None) -> Optional[str]:
        client = self._get_client()
        kwargs: Dict[str, Any] = {
            "model": self.settings.model,
            "messages": messages,
            "temperature": self.settings.temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens

        try:
            completion = client.chat.completions.create(**kwargs)
        except openai.OpenAIError as exc:
            error = classify_openai_error(exc)
            logger.warning(f"Completion request failed: {error}")
            raise error from exc

        if not completion.choices:
            return None
        return completion.choices[0].message.content

    def analyze(self, text: str, synopsis: str) -> AnalysisResult:
        """
        Analyze a manuscript.

        Args:
            text: Extracted manuscript text; only an excerpt is sent
            synopsis: The author's synopsis, sent in full

        Returns:
            AnalysisResult in the canonical schema

        Raises:
            NoContent, MalformedResponse, UpstreamError
        """
        if not text or not text.strip():
            raise NoContent("Submission has no manuscript text to analyze")

        prompt = build_prompt(text, synopsis, self.settings.excerpt_chars)
        logger.info(f"Requesting analysis from {self.settings.model} ({min(len(text), self.settings.excerpt_chars)} characters)")
        content = self._complete([
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ])
        payload = parse_json_object(content)
        try:
            return AnalysisResult.model_validate(payload)
        except ValidationError as exc:
            raise MalformedResponse(f"Analysis response did not match the expected schema: {exc.error_count()} errors") from exc

    def get_book_metadata(self, title: str) -> BookMetadata:
        content = self._complete([
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": METADATA_PROMPT.format(title=title)},
        ])
        payload = parse_json_object(content)
        payload.setdefault("title", title)
        try:
            return BookMetadata.model_validate(payload)
        except ValidationError as exc:
            raise MalformedResponse(f"Book metadata did not match the expected schema: {exc.error_count()} errors") from exc

    def get_cached_book_metadata(self, title: str) -> BookMetadata:
        key = title.strip().casefold()
        cached = self.metadata_cache.get(key)
        if cached is not None:
            return cached
        metadata = self.get_book_metadata(title.strip())
        self.metadata_cache.set(key, metadata)
        return metadata

    def check_connection(self) -> None:
        self._complete([{"role": "user", "content": "Test connection"}], json_mode=False, max_tokens=5)

    def get_book_details(self, text: str) -> BookDetails:
        """Summarize the selling points of a manuscript excerpt. Nothing is stored or cached."""
        if not text or not text.strip():
            raise NoContent("Text content is required")
        content = self._complete([
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": DETAILS_PROMPT.format(excerpt=truncate_text(text, self.settings.excerpt_chars))},
        ])
        payload = parse_json_object(content)
        try:
            return BookDetails.model_validate(payload)
        except ValidationError as exc:
            raise MalformedResponse(f"Failed to parse book details: {exc.error_count()} errors") from exc
