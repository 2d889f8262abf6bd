"""Bounded, concurrent enrichment of suggested books.

Each suggestion is enriched independently:

    title ──► BookMetadataFetcher (model + Google Search grounding, JSON)
                    │
                    ├─ metadata ──► fill only the empty fields
                    └─ failure  ──► leave the record as it is
                    │
              IsbnAllocator ──► suggested_isbn (always re-derived, unique)

The batch runs under its own semaphore (not the process-wide rate gate),
waits for every item and never lets one failure cancel its siblings.
"""
import asyncio
import json
import logging
import os
import random
import uuid
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .collaborators import IsbnRegistry
from .errors import ConfigurationError
from .llm.extract import extract_first_text
from .llm.gateway import LlmGateway
from .llm.schemas import GenerateContentRequest
from .normalizer import parse_json_object

logger = logging.getLogger(__name__)

ISBN_PREFIX = "978"
ISBN_RANDOM_ATTEMPTS = 25

METADATA_SYSTEM_PROMPT = """You are the purchasing assistant of a bookstore.
Find complete, up-to-date information about the book the administrator is considering
restocking. Use Google Search (description, authors, publisher, page count, publication
year, retail price, cover image, ISBN).
Return only JSON:
{
  "title": "...",
  "description": "...",
  "authors": ["...", "..."],
  "publisher": "...",
  "publishYear": 2024,
  "pageCount": 320,
  "priceVnd": 145000,
  "priceDisplay": "145.000 VND at Tiki",
  "category": "Self-help",
  "isbn": "9786041234567",
  "imageUrl": "https://...",
  "sourceName": "Tiki",
  "sourceUrl": "https://..."
}"""


def default_concurrency() -> int:
    return max(2, min(8, 2 * (os.cpu_count() or 1)))


def normalize_isbn(isbn: str) -> str:
    """Keep letters and digits only."""
    return "".join(ch for ch in isbn if ch.isalnum())


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class BookSuggestion(BaseModel):
    """A book the model suggests stocking, progressively filled in."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    isbn: Optional[str] = None
    title: str = ""
    category: Optional[str] = None
    reason: Optional[str] = None
    description: Optional[str] = None
    author_name: Optional[str] = Field(default=None, alias="authorName")
    publisher_name: Optional[str] = Field(default=None, alias="publisherName")
    page_count: Optional[int] = Field(default=None, alias="pageCount")
    publish_year: Optional[int] = Field(default=None, alias="publishYear")
    suggested_price: Optional[float] = Field(default=None, alias="suggestedPrice")
    market_price: Optional[str] = Field(default=None, alias="marketPrice")
    market_source_name: Optional[str] = Field(default=None, alias="marketSourceName")
    market_source_url: Optional[str] = Field(default=None, alias="marketSourceUrl")
    cover_image_url: Optional[str] = Field(default=None, alias="coverImageUrl")
    suggested_isbn: Optional[str] = Field(default=None, alias="suggestedIsbn")
    suggested_stock: Optional[int] = Field(default=None, alias="suggestedStock")

    @field_validator("title", mode="before")
    @classmethod
    def _title_text(cls, v: Any) -> str:
        if v is None:
            return ""
        return (v if isinstance(v, str) else str(v)).strip()

    @field_validator("isbn", "category", "reason", mode="before")
    @classmethod
    def _optional_text(cls, v: Any) -> Optional[str]:
        if v is None or isinstance(v, str):
            return v
        return str(v)


class BookMetadata(BaseModel):
    """Metadata found for a title. Fields of the wrong type are dropped."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    title: Optional[str] = None
    description: Optional[str] = None
    author_name: Optional[str] = Field(default=None, alias="authors")
    publisher: Optional[str] = None
    publish_year: Optional[int] = Field(default=None, alias="publishYear")
    page_count: Optional[int] = Field(default=None, alias="pageCount")
    price_vnd: Optional[float] = Field(default=None, alias="priceVnd")
    price_display: Optional[str] = Field(default=None, alias="priceDisplay")
    category: Optional[str] = None
    isbn: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    source_name: Optional[str] = Field(default=None, alias="sourceName")
    source_url: Optional[str] = Field(default=None, alias="sourceUrl")

    @field_validator(
        "title", "description", "publisher", "price_display", "category",
        "isbn", "image_url", "source_name", "source_url",
        mode="before"
    )
    @classmethod
    def _string_or_none(cls, v: Any) -> Optional[str]:
        if isinstance(v, str) and v.strip():
            return v.strip()
        return None

    @field_validator("author_name", mode="before")
    @classmethod
    def _join_authors(cls, v: Any) -> Optional[str]:
        if isinstance(v, str):
            return v.strip() or None
        if isinstance(v, list):
            names = [item.strip() for item in v if isinstance(item, str) and item.strip()]
            return ", ".join(names) or None
        return None

    @field_validator("publish_year", "page_count", mode="before")
    @classmethod
    def _int_or_none(cls, v: Any) -> Optional[int]:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return None
        return int(v)

    @field_validator("price_vnd", mode="before")
    @classmethod
    def _number_or_none(cls, v: Any) -> Optional[float]:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return None
        return float(v)


def merge_metadata(suggestion: BookSuggestion, metadata: BookMetadata) -> BookSuggestion:
    """Fill the suggestion's empty fields from metadata; populated fields win."""
    candidates = {
        "description": metadata.description,
        "author_name": metadata.author_name,
        "publisher_name": metadata.publisher,
        "page_count": metadata.page_count,
        "suggested_price": metadata.price_vnd,
        "cover_image_url": metadata.image_url,
        "market_price": metadata.price_display,
        "market_source_name": metadata.source_name,
        "market_source_url": metadata.source_url,
        "category": metadata.category,
        "publish_year": metadata.publish_year,
    }
    update = {
        name: value
        for name, value in candidates.items()
        if value is not None and _is_empty(getattr(suggestion, name))
    }
    if suggestion.suggested_stock is None:
        update["suggested_stock"] = 0
    return suggestion.model_copy(update=update)


class IsbnAllocator:
    """Derives ISBNs unused in the catalog and unique within one batch.

    Order of preference:
    1. the preferred ISBN, normalized to letters and digits
    2. "978" + 9 random digits, up to 25 attempts
    3. the first 13 hex characters of a random UUID
    """

    def __init__(self, registry: IsbnRegistry, rng: Optional[random.Random] = None):
        self._registry = registry
        self._rng = rng or random.SystemRandom()
        self._allocated: set[str] = set()
        self._lock = asyncio.Lock()

    async def allocate(self, preferred: Optional[str] = None) -> str:
        async with self._lock:
            if preferred:
                normalized = normalize_isbn(preferred)
                if normalized and await self._is_free(normalized):
                    return self._take(normalized)

            for _ in range(ISBN_RANDOM_ATTEMPTS):
                candidate = f"{ISBN_PREFIX}{self._rng.randint(100000000, 999999998)}"
                if await self._is_free(candidate):
                    return self._take(candidate)

            candidate = uuid.uuid4().hex[:13]
            while candidate in self._allocated:
                candidate = uuid.uuid4().hex[:13]
            return self._take(candidate)

    async def _is_free(self, isbn: str) -> bool:
        if isbn in self._allocated:
            return False
        try:
            return not await self._registry.exists(isbn)
        except ConfigurationError:
            raise
        except Exception:
            logger.warning("Could not check ISBN %s against the catalog; skipping it", isbn, exc_info=True)
            return False

    def _take(self, isbn: str) -> str:
        self._allocated.add(isbn)
        return isbn

    @property
    def allocated(self) -> frozenset:
        return frozenset(self._allocated)


class BookMetadataFetcher:
    """Looks a title up through the model with Google Search grounding."""

    def __init__(self, gateway: LlmGateway):
        self._gateway = gateway

    async def fetch(self, title: str) -> Optional[BookMetadata]:
        request = GenerateContentRequest.single_turn(
            METADATA_SYSTEM_PROMPT,
            json.dumps({"title": title}, ensure_ascii=False),
            temperature=0.3,
            tools=[{"googleSearch": {}}],
            response_mime_type="application/json",
        )
        response = await self._gateway.generate_raw(request)
        text = extract_first_text(response)
        if not text:
            return None

        data = parse_json_object(text)
        if data is None:
            logger.warning("Book metadata for %r was not JSON", title)
            return None
        try:
            return BookMetadata.model_validate(data)
        except ValidationError as e:
            logger.warning("Book metadata for %r did not validate: %s", title, e.error_count())
            return None


class EnrichmentPool:
    """Enriches a batch of suggestions with bounded parallelism.

    Example:
        >>> pool = EnrichmentPool(BookMetadataFetcher(gateway), isbn_registry)
        >>> enriched = await pool.enrich(suggestions)
        >>> all(s.suggested_isbn for s in enriched)
        True
    """

    def __init__(
        self,
        fetcher: BookMetadataFetcher,
        isbn_registry: IsbnRegistry,
        max_concurrency: Optional[int] = None,
        rng: Optional[random.Random] = None
    ):
        self._fetcher = fetcher
        self._registry = isbn_registry
        self._max_concurrency = max_concurrency or default_concurrency()
        self._rng = rng
        self._in_flight = 0
        self.peak_in_flight = 0

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    async def enrich(self, suggestions: List[BookSuggestion]) -> List[BookSuggestion]:
        """Enrich every suggestion; results keep the input order."""
        if not suggestions:
            return []
        semaphore = asyncio.Semaphore(self._max_concurrency)
        allocator = IsbnAllocator(self._registry, self._rng)

        results = await asyncio.gather(
            *(self._enrich_one(s, semaphore, allocator) for s in suggestions),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def _enrich_one(
        self,
        suggestion: BookSuggestion,
        semaphore: asyncio.Semaphore,
        allocator: IsbnAllocator
    ) -> BookSuggestion:
        metadata: Optional[BookMetadata] = None
        if suggestion.title:
            async with semaphore:
                self._in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
                try:
                    metadata = await self._fetcher.fetch(suggestion.title)
                except ConfigurationError:
                    raise
                except Exception:
                    logger.exception("Enrichment failed for %r", suggestion.title)
                finally:
                    self._in_flight -= 1

        if metadata is None:
            isbn = await allocator.allocate(suggestion.suggested_isbn)
            return suggestion.model_copy(update={"suggested_isbn": isbn})

        merged = merge_metadata(suggestion, metadata)
        isbn = await allocator.allocate(metadata.isbn or suggestion.suggested_isbn)
        return merged.model_copy(update={"suggested_isbn": isbn})
