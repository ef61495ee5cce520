"""
TDX Gateway Models
Canonical article schema and response envelopes using Pydantic.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Author(BaseModel):
    """Article author as reported by TDX (creator fields preferred)."""

    name: str = ""
    email: str = ""


class Article(BaseModel):
    """Canonical knowledge base article. Every field has a default."""

    id: Optional[int] = None
    title: str = ""
    summary: str = ""
    content: str = ""
    category: str = ""
    category_id: Optional[int] = None
    tags: list[str] = Field(default_factory=list)
    created_date: Optional[str] = None
    modified_date: Optional[str] = None
    is_public: bool = False
    is_pinned: bool = False
    author: Author = Field(default_factory=Author)
    url: str = ""
    rating: Optional[float] = None
    view_count: int = 0

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": 1234,
                "title": "Reset your password",
                "summary": "How to reset a forgotten password",
                "content": "<p>Open the self-service portal...</p>",
                "category": "Accounts",
                "category_id": 12,
                "tags": ["password", "accounts"],
                "created_date": "2024-01-10T15:04:05Z",
                "modified_date": "2024-03-02T09:00:00Z",
                "is_public": True,
                "is_pinned": False,
                "author": {"name": "Service Desk", "email": "help@example.edu"},
                "url": "https://tdx.example.edu/kb/article/1234",
                "rating": 4.5,
                "view_count": 321,
            }
        }
    )


class SearchResult(BaseModel):
    """Normalized search response from TDX."""

    articles: list[Article] = Field(default_factory=list)
    total_count: int = 0
    query: str
    category: Optional[str] = None
    limit: int = 10
    offset: int = 0


class ArticleResponse(Article):
    """Schema for GET /api/v1/articles/{id} responses."""

    cached: bool
    timestamp: str


class BatchArticle(Article):
    cached: bool


class BatchArticlesResponse(BaseModel):
    """Schema for GET /api/v1/articles?ids=... responses."""

    articles: list[BatchArticle]
    requested_count: int
    found_count: int
    timestamp: str


class SearchResponse(SearchResult):
    """Schema for GET /api/v1/search responses."""

    cached: bool
    timestamp: str


class HealthResponse(BaseModel):
    """Schema for GET /health responses."""

    status: str
    timestamp: str
    uptime: float
    environment: str
    version: str
    services: dict[str, str]
    error: Optional[Any] = None
