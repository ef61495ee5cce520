"""Shared fixtures: an in-process fake of the TDX client used by service and API tests."""

from typing import Optional

import pytest

from models import Article, Author, SearchResult


class FakeTDXClient:
    """Stands in for TDXClient; articles live in a dict, failures are injected per id."""

    auth_method = "static_token"

    def __init__(self):
        self.articles: dict[int, Article] = {
            1: Article(
                id=1,
                title="Reset your password",
                summary="Self-service password reset",
                content="<p>Open the portal and choose Forgot password.</p>",
                category="Accounts",
                category_id=10,
                tags=["password", "accounts"],
                author=Author(name="Service Desk", email="help@example.edu"),
                url="https://tdx.example.edu/kb/article/1",
                view_count=120,
            ),
            2: Article(
                id=2,
                title="Add a network printer",
                category="Printing",
                category_id=20,
                url="https://tdx.example.edu/kb/article/2",
            ),
            3: Article(
                id=3,
                title="Printer shows offline",
                category="Printing",
                category_id=20,
                url="https://tdx.example.edu/kb/article/3",
            ),
        }
        self.article_errors: dict[int, Exception] = {}
        self.search_error: Optional[Exception] = None
        self.probe_error: Optional[Exception] = None
        self.calls = {"get_article": 0, "search_articles": 0, "test_connection": 0}

    async def get_article(self, article_id: int) -> Optional[Article]:
        self.calls["get_article"] += 1
        if article_id in self.article_errors:
            raise self.article_errors[article_id]
        return self.articles.get(article_id)

    async def search_articles(self, query: str, category: Optional[str] = None, limit: int = 10, offset: int = 0) -> SearchResult:
        self.calls["search_articles"] += 1
        if self.search_error:
            raise self.search_error
        matches = [
            article for article in self.articles.values()
            if query.lower() in article.title.lower()
            and (category is None or str(article.category_id) == category)
        ]
        return SearchResult(
            articles=matches[offset:offset + limit],
            total_count=len(matches),
            query=query,
            category=category,
            limit=limit,
            offset=offset,
        )

    async def test_connection(self) -> dict:
        self.calls["test_connection"] += 1
        if self.probe_error:
            raise self.probe_error
        return {"status": "Connected", "response_time": "5ms", "api_version": "1.0"}


@pytest.fixture
def fake_tdx() -> FakeTDXClient:
    return FakeTDXClient()
