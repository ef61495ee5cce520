"""
Article normalization - shape raw TDX knowledge base records into Article.

TDX is not consistent about field names across endpoints and versions
(Name vs Title, Body vs Content, CreatedBy* vs Author*). Each target field
lists its candidate upstream names in order; the first non-empty value wins.

normalize_article never raises: a missing, null or wrongly-typed field falls
back to the Article default for that field.
"""

import logging
from typing import Any, Callable, Optional

from models import Article, Author

logger = logging.getLogger(__name__)


# Ordered candidate upstream names per Article field
ID_FIELDS = ("ID", "Id")
TITLE_FIELDS = ("Name", "Title")
SUMMARY_FIELDS = ("Summary",)
CONTENT_FIELDS = ("Body", "Content")
CATEGORY_FIELDS = ("CategoryName",)
CATEGORY_ID_FIELDS = ("CategoryID",)
TAGS_FIELDS = ("Tags",)
CREATED_DATE_FIELDS = ("CreatedDate",)
MODIFIED_DATE_FIELDS = ("ModifiedDate",)
IS_PUBLIC_FIELDS = ("IsPublic",)
IS_PINNED_FIELDS = ("IsPinned",)
AUTHOR_NAME_FIELDS = ("CreatedByName", "AuthorName")
AUTHOR_EMAIL_FIELDS = ("CreatedByEmail", "AuthorEmail")
URL_FIELDS = ("URI", "Url")
RATING_FIELDS = ("Rating",)
VIEW_COUNT_FIELDS = ("ViewCount",)


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def first_present(raw: dict, candidates: tuple[str, ...]) -> Any:
    """Return the first non-empty value among candidate keys, else None."""
    for key in candidates:
        value = raw.get(key)
        if not _is_empty(value):
            return value
    return None


def _as_text(value: Any) -> str:
    if _is_empty(value):
        return ""
    return str(value)


def _as_optional_text(value: Any) -> Optional[str]:
    if _is_empty(value):
        return None
    return str(value)


def _as_int(value: Any) -> Optional[int]:
    if _is_empty(value) or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _as_rating(value: Any) -> Optional[float]:
    # TDX reports unrated articles as 0
    if _is_empty(value) or isinstance(value, bool):
        return None
    try:
        rating = float(value)
    except (TypeError, ValueError):
        return None
    return rating or None


def _as_tags(value: Any) -> list[str]:
    if isinstance(value, str):
        return [tag.strip() for tag in value.split(",") if tag.strip()]
    if not isinstance(value, (list, tuple)):
        return []
    return [str(tag) for tag in value if not _is_empty(tag)]


def _field(raw: dict, candidates: tuple[str, ...], convert: Callable[[Any], Any]) -> Any:
    return convert(first_present(raw, candidates))


def normalize_article(raw: Any, base_url: str, default_id: Optional[int] = None) -> Article:
    """
    Map one raw TDX article record to the canonical Article.

    Args:
        raw: Decoded JSON object from TDX (anything else is treated as {})
        base_url: TDX base URL, used to build the article link when TDX gives none
        default_id: Id to use when the record carries no id (e.g. the id we asked for)
    """
    if not isinstance(raw, dict):
        if raw is not None:
            logger.warning(f"Unexpected article payload type: {type(raw).__name__}")
        raw = {}

    article_id = _field(raw, ID_FIELDS, _as_int)
    if article_id is None:
        article_id = default_id

    url = _field(raw, URL_FIELDS, _as_text)
    if not url and article_id is not None:
        url = f"{base_url}/kb/article/{article_id}"

    view_count = _field(raw, VIEW_COUNT_FIELDS, _as_int)

    return Article(
        id=article_id,
        title=_field(raw, TITLE_FIELDS, _as_text),
        summary=_field(raw, SUMMARY_FIELDS, _as_text),
        content=_field(raw, CONTENT_FIELDS, _as_text),
        category=_field(raw, CATEGORY_FIELDS, _as_text),
        category_id=_field(raw, CATEGORY_ID_FIELDS, _as_int),
        tags=_field(raw, TAGS_FIELDS, _as_tags),
        created_date=_field(raw, CREATED_DATE_FIELDS, _as_optional_text),
        modified_date=_field(raw, MODIFIED_DATE_FIELDS, _as_optional_text),
        is_public=_field(raw, IS_PUBLIC_FIELDS, _as_bool),
        is_pinned=_field(raw, IS_PINNED_FIELDS, _as_bool),
        author=Author(
            name=_field(raw, AUTHOR_NAME_FIELDS, _as_text),
            email=_field(raw, AUTHOR_EMAIL_FIELDS, _as_text),
        ),
        url=url,
        rating=_field(raw, RATING_FIELDS, _as_rating),
        view_count=view_count if view_count is not None else 0,
    )
