"""TDX API client - bearer token lifecycle, knowledge base calls and error classification."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, NamedTuple, Optional

import aiohttp

import metrics
from config import TDXSettings
from exceptions import (
    AuthError,
    GatewayError,
    TDXConnectionError,
    TDXServiceError,
    UpstreamHTTPError,
)
from models import Article, SearchResult
from normalization import normalize_article

logger = logging.getLogger(__name__)


@dataclass
class CredentialState:
    """
    Bearer credential held by one TDXClient.

    static_token always wins when set. Otherwise token is usable only while
    time.time() < expires_at. Only a successful login sets token/expires_at;
    only an upstream 401 clears them.
    """
    token: Optional[str] = None
    expires_at: Optional[float] = None
    static_token: Optional[str] = None

    def is_valid(self, now: float) -> bool:
        return bool(self.token) and self.expires_at is not None and now < self.expires_at

    def store(self, token: str, expires_at: float) -> None:
        self.token = token
        self.expires_at = expires_at

    def clear(self) -> None:
        self.token = None
        self.expires_at = None


class UpstreamResponse(NamedTuple):
    status: int
    headers: Mapping[str, str]
    data: Any


class TDXClient:
    """
    Async client for the TeamDynamix knowledge base API.

    One instance is shared by all requests; the aiohttp session is pooled and
    the bearer token is refreshed on demand. No call is retried here.
    """

    # TDX tokens live 60 minutes; refresh well before that.
    TOKEN_LIFETIME_SEC = 50 * 60
    USER_AGENT = "TDX-KB-Gateway/1.0.0"

    LOGIN_PATH = "/api/auth/login"
    PROBE_PATH = "/api/people/lookup"
    ARTICLE_PATH = "/api/knowledgebase/articles/{article_id}"
    SEARCH_PATH = "/api/knowledgebase/search"

    def __init__(self, settings: TDXSettings):
        self.settings = settings
        self.credentials = CredentialState(static_token=settings.static_token)
        self.session: Optional[aiohttp.ClientSession] = None
        self._refresh_lock = asyncio.Lock()

        if not settings.base_url:
            logger.warning("TDX_BASE_URL not set - upstream calls will fail")
        logger.info(f"TDXClient initialized (auth={self.auth_method}, timeout={settings.timeout_ms}ms)")

    @property
    def auth_method(self) -> str:
        if self.settings.static_token:
            return "static_token"
        if self.settings.username and self.settings.password:
            return "login"
        return "none"

    async def connect(self) -> None:
        """Create aiohttp session for connection pooling."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.timeout_seconds),
                headers={"Content-Type": "application/json", "User-Agent": self.USER_AGENT},
            )
            logger.info("TDX connection pool created")

    async def disconnect(self) -> None:
        """Close aiohttp session."""
        if self.session:
            await self.session.close()
            self.session = None
            logger.info("TDX connection pool closed")

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    async def get_token(self) -> str:
        """
        Return a bearer token for TDX.

        Order: static token, cached login token (until expiry), fresh login.
        Raises AuthError when no method is configured or the login fails;
        nothing is stored on failure so the next call starts over.
        """
        if self.credentials.static_token:
            return self.credentials.static_token

        if self.credentials.is_valid(time.time()):
            return self.credentials.token

        if not (self.settings.username and self.settings.password):
            self._log_auth_failure("No authentication method configured")
            raise AuthError("No authentication method configured")

        async with self._refresh_lock:
            # Another request may have refreshed while we waited
            if self.credentials.is_valid(time.time()):
                return self.credentials.token
            return await self._login()

    async def _login(self) -> str:
        """POST credentials to TDX and store the returned token."""
        await self.connect()
        url = f"{self.settings.base_url}{self.LOGIN_PATH}"
        payload = {"username": self.settings.username, "password": self.settings.password}

        try:
            async with self.session.post(url, json=payload) as response:
                status = response.status
                reason = response.reason
                body = await response.text()
        except asyncio.TimeoutError as e:
            raise self._login_failed(f"login timed out after {self.settings.timeout_ms}ms") from e
        except aiohttp.ClientError as e:
            raise self._login_failed(f"{type(e).__name__}: {e}") from e
        except UnicodeDecodeError as e:
            raise self._login_failed(f"login response is not valid text: {e}") from e

        if status >= 400:
            raise self._login_failed(f"HTTP {status} {reason}", upstream_status=status)

        token = self._extract_token(body)
        if not token:
            raise self._login_failed("login response did not contain a token", upstream_status=status)

        expires_at = time.time() + self.TOKEN_LIFETIME_SEC
        self.credentials.store(token, expires_at)
        metrics.record_token_refresh(success=True)

        expiry = datetime.fromtimestamp(expires_at, tz=timezone.utc).isoformat()
        logger.info(f"TDX authentication successful | token expires {expiry}")
        return token

    @staticmethod
    def _extract_token(body: str) -> Optional[str]:
        # Login answers either {"token": "..."} or the bare token string
        body = body.strip()
        if not body:
            return None
        try:
            data = json.loads(body)
        except ValueError:
            return body
        if isinstance(data, dict):
            token = data.get("token")
            return token if isinstance(token, str) and token else None
        if isinstance(data, str):
            return data or None
        return None

    def _login_failed(self, reason: str, upstream_status: Optional[int] = None) -> AuthError:
        metrics.record_token_refresh(success=False)
        message = f"Authentication failed: {reason}"
        self._log_auth_failure(message, upstream_status)
        return AuthError(message, upstream_status=upstream_status)

    def _log_auth_failure(self, message: str, upstream_status: Optional[int] = None) -> None:
        logger.error(
            f"TDX authentication failed: {message} | status={upstream_status} "
            f"has_username={bool(self.settings.username)} "
            f"has_password={bool(self.settings.password)} "
            f"has_static_token={bool(self.settings.static_token)}"
        )

    # -------------------------------------------------------------------------
    # Request wrapper
    # -------------------------------------------------------------------------

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Optional[dict] = None,
        parse_json: bool = True,
    ) -> UpstreamResponse:
        """
        Issue one authenticated call to TDX.

        Attaches the bearer token, records metrics and classifies the outcome:
        non-2xx -> UpstreamHTTPError (a 401 also clears the cached token),
        network failures and timeouts propagate as raised by aiohttp.
        """
        token = await self.get_token()
        await self.connect()

        url = f"{self.settings.base_url}{path}"
        headers = {"Authorization": f"Bearer {token}"}
        start_time = time.perf_counter()

        try:
            async with self.session.request(method, url, json=payload, headers=headers) as response:
                status = response.status
                reason = response.reason
                response_headers = response.headers
                body = await response.text()
        except asyncio.TimeoutError:
            metrics.record_upstream_call(operation, "timeout", time.perf_counter() - start_time)
            logger.error(f"TDX API timeout after {self.settings.timeout_ms}ms | {method} {path}")
            raise
        except aiohttp.ClientError as e:
            metrics.record_upstream_call(operation, "network_error", time.perf_counter() - start_time)
            logger.error(f"TDX API network error | {method} {path} | {type(e).__name__}: {e}")
            raise
        except UnicodeDecodeError as e:
            metrics.record_upstream_call(operation, "http_error", time.perf_counter() - start_time)
            logger.error(f"TDX API undecodable response | {method} {path} | {e}")
            raise

        elapsed = time.perf_counter() - start_time

        if status >= 400:
            message = self._error_message(body) or reason or "Unknown error"

            if status == 401:
                self.credentials.clear()
                logger.warning("TDX authentication token expired or invalid - cleared cached token")
                outcome = "unauthorized"
            elif status == 404:
                outcome = "not_found"
            else:
                outcome = "http_error"

            metrics.record_upstream_call(operation, outcome, elapsed)
            if status == 404:
                logger.info(f"TDX API 404 | {method} {path}")
            else:
                logger.error(f"TDX API error | status={status} | {method} {path} | {message}")
            raise UpstreamHTTPError(status, reason, message, url)

        metrics.record_upstream_call(operation, "success", elapsed)
        logger.debug(f"TDX API {status} | {method} {path} | {elapsed * 1000:.1f}ms")

        data = json.loads(body) if parse_json and body.strip() else None
        return UpstreamResponse(status=status, headers=response_headers, data=data)

    @staticmethod
    def _error_message(body: str) -> Optional[str]:
        try:
            data = json.loads(body)
        except ValueError:
            return None
        if isinstance(data, dict):
            message = data.get("message") or data.get("Message")
            if message:
                return str(message)
        return None

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def test_connection(self) -> dict:
        """Liveness probe against a cheap TDX endpoint."""
        try:
            response = await self._send("test_connection", "GET", self.PROBE_PATH, parse_json=False)
        except (GatewayError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"TDX connection test failed: {e}")
            raise TDXConnectionError(f"TDX connection failed: {e}") from e

        return {
            "status": "Connected",
            "response_time": response.headers.get("X-Response-Time", "N/A"),
            "api_version": response.headers.get("API-Version", "N/A"),
        }

    async def get_article(self, article_id: int) -> Optional[Article]:
        """
        Fetch one article by id.

        Returns None when TDX answers 404. Any other failure raises
        TDXServiceError; AuthError propagates as is.
        """
        logger.info(f"Fetching TDX article {article_id}")
        path = self.ARTICLE_PATH.format(article_id=article_id)

        try:
            response = await self._send("get_article", "GET", path)
        except UpstreamHTTPError as e:
            if e.status == 404:
                logger.warning(f"Article not found: {article_id}")
                return None
            logger.error(f"Article fetch failed: {article_id} | {e}")
            raise TDXServiceError.wrap("Article fetch failed", e) from e
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Article fetch failed: {article_id} | {type(e).__name__}: {e}")
            raise TDXServiceError.wrap("Article fetch failed", e) from e

        return normalize_article(response.data, self.settings.base_url, default_id=article_id)

    async def search_articles(
        self,
        query: str,
        category: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> SearchResult:
        """Keyword search over the knowledge base."""
        payload: dict[str, Any] = {
            "searchText": query,
            "maxResults": limit,
            "startIndex": offset,
        }
        if category:
            payload["categoryId"] = category
        if self.settings.app_id:
            payload["appId"] = self.settings.app_id

        logger.info(f"Searching TDX knowledge base | query={query!r} category={category} limit={limit} offset={offset}")

        try:
            response = await self._send("search_articles", "POST", self.SEARCH_PATH, payload=payload)
        except (UpstreamHTTPError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Article search failed | query={query!r} | {type(e).__name__}: {e}")
            raise TDXServiceError.wrap("Search failed", e) from e

        raw_articles = response.data if response.data is not None else []
        if not isinstance(raw_articles, list):
            logger.error(f"Article search failed | unexpected payload type {type(raw_articles).__name__}")
            raise TDXServiceError("Search failed", upstream_status=response.status)

        articles = [normalize_article(raw, self.settings.base_url) for raw in raw_articles]

        return SearchResult(
            articles=articles,
            total_count=self._total_count(response.headers, len(articles)),
            query=query,
            category=category,
            limit=limit,
            offset=offset,
        )

    @staticmethod
    def _total_count(headers: Mapping[str, str], fallback: int) -> int:
        raw = headers.get("X-Total-Count")
        if raw is None:
            return fallback
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"Ignoring invalid X-Total-Count header: {raw!r}")
            return fallback


tdx_client: Optional[TDXClient] = None


async def initialize_tdx_client(settings: TDXSettings) -> TDXClient:
    """Create and connect the shared TDX client."""
    global tdx_client

    tdx_client = TDXClient(settings)
    await tdx_client.connect()
    return tdx_client


async def cleanup_tdx_client() -> None:
    """Close the shared TDX client."""
    global tdx_client

    if tdx_client:
        await tdx_client.disconnect()
        tdx_client = None
