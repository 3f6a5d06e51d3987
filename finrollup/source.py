"""
Async HTTP client for the hosted rollup data source.

The source exposes a PostgREST-style API: stored-procedure RPCs under
/rest/v1/rpc/{function} and table reads under /rest/v1/{table}.

Features:
- Connection pooling with httpx
- Exponential backoff retry on connection errors
- Circuit breaker shared by every client instance
- Request IDs forwarded as X-Request-ID
"""
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx

from finrollup.config import config
from finrollup.exceptions import SourceAPIError, SourceConnectionError, SourceDataError
from finrollup.observability import Timer, get_logger, get_request_id
from finrollup.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    RetryConfig,
    retry_with_backoff,
)

logger = get_logger(__name__)

JSONResult = Union[List[Dict[str, Any]], Dict[str, Any], None]

# Resilience configuration
RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.5,
    max_delay=8.0,
    exponential_base=2.0,
)

CIRCUIT_BREAKER_CONFIG = CircuitBreakerConfig(
    failure_threshold=5,
    recovery_timeout=30.0,
    half_open_requests=1,
)

# Global circuit breaker instance
_circuit_breaker = CircuitBreaker(config=CIRCUIT_BREAKER_CONFIG)


def eq(value: Any) -> str:
    """PostgREST equality filter."""
    return f"eq.{value}"


def neq(value: Any) -> str:
    return f"neq.{value}"


def gte(value: Any) -> str:
    return f"gte.{value}"


def lte(value: Any) -> str:
    return f"lte.{value}"


def in_(values: Sequence[Any]) -> str:
    """PostgREST membership filter: in.(a,b,c)."""
    return "in.(" + ",".join(str(v) for v in values) + ")"


class RollupSourceClient:
    """
    Async HTTP client for the hosted data source.

    Usage:
        async with RollupSourceClient() as client:
            rows = await client.rpc("get_actblue_daily_rollup", params)
            txns = await client.select("actblue_transactions_secure", filters)
    """

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        timeout: float = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        """
        Initialize source client.

        Args:
            api_key: Service key (defaults to ROLLUP_SOURCE_KEY)
            base_url: Project URL (defaults to ROLLUP_SOURCE_URL)
            timeout: Request timeout in seconds
            circuit_breaker: Breaker to use (defaults to the shared one)
            retry_config: Retry behavior for connection errors
        """
        self.api_key = api_key or config.source.api_key
        self.base_url = (base_url or config.source.base_url).rstrip("/")
        self.timeout = timeout or config.source.request_timeout
        self.circuit_breaker = circuit_breaker or _circuit_breaker
        self.retry_config = retry_config or RETRY_CONFIG
        self._client: Optional[httpx.AsyncClient] = None

        if not self.api_key:
            raise ValueError("ROLLUP_SOURCE_KEY is required")
        if not self.base_url:
            raise ValueError("ROLLUP_SOURCE_URL is required")

    @property
    def headers(self) -> Dict[str, str]:
        """Request headers with auth."""
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def connect(self) -> None:
        """Create HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                timeout=self.timeout,
                limits=httpx.Limits(
                    max_keepalive_connections=10,
                    max_connections=20,
                ),
            )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RollupSourceClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> JSONResult:
        """
        Make HTTP request with retry and circuit breaker.

        Raises:
            SourceConnectionError: Network/timeout errors (after retries)
            SourceAPIError: Source returned error response
            SourceDataError: Response body is not JSON
            CircuitOpenError: Circuit breaker is open
        """
        if not await self.circuit_breaker.can_execute():
            raise CircuitOpenError(f"Circuit breaker is open, request to {path} rejected")

        try:
            result = await retry_with_backoff(
                self._do_request,
                method, path, params, json,
                config=self.retry_config,
                retryable_exceptions=(SourceConnectionError,),
            )
        except (SourceAPIError, SourceConnectionError):
            await self.circuit_breaker.record_failure()
            raise

        await self.circuit_breaker.record_success()
        return result

    async def _do_request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> JSONResult:
        """Execute a single HTTP request (called by retry wrapper)."""
        if not self._client:
            await self.connect()

        url = f"{self.base_url}/rest/v1/{path}"

        request_headers = {}
        request_id = get_request_id()
        if request_id:
            request_headers["X-Request-ID"] = request_id

        try:
            with Timer(f"source_{path}", logger):
                response = await self._client.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json,
                    headers=request_headers or None,
                )
        except httpx.TimeoutException as e:
            logger.error(
                f"Request timeout: {method} {path}",
                extra={"path": path, "timeout": self.timeout}
            )
            raise SourceConnectionError(
                f"Request timeout after {self.timeout}s",
                retry_after=5
            ) from e
        except httpx.RequestError as e:
            logger.error(
                f"Request failed: {method} {path} - {e}",
                extra={"path": path, "error": str(e)}
            )
            raise SourceConnectionError(str(e)) from e

        if response.status_code >= 400:
            error_text = response.text[:500]
            error_code = None
            try:
                body = response.json()
                if isinstance(body, dict):
                    error_code = body.get("code")
            except ValueError:
                pass
            logger.error(
                f"Source error {response.status_code}: {error_text}",
                extra={"path": path, "status_code": response.status_code}
            )
            raise SourceAPIError(
                f"Source returned {response.status_code}",
                details=error_text,
                status_code=response.status_code,
                error_code=error_code,
            )

        if not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise SourceDataError(
                f"Non-JSON response from {path}",
                details=response.text[:200],
                expected="JSON",
                got=response.headers.get("content-type", "unknown"),
            ) from e

    # ═══════════════════════════════════════════════════════════════════════════
    # RPC / TABLE METHODS
    # ═══════════════════════════════════════════════════════════════════════════

    async def rpc(self, function: str, params: Optional[Dict[str, Any]] = None) -> JSONResult:
        """
        Call a stored procedure.

        Args:
            function: Procedure name, e.g. "get_actblue_daily_rollup"
            params: Named procedure arguments

        Returns:
            Decoded JSON (list of rows, single object, or None)
        """
        return await self._request("POST", f"rpc/{function}", json=params or {})

    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        columns: str = "*",
        order: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Read rows from a table.

        Args:
            table: Table or view name
            filters: PostgREST filters, e.g. {"organization_id": eq(org_id)};
                a list value repeats the parameter (for ranges on one column)
            columns: Column selection
            order: Order clause, e.g. "transaction_date.asc"
            limit: Maximum rows
            offset: Rows to skip

        Returns:
            List of row dicts

        Raises:
            SourceDataError: If the response is not a list
        """
        params: Dict[str, Any] = {"select": columns}
        params.update(filters or {})
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = limit
        if offset:
            params["offset"] = offset

        result = await self._request("GET", table, params=params)
        if result is None:
            return []
        if not isinstance(result, list):
            raise SourceDataError(
                f"Unexpected response from {table}",
                expected="list",
                got=type(result).__name__,
            )
        return result
