"""
HTTP client module for the business-management REST API.

Every call to the backend goes through ``ApiClient.request``: it attaches the
bearer token, expects JSON back, turns failures into user-facing exceptions
and retries transient database failures of idempotent requests.
"""

import time
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx
from tenacity import (AsyncRetrying, RetryCallState, retry_if_exception_type,
                      retry_never, stop_after_attempt, wait_incrementing)

from .config import settings
from .exceptions import (ApiException, ApiValidationException,
                         NonJsonResponseException, NotAuthenticatedException,
                         ServiceUnavailableException,
                         TransientDatabaseException)
from .logging_config import get_logger, get_request_id
from .metrics import track_api_request, track_api_retry
from .session import TokenStore

logger = get_logger(__name__)

RetryListener = Callable[[str, int, int], None]

DATABASE_ERROR_MARKERS: Dict[str, tuple] = {
    "prepared_statement": ("prepared statement", "pdo_stmt", "database error"),
    "transaction": (
        "transaction is aborted",
        "in failed sql transaction",
        "commands ignored until end of transaction",
        "current transaction is aborted",
    ),
    "type": (
        "invalid input syntax for type boolean",
        "invalid text representation",
        "type mismatch",
        "cannot cast",
    ),
}

HTML_RESPONSE_MESSAGE = (
    "The server returned an unexpected response. This may be a server error, "
    "a misconfigured endpoint, or a session timeout. Please try again or "
    "contact support if the problem persists."
)
CONNECTION_ERROR_MESSAGE = (
    "Could not connect to the server. Please check your internet connection "
    "or try again later."
)
UNKNOWN_API_ERROR = "An unknown API error occurred."


def classify_database_error(message: str) -> Optional[str]:
    """
    Classify a backend error message as a transient database failure.

    Returns:
        ``prepared_statement``, ``transaction``, ``type`` or None
    """
    lowered = message.lower()
    for kind, markers in DATABASE_ERROR_MARKERS.items():
        if any(marker in lowered for marker in markers):
            return kind
    return None


def extract_error_message(data: Any) -> str:
    """
    Build a single message from an API error body.

    ``message`` may be a plain string or a mapping of field names to lists
    of messages, which are flattened and comma-joined.
    """
    if not isinstance(data, Mapping):
        return UNKNOWN_API_ERROR

    message = data.get("message")
    if isinstance(message, str) and message:
        return message

    if isinstance(message, Mapping):
        parts: List[str] = []
        for value in message.values():
            if isinstance(value, (list, tuple)):
                parts.extend(str(item) for item in value)
            elif value:
                parts.append(str(value))
        if parts:
            return ", ".join(parts)

    return UNKNOWN_API_ERROR


class ApiClient:
    """
    Client for the business-management REST API.

    Uses a persistent ``httpx.AsyncClient`` with connection pooling. The
    token comes from the call (BFF requests carry their own) or from the
    attached ``TokenStore`` (library use with one signed-in session).

    Attributes:
        base_url: Base URL of the API
        timeout: Request timeout in seconds
        max_retries: Retries for transient database failures
        retry_delay: Base delay in seconds, multiplied by the attempt number
        token_store: Session token source for authenticated calls
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        token_store: Optional[TokenStore] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the API client.

        Args:
            base_url: Base URL of the API (defaults to settings)
            timeout: Request timeout in seconds (defaults to settings)
            token_store: Token source for authenticated requests
            max_retries: Retries for transient failures (defaults to settings)
            retry_delay: Base retry delay in seconds (defaults to settings)
            transport: Optional httpx transport, used by tests
        """
        self.base_url = (base_url or settings.API_URL).rstrip("/")
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self.token_store = token_store or TokenStore()
        self.max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = (
            settings.RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._retry_listeners: List[RetryListener] = []

        logger.info(
            f"Initialized ApiClient: base_url={self.base_url}, "
            f"timeout={self.timeout}s, max_retries={self.max_retries}"
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the persistent HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=httpx.Limits(
                    max_keepalive_connections=20,
                    max_connections=100,
                    keepalive_expiry=30.0,
                ),
                transport=self._transport,
            )
            logger.debug("Created new HTTP client with connection pooling")
        return self._client

    async def close(self) -> None:
        """
        Close the HTTP client and release connections.

        Should be called during application shutdown.
        """
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
            logger.debug("Closed HTTP client")

    def on_retry(self, listener: RetryListener) -> Callable[[], None]:
        """
        Register a listener called before each retry.

        Args:
            listener: Called with ``(path, attempt, max_attempts)``

        Returns:
            A function that unregisters the listener
        """
        self._retry_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._retry_listeners:
                self._retry_listeners.remove(listener)

        return unsubscribe

    def _notify_retry(self, path: str, attempt: int) -> None:
        for listener in list(self._retry_listeners):
            try:
                listener(path, attempt, self.max_retries)
            except Exception:
                logger.exception("Error in retry listener")

    def _get_request_headers(self, token: Optional[str], json_body: bool) -> Dict[str, str]:
        headers = {
            "User-Agent": "BizDesk/1.0",
            "Accept": "application/json",
        }
        if json_body:
            headers["Content-Type"] = "application/json"
        if token:
            headers["Authorization"] = f"Bearer {token}"

        request_id = get_request_id()
        if request_id:
            headers["X-Request-ID"] = request_id

        return headers

    def _resolve_token(self, requires_auth: bool, token: Optional[str]) -> Optional[str]:
        if not requires_auth:
            return None
        resolved = token or self.token_store.get_valid_token()
        if not resolved:
            raise NotAuthenticatedException()
        return resolved

    def _before_retry(self, path: str, method: str, state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        kind = getattr(error, "kind", "unknown")
        track_api_retry(kind)

        logger.warning(
            f"Retrying {method} {path} "
            f"(attempt {state.attempt_number + 1}/{self.max_retries + 1}) due to: {error}",
            extra={"extra_fields": {"path": path, "method": method, "kind": kind}},
        )
        self._notify_retry(path, state.attempt_number)

    async def request(
        self,
        path: str,
        method: str = "GET",
        body: Optional[Mapping[str, Any]] = None,
        requires_auth: bool = True,
        token: Optional[str] = None,
        files: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
        form: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """
        Call the API and return the decoded JSON body.

        Args:
            path: API path, appended to ``base_url``
            method: HTTP method
            body: JSON body, or form fields when ``files`` is given
            requires_auth: Attach the bearer token (required)
            token: Explicit token overriding the token store
            files: Multipart file fields
            params: Query string parameters (None values dropped)
            form: URL-encoded form fields, sent instead of a JSON body

        Returns:
            Decoded JSON response

        Raises:
            NotAuthenticatedException: No usable token for an authenticated call
            ApiValidationException: Backend rejected the input field by field
            ApiException: Any other backend failure
            ServiceUnavailableException: The backend could not be reached
        """
        method = method.upper()
        bearer = self._resolve_token(requires_auth, token)

        retry_condition = (
            retry_never
            if method == "POST"
            else retry_if_exception_type(TransientDatabaseException)
        )
        retrying = AsyncRetrying(
            retry=retry_condition,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_incrementing(start=self.retry_delay, increment=self.retry_delay),
            before_sleep=lambda state: self._before_retry(path, method, state),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    result = await self._send_once(
                        path, method, body, bearer, files, params, form
                    )
        except TransientDatabaseException as error:
            raise ApiException(
                error.friendly_message,
                status_code=error.status_code,
                response=error.response,
            ) from error

        return result

    async def _send_once(
        self,
        path: str,
        method: str,
        body: Optional[Mapping[str, Any]],
        token: Optional[str],
        files: Optional[Mapping[str, Any]],
        params: Optional[Mapping[str, Any]],
        form: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        start_time = time.perf_counter()
        url = f"{self.base_url}{path}"
        query = {k: v for k, v in (params or {}).items() if v is not None} or None

        request_kwargs: Dict[str, Any] = {
            "headers": self._get_request_headers(
                token, json_body=files is None and form is None
            ),
            "params": query,
        }
        if files is not None:
            request_kwargs["files"] = files
            request_kwargs["data"] = {
                k: str(v) for k, v in (body or {}).items() if v is not None
            }
        elif form is not None:
            request_kwargs["data"] = {k: str(v) for k, v in form.items() if v is not None}
        elif body is not None:
            request_kwargs["json"] = body

        try:
            client = await self._get_client()
            response = await client.request(method, url, **request_kwargs)
        except (httpx.RequestError, TimeoutError) as error:
            duration = time.perf_counter() - start_time
            track_api_request(method, "connection_error", duration)
            logger.error(
                "Request to backend API failed",
                extra={
                    "extra_fields": {
                        "method": method,
                        "path": path,
                        "error_type": type(error).__name__,
                        "error_message": str(error),
                        "duration_ms": duration * 1000,
                    }
                },
            )
            raise ServiceUnavailableException(
                "backend-api", message=CONNECTION_ERROR_MESSAGE
            ) from error

        duration = time.perf_counter() - start_time
        logger.debug(
            "Received response from backend API",
            extra={
                "extra_fields": {
                    "method": method,
                    "path": path,
                    "status_code": response.status_code,
                    "duration_ms": duration * 1000,
                }
            },
        )

        data = self._decode(response, method, path, duration)

        failed = isinstance(data, Mapping) and data.get("status") == "failed"
        if response.is_success and not failed:
            track_api_request(method, "success", duration)
            return data

        track_api_request(method, "error", duration)
        message = extract_error_message(data)
        response_body = data if isinstance(data, dict) else None

        logger.warning(
            "Backend API returned an error",
            extra={
                "extra_fields": {
                    "method": method,
                    "path": path,
                    "status_code": response.status_code,
                    "error_message": message[:200],
                }
            },
        )

        kind = classify_database_error(message)
        if kind:
            raise TransientDatabaseException(
                kind, message, status_code=response.status_code, response=response_body
            )

        errors = data.get("errors") if isinstance(data, Mapping) else None
        if isinstance(errors, Mapping):
            raise ApiValidationException(
                message,
                errors={k: list(v) if isinstance(v, (list, tuple)) else [str(v)]
                        for k, v in errors.items()},
                status_code=response.status_code,
                response=response_body,
            )

        if response.status_code == 500:
            raise ApiException(
                f"Server error (500): {message}. The server is experiencing issues. "
                "Please try again later or contact support.",
                status_code=500,
                response=response_body,
            )

        raise ApiException(message, status_code=response.status_code, response=response_body)

    def _decode(self, response: httpx.Response, method: str, path: str, duration: float) -> Any:
        content_type = response.headers.get("content-type", "")

        if "application/json" not in content_type:
            track_api_request(method, "non_json", duration)
            text = response.text
            stripped = text.lstrip()
            if stripped.startswith("<!DOCTYPE") or stripped.startswith("<html"):
                raise NonJsonResponseException(
                    HTML_RESPONSE_MESSAGE, status_code=response.status_code
                )
            raise NonJsonResponseException(
                "The server returned a non-JSON response: " + text[:100],
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as error:
            track_api_request(method, "non_json", duration)
            raise NonJsonResponseException(
                "The server returned malformed JSON.",
                status_code=response.status_code,
            ) from error

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request(path, "GET", **kwargs)

    async def post(self, path: str, body: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Any:
        return await self.request(path, "POST", body, **kwargs)

    async def put(self, path: str, body: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Any:
        return await self.request(path, "PUT", body, **kwargs)

    async def delete(self, path: str, body: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Any:
        return await self.request(path, "DELETE", body, **kwargs)

    async def health_check(self) -> bool:
        """
        Check if the backend API is reachable.

        Any HTTP answer below 500 counts as reachable; the API has no
        dedicated health endpoint and the root may well require auth.

        Returns:
            True if the API answered, False otherwise
        """
        try:
            client = await self._get_client()
            response = await client.get(
                f"{self.base_url}/",
                headers=self._get_request_headers(None, json_body=False),
                timeout=2.0,
            )
            is_healthy = response.status_code < 500

            if not is_healthy:
                logger.warning(
                    "Backend API health check failed",
                    extra={
                        "extra_fields": {
                            "backend_url": self.base_url,
                            "status_code": response.status_code,
                        }
                    },
                )
            return is_healthy

        except Exception as error:
            logger.warning(
                "Backend API health check failed with exception",
                extra={
                    "extra_fields": {
                        "backend_url": self.base_url,
                        "error_type": type(error).__name__,
                        "error_message": str(error),
                    }
                },
            )
            return False


# Singleton instance for application-wide use
api_client = ApiClient()
