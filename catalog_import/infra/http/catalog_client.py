from __future__ import annotations

import threading
import time
from typing import Any

import httpx

from catalog_import.errors import AppError

SUCCESS_STATUSES = frozenset({200, 201, 204})
BODY_SNIPPET_LIMIT = 200


def isRetryableStatus(statusCode: int) -> bool:
    """429 и любой 5xx."""
    return statusCode == 429 or 500 <= statusCode <= 599


class ApiError(AppError):
    """
    Назначение:
        Сбой обращения к admin API каталога.

    Контракт:
        - code: HTTP_<status>, TIMEOUT, NETWORK_ERROR или INVALID_JSON;
        - status_code есть только у ответов сервера;
        - body_snippet: начало тела ответа для сообщения об ошибке строки.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body_snippet: str | None = None,
        retryable: bool = False,
        details: dict | None = None,
        code: str | None = None,
    ):
        if code is None:
            code = f"HTTP_{status_code}" if status_code else "API_ERROR"
        super().__init__(category="api", code=code, message=message, retryable=retryable, details=details or {})
        self.status_code = status_code
        self.body_snippet = body_snippet

    @classmethod
    def fromResponse(cls, resp: httpx.Response) -> "ApiError":
        snippet = resp.text[:BODY_SNIPPET_LIMIT] or None
        return cls(
            f"HTTP {resp.status_code}",
            status_code=resp.status_code,
            body_snippet=snippet,
            retryable=isRetryableStatus(resp.status_code),
            details={"body_snippet": snippet},
        )


class CatalogApiClient:
    """
    Назначение:
        Синхронный клиент admin API каталога поверх httpx.Client.

    Контракт:
        - токен уходит заголовком Authorization: Bearer;
        - 429/5xx, таймауты и сетевые сбои повторяются до retries раз
          с паузой retryBackoffSeconds * 2^n;
        - один экземпляр делят воркеры пула записи.
    """

    def __init__(
        self,
        baseUrl: str,
        token: str | None = None,
        timeoutSeconds: float = 20.0,
        tlsSkipVerify: bool = False,
        retries: int = 3,
        retryBackoffSeconds: float = 0.5,
        transport: httpx.BaseTransport | None = None,
    ):
        self.baseUrl = baseUrl.rstrip("/")
        self.retries = retries
        self.retryBackoffSeconds = retryBackoffSeconds
        self.retry_attempts = 0
        self._attemptsLock = threading.Lock()

        headers = {"accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.client = httpx.Client(
            base_url=self.baseUrl,
            headers=headers,
            timeout=timeoutSeconds,
            verify=not tlsSkipVerify,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def getRetryAttempts(self) -> int:
        return self.retry_attempts

    def _backoff(self, attempt: int) -> None:
        with self._attemptsLock:
            self.retry_attempts += 1
        time.sleep(self.retryBackoffSeconds * (2**attempt))

    def _send(self, method: str, path: str, params: dict[str, Any], jsonBody: Any | None) -> httpx.Response:
        for attempt in range(self.retries + 1):
            lastAttempt = attempt == self.retries
            try:
                resp = self.client.request(method, path, params=params, json=jsonBody)
            except httpx.TimeoutException as exc:
                if lastAttempt:
                    raise ApiError("Request timed out", retryable=True, code="TIMEOUT") from exc
            except httpx.TransportError as exc:
                if lastAttempt:
                    raise ApiError("Network error", retryable=True, code="NETWORK_ERROR") from exc
            else:
                if lastAttempt or not isRetryableStatus(resp.status_code):
                    return resp
            self._backoff(attempt)
        raise AssertionError("unreachable")

    def requestJson(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        jsonBody: Any | None = None,
    ) -> tuple[int, Any]:
        """(status_code, тело JSON или None для пустого ответа); не-2xx -> ApiError."""
        resp = self._send(method, path, params or {}, jsonBody)
        if resp.status_code not in SUCCESS_STATUSES:
            raise ApiError.fromResponse(resp)
        if not resp.content:
            return resp.status_code, None
        try:
            return resp.status_code, resp.json()
        except ValueError as exc:
            raise ApiError("Invalid JSON response", status_code=resp.status_code, code="INVALID_JSON") from exc

    def getJson(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self.requestJson("GET", path, params=params)[1]
