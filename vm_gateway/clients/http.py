from typing import Any

import httpx


class RequestFailure(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        url: str,
        error_type: str,
        detail: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ):
        self.method = method
        self.url = url
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(f"request failed: {method} {url} ({error_type}: {detail})")


def build_client(timeout: float, base_url: str = "", **kwargs: Any) -> httpx.Client:
    return httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout, **kwargs)


def request_checked(
    client: httpx.Client, method: str, url: str, **kwargs: Any
) -> httpx.Response:
    """Single attempt; non-2xx and transport errors become RequestFailure."""
    try:
        response = client.request(method, url, **kwargs)
        response.raise_for_status()
        return response
    except httpx.HTTPStatusError as exc:
        status_code = exc.response.status_code
        body = (exc.response.text or "").strip()
        detail = f"HTTP {status_code}: {body[:240]}" if body else f"HTTP {status_code}"
        raise RequestFailure(
            method=method,
            url=url,
            error_type=exc.__class__.__name__,
            detail=detail,
            status_code=status_code,
            response_text=exc.response.text,
        ) from exc
    except httpx.RequestError as exc:
        raise RequestFailure(
            method=method,
            url=url,
            error_type=exc.__class__.__name__,
            detail=str(exc) or exc.__class__.__name__,
        ) from exc
