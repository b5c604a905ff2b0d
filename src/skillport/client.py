from __future__ import annotations

import json
from typing import Any

import httpx

from ._version import __version__
from .config import DEFAULT_TIMEOUT_S

USER_AGENT = f"skillport/{__version__}"


class SkillportError(RuntimeError):
    pass


class NotFoundError(SkillportError):
    pass


class UnsupportedScopeError(SkillportError):
    pass


class SkillportHTTPError(SkillportError):
    def __init__(self, status_code: int, body: str, headers: dict[str, str] | None = None) -> None:
        super().__init__(status_code, body)
        self.status_code = status_code
        self.body = body
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"

    @property
    def rate_limited(self) -> bool:
        if self.status_code == 429:
            return True
        return self.status_code == 403 and self.headers.get("x-ratelimit-remaining") == "0"


class SkillportClient:
    """
    Thin HTTP wrapper used by every remote fetch (providers, archives, marketplace, tree listings).

    The bearer token is only attached when a call asks for it with ``auth=True``.
    """

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        token: str | None = None,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        self.token = token
        self._default_headers = {"User-Agent": USER_AGENT}
        self._default_headers.update(default_headers or {})
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "SkillportClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def request(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json_body: Any | None = None,
        headers: dict[str, str] | None = None,
        auth: bool = False,
    ) -> httpx.Response:
        if not url.startswith(("http://", "https://")):
            raise SkillportError(f"Unsupported URL (expected http/https): {url}")

        req_headers = dict(self._default_headers)
        if headers:
            req_headers.update(headers)
        if auth and self.token:
            req_headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = self._http.request(
                method.upper(),
                url,
                params=params,
                json=json_body,
                headers=req_headers,
            )
        except httpx.HTTPError as e:
            raise SkillportError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise SkillportHTTPError(resp.status_code, resp.text, dict(resp.headers))
        return resp

    def get_text(self, url: str, *, headers: dict[str, str] | None = None) -> str:
        return self.request(method="GET", url=url, headers=headers).text

    def get_bytes(self, url: str, *, headers: dict[str, str] | None = None) -> bytes:
        return self.request(method="GET", url=url, headers=headers).content

    def get_json(self, url: str, *, headers: dict[str, str] | None = None, auth: bool = False) -> Any:
        resp = self.request(method="GET", url=url, headers=headers, auth=auth)
        try:
            return resp.json()
        except json.JSONDecodeError as e:
            raise SkillportError(f"Invalid JSON from {url}") from e
