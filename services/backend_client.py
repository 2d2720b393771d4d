"""Minimal JSON client for the backend HTTP collaborators."""

from __future__ import annotations

import json
from typing import Any, Mapping
from urllib import error, parse, request

from core.errors import BackendError


class BackendClient:
    """Plain request/response client for the assistant backend."""

    def __init__(
        self,
        *,
        base_url: str,
        auth_token: str | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth_token = (auth_token or "").strip()
        self._timeout_s = max(1.0, float(timeout_s))

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "BackendClient":
        backend_cfg = config.get("backend") or {}
        return cls(
            base_url=str(backend_cfg.get("base_url", "http://localhost:5000/api")),
            auth_token=backend_cfg.get("auth_token"),
            timeout_s=float(backend_cfg.get("timeout_s", 10.0)),
        )

    def url_for(self, path: str, params: Mapping[str, Any] | None = None) -> str:
        url = f"{self._base_url}/{path.lstrip('/')}"
        if params:
            query = {k: v for k, v in params.items() if v is not None and v != ""}
            if query:
                url = f"{url}?{parse.urlencode(query)}"
        return url

    def get_json(self, path: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        req = request.Request(self.url_for(path, params), headers=self._headers(), method="GET")
        return self._send(req)

    def post_json(self, path: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        data = json.dumps(dict(payload)).encode("utf-8")
        headers = self._headers()
        headers["Content-Type"] = "application/json"
        req = request.Request(self.url_for(path), data=data, headers=headers, method="POST")
        return self._send(req)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    def _send(self, req: request.Request) -> dict[str, Any]:
        try:
            with request.urlopen(req, timeout=self._timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = _error_detail(exc)
            raise BackendError(
                f"{req.get_method()} {req.full_url} failed with HTTP {exc.code}: {detail}",
                status=exc.code,
            ) from exc
        except (error.URLError, TimeoutError, OSError) as exc:
            raise BackendError(f"{req.get_method()} {req.full_url} failed: {exc}") from exc

        if not body.strip():
            return {}
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise BackendError(f"{req.full_url} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise BackendError(f"{req.full_url} returned a non-object JSON payload")
        return payload


def _error_detail(exc: error.HTTPError) -> str:
    try:
        body = exc.read().decode("utf-8")
    except (OSError, AttributeError):
        return exc.reason or ""
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return body[:200]
    if isinstance(payload, dict):
        return str(payload.get("error") or payload.get("message") or body[:200])
    return body[:200]
