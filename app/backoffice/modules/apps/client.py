from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


class MarketplaceError(RuntimeError):
    pass


class MarketplaceNotFound(MarketplaceError):
    pass


class MarketplaceRateLimited(MarketplaceError):
    pass


@dataclass(frozen=True)
class MarketplaceClient:
    base_url: str
    api_token: str | None = None
    timeout_seconds: int = 30

    def _url(self, path: str, params: dict[str, Any] | None = None) -> str:
        url = self.base_url.rstrip("/") + "/" + path.lstrip("/")
        if params:
            url += "?" + urllib.parse.urlencode({k: v for k, v in params.items() if v is not None})
        return url

    def _redact(self, path: str) -> str:
        # download paths embed the API token as their last segment
        return path.replace(self.api_token, "***") if self.api_token else path

    def _open(self, path: str, *, params: dict[str, Any] | None = None, accept: str, retries: int) -> bytes:
        url = self._url(path, params)
        shown = self._redact(path)
        last_err: Exception | None = None
        for attempt in range(retries + 1):
            req = urllib.request.Request(url, method="GET")
            req.add_header("Accept", accept)
            if self.api_token:
                req.add_header("Authorization", f"Bearer {self.api_token}")
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    return resp.read()
            except urllib.error.HTTPError as e:
                if e.code == 404:
                    raise MarketplaceNotFound(f"Not found on marketplace: {shown}") from e
                if e.code == 429:
                    time.sleep(min(2 * (attempt + 1), 10))
                    last_err = MarketplaceRateLimited("Rate limited (429)")
                    continue
                body = e.read().decode("utf-8", errors="ignore")
                raise MarketplaceError(f"HTTP {e.code} from marketplace ({shown}): {body[:300]}") from e
            except (urllib.error.URLError, TimeoutError, ConnectionError) as e:
                logger.warning("Marketplace request failed (path=%s attempt=%s): %s", shown, attempt + 1, e)
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
        raise MarketplaceError(f"Marketplace request failed after retries ({shown}): {last_err}")

    def request_json(self, path: str, *, params: dict[str, Any] | None = None, retries: int = 2) -> dict[str, Any]:
        raw = self._open(path, params=params, accept="application/json", retries=retries)
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MarketplaceError(f"Invalid JSON from marketplace ({path})") from e
        return data if isinstance(data, dict) else {"data": data}

    def get_module(self, alias: str) -> dict[str, Any] | None:
        """Module metadata, or None when the marketplace has no such alias."""
        try:
            j = self.request_json(f"apps/{urllib.parse.quote(alias)}")
        except MarketplaceNotFound:
            return None
        data = j.get("data")
        return data if isinstance(data, dict) and data else None

    def list_modules(self) -> list[dict[str, Any]]:
        j = self.request_json("apps/items")
        data = j.get("data") or []
        return data if isinstance(data, list) else []

    def check_token(self) -> bool:
        try:
            j = self.request_json("token/check", retries=0)
        except MarketplaceError:
            return False
        return bool(j.get("success"))

    def download(self, path: str) -> bytes:
        # path already carries version/app-version/token segments
        return self._open(f"apps/{path.lstrip('/')}", accept="application/zip", retries=2)


def client_from_config(config: dict, api_token: str | None = None) -> MarketplaceClient:
    return MarketplaceClient(
        base_url=(config.get("MARKETPLACE_URL") or "").strip(),
        api_token=api_token,
        timeout_seconds=int(config.get("MARKETPLACE_TIMEOUT") or 30),
    )
