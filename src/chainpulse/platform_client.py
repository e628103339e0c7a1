import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from requests import exceptions as requests_exceptions


PLATFORM_BASE_URL = "https://api.x.com/2"
PLATFORM_BASE_ENV = "CHAINPULSE_PLATFORM_BASE_URL"
CREDENTIALS_PATH = Path.home() / ".config" / "chainpulse" / "credentials.json"


class PlatformAuthError(Exception):
    pass


class PlatformError(RuntimeError):
    pass


@dataclass
class PlatformCredentials:
    bearer_token: str
    user_id: Optional[str] = None
    source: str = "unknown"

    @classmethod
    def load(cls) -> "PlatformCredentials":
        """Load credentials from env or ~/.config/chainpulse/credentials.json.

        Priority:
        1. CHAINPULSE_PLATFORM_TOKEN env var
        2. credentials.json file
        """
        token = os.getenv("CHAINPULSE_PLATFORM_TOKEN")
        user_id = os.getenv("CHAINPULSE_PLATFORM_USER_ID")
        source = "env:CHAINPULSE_PLATFORM_TOKEN"

        if not token and CREDENTIALS_PATH.exists():
            with CREDENTIALS_PATH.open("r", encoding="utf-8") as f:
                data = json.load(f)
            token = data.get("bearer_token")
            user_id = user_id or data.get("user_id")
            source = f"file:{CREDENTIALS_PATH}"

        if token is not None:
            token = str(token).strip()

        if not token:
            raise PlatformAuthError(
                "Missing platform token. Set CHAINPULSE_PLATFORM_TOKEN or create "
                f"{CREDENTIALS_PATH} with a 'bearer_token' field."
            )

        return cls(bearer_token=token, user_id=str(user_id).strip() if user_id else None, source=source)


def _normalize_post(row: Dict[str, Any], users: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    author_id = str(row.get("author_id") or "")
    user = users.get(author_id) or {}
    user_metrics = user.get("public_metrics") or {}
    return {
        "id": str(row.get("id") or ""),
        "text": str(row.get("text") or ""),
        "author_id": author_id,
        "lang": row.get("lang"),
        "metrics": dict(row.get("public_metrics") or {}),
        "author": {
            "username": user.get("username") or "",
            "followers_count": user_metrics.get("followers_count", 0),
            "verified": bool(user.get("verified")),
        },
    }


class PlatformClient:
    """Minimal posting-platform client for mentions, search and posting.

    Every method performs exactly one HTTP request, so callers can admit
    each call against the budget ledger first.
    """

    def __init__(self, credentials: Optional[PlatformCredentials] = None):
        self.credentials = credentials or PlatformCredentials.load()
        self.base_url = str(os.getenv(PLATFORM_BASE_ENV) or PLATFORM_BASE_URL).strip().rstrip("/")

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.bearer_token}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        path = path.lstrip("/")
        return f"{self.base_url}/{path}"

    def _check(self, resp: Any, label: str) -> Dict[str, Any]:
        if resp.status_code in {401, 403}:
            try:
                data = resp.json()
            except ValueError:
                data = {}
            message = data.get("detail") or data.get("title") or "Authentication required"
            raise PlatformAuthError(f"Platform auth error {resp.status_code}: {message}")

        if resp.status_code >= 400:
            try:
                data = resp.json()
            except ValueError:
                data = {}
            message = data.get("detail") or data.get("title") or resp.text
            raise PlatformError(f"Platform error {resp.status_code} for {label}: {message}")

        return resp.json()

    def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = requests.get(self._url(path), headers=self._headers, params=params, timeout=30)
        except requests_exceptions.Timeout as e:
            raise PlatformError(f"Timed out while contacting the platform for /{path}.") from e
        return self._check(resp, f"/{path}")

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = requests.post(
                self._url(path),
                headers=self._headers,
                data=json.dumps(payload),
                timeout=30,
            )
        except requests_exceptions.Timeout as e:
            raise PlatformError(f"Timed out while contacting the platform for /{path}.") from e
        return self._check(resp, f"/{path}")

    def get_mentions(self, since_id: Optional[str] = None, max_results: int = 10) -> List[Dict[str, Any]]:
        if not self.credentials.user_id:
            raise PlatformAuthError("Platform user_id is required to read mentions.")
        params: Dict[str, Any] = {
            "max_results": max(5, min(100, int(max_results))),
            "tweet.fields": "author_id,public_metrics,lang,created_at",
            "expansions": "author_id",
            "user.fields": "username,public_metrics,verified",
        }
        if since_id:
            params["since_id"] = since_id
        data = self._get(f"users/{self.credentials.user_id}/mentions", params)
        users = {str(u.get("id")): u for u in (data.get("includes") or {}).get("users") or []}
        return [_normalize_post(row, users) for row in data.get("data") or []]

    def search_recent(self, query: str, max_results: int = 20) -> List[Dict[str, Any]]:
        if not query.strip():
            raise ValueError("query must be provided")
        params = {
            "query": query,
            "max_results": max(10, min(100, int(max_results))),
            "tweet.fields": "author_id,public_metrics,lang,created_at",
            "expansions": "author_id",
            "user.fields": "username,public_metrics,verified",
        }
        data = self._get("tweets/search/recent", params)
        users = {str(u.get("id")): u for u in (data.get("includes") or {}).get("users") or []}
        return [_normalize_post(row, users) for row in data.get("data") or []]

    def create_post(self, text: str) -> str:
        if not text.strip():
            raise ValueError("text must be provided")
        data = self._post("tweets", {"text": text})
        return str((data.get("data") or {}).get("id") or "")

    def create_reply(self, text: str, in_reply_to_id: str) -> str:
        if not text.strip() or not in_reply_to_id:
            raise ValueError("text and in_reply_to_id must be provided")
        data = self._post("tweets", {"text": text, "reply": {"in_reply_to_tweet_id": in_reply_to_id}})
        return str((data.get("data") or {}).get("id") or "")
