"""
OAuth2 credential lifecycle for the Yahoo mail and calendar clients.

This module provides a file-backed token store and a credential manager that
performs the authorization-code and refresh-token exchanges against Yahoo's
token endpoint.  The protocol clients only ever call
:meth:`OAuth2CredentialManager.get_valid_access_token`; expiry is handled
lazily on that call, so no background timer is needed.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode, urljoin

import httpx

from errors import NoCredentialsError, TokenExchangeError, TokenRefreshError
from models import CredentialSet

log = logging.getLogger("yahoo-mcp.oauth")

SCOPES = "mail-r cal-r"
AUTHORIZE_PATH = "oauth2/request_auth"
TOKEN_PATH = "oauth2/get_token"
REFRESH_MARGIN_MS = 5 * 60 * 1000
TOKEN_FILENAME = "tokens.json"


def token_preview(token: Optional[str]) -> str:
    """Short, non-reversible rendering of a token for log lines."""
    if not token:
        return "<none>"
    if len(token) <= 12:
        return "***"
    return f"{token[:4]}...{token[-4:]}"


class TokenStore:
    """
    Persists one :class:`CredentialSet` as ``tokens.json``.

    The directory is created owner-only and the file is written ``0600``.
    A missing file is not an error; a corrupt one is logged and treated as
    missing.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)
        self._path = self._directory / TOKEN_FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[CredentialSet]:
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return CredentialSet.from_json(data)
        except (OSError, ValueError, AttributeError) as exc:
            log.error("Ignoring unreadable token file %s: %s", self._path, exc)
            return None

    def save(self, credentials: CredentialSet) -> None:
        self._directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        payload = json.dumps(credentials.to_json(), indent=2) + "\n"
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(payload)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self._path)

    def clear(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass


class OAuth2CredentialManager:
    """
    Owns the credential set for one account.

    All state changes happen under a single lock, so concurrent callers of
    :meth:`get_valid_access_token` that see an expiring token wait for one
    refresh exchange and then share its result.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        store: TokenStore,
        auth_base_url: str = "https://api.login.yahoo.com/",
        http_client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._store = store
        self._auth_base_url = auth_base_url if auth_base_url.endswith("/") else auth_base_url + "/"
        self._owns_http = http_client is None
        self._http = http_client or httpx.Client(timeout=30.0)
        self._clock = clock

        self._credentials: Optional[CredentialSet] = None
        self._lock = threading.RLock()

    # ---------------------------------------------------------------- Public

    @property
    def credentials(self) -> Optional[CredentialSet]:
        with self._lock:
            return self._loaded()

    def get_authorization_url(self, state: Optional[str] = None) -> str:
        if not self._client_id or not self._redirect_uri:
            raise ValueError("client_id and redirect_uri must be configured")
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": SCOPES,
        }
        if state:
            params["state"] = state
        return f"{urljoin(self._auth_base_url, AUTHORIZE_PATH)}?{urlencode(params)}"

    def exchange_code_for_credentials(self, authorization_code: str) -> CredentialSet:
        form = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "redirect_uri": self._redirect_uri,
            "code": authorization_code,
            "grant_type": "authorization_code",
        }
        with self._lock:
            payload = self._post_token(form, TokenExchangeError)
            missing = [k for k in ("access_token", "refresh_token", "expires_in") if not payload.get(k)]
            if missing:
                raise TokenExchangeError(f"response is missing {', '.join(missing)}")
            credentials = self._build(payload, previous_refresh_token=None, error_cls=TokenExchangeError)
            self._replace(credentials)
            log.info("Obtained credentials (access=%s)", token_preview(credentials.access_token))
            return credentials

    def get_valid_access_token(self) -> str:
        with self._lock:
            credentials = self._loaded()
            if credentials is None:
                raise NoCredentialsError()
            if credentials.is_expiring(self._now_ms(), REFRESH_MARGIN_MS):
                log.info("Access token %s expires soon; refreshing", token_preview(credentials.access_token))
                credentials = self.refresh_access_token()
            return credentials.access_token

    def refresh_access_token(self) -> CredentialSet:
        with self._lock:
            current = self._loaded()
            if current is None or not current.refresh_token:
                raise TokenRefreshError("No refresh token available")
            form = {
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": current.refresh_token,
                "grant_type": "refresh_token",
            }
            payload = self._post_token(form, TokenRefreshError)
            if not payload.get("access_token") or not payload.get("expires_in"):
                raise TokenRefreshError("response is missing access_token or expires_in")
            # Providers may omit a new refresh token; keep the one we have.
            credentials = self._build(
                payload,
                previous_refresh_token=current.refresh_token,
                error_cls=TokenRefreshError,
            )
            self._replace(credentials)
            log.info("Refreshed access token (access=%s)", token_preview(credentials.access_token))
            return credentials

    def clear_credentials(self) -> None:
        with self._lock:
            self._credentials = None
            self._store.clear()

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    # ------------------------------------------------------------- Internals

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _loaded(self) -> Optional[CredentialSet]:
        if self._credentials is None:
            self._credentials = self._store.load()
        return self._credentials

    def _replace(self, credentials: CredentialSet) -> None:
        self._credentials = credentials
        try:
            self._store.save(credentials)
        except OSError as exc:
            # The new set is still usable from memory.
            log.error("Failed to save tokens to %s: %s", self._store.path, exc)

    def _build(
        self,
        payload: Dict[str, Any],
        *,
        previous_refresh_token: Optional[str],
        error_cls: type,
    ) -> CredentialSet:
        try:
            expires_in = int(payload["expires_in"])
        except (TypeError, ValueError):
            raise error_cls(f"invalid expires_in: {payload.get('expires_in')!r}")
        return CredentialSet(
            access_token=str(payload["access_token"]),
            refresh_token=str(payload.get("refresh_token") or previous_refresh_token or ""),
            expires_at=self._now_ms() + expires_in * 1000,
            token_type=str(payload.get("token_type") or "Bearer"),
        )

    def _post_token(self, form: Dict[str, str], error_cls: type) -> Dict[str, Any]:
        url = urljoin(self._auth_base_url, TOKEN_PATH)
        try:
            response = self._http.post(
                url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            raise error_cls(str(exc)) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.is_success:
            return payload

        error = payload.get("error")
        description = payload.get("error_description") or error or f"HTTP {response.status_code}"
        log.error("Token endpoint returned %s (%s)", response.status_code, error or "no error code")
        raise error_cls(str(description), error=error, status_code=response.status_code)
