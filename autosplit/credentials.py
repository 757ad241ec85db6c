"""Credential classification and the login/apply/revoke flows.

Every public coroutine here reports its outcome through ``status`` and
never raises: the operator reads the status string, the config keeps the
last credential that was applied successfully.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime

from autosplit.bililive_api import (
    COOKIE_DELIMITER,
    CREDENTIAL_LENGTH,
    ApiError,
    LiveStatusApi,
    is_token,
)
from autosplit.config import ConfigPersistenceError, ConfigStore

log = logging.getLogger("autosplit.credentials")


class CredentialKind(enum.Enum):
    EMPTY = "empty"
    COOKIE = "cookie"
    TOKEN = "token"
    BAD_FORMAT = "bad_format"
    BAD_LENGTH = "bad_length"


def classify_credential(value: str | None) -> CredentialKind:
    """Decide what kind of credential ``value`` is without touching the network."""
    if not value:
        return CredentialKind.EMPTY
    if len(value) != CREDENTIAL_LENGTH:
        return CredentialKind.BAD_LENGTH
    if COOKIE_DELIMITER in value:
        return CredentialKind.COOKIE
    if is_token(value):
        return CredentialKind.TOKEN
    return CredentialKind.BAD_FORMAT


def _fmt_expiry(expires: datetime) -> str:
    return expires.astimezone().strftime("%Y-%m-%d %H:%M:%S")


class CredentialManager:
    def __init__(self, api: LiveStatusApi, store: ConfigStore) -> None:
        self.api = api
        self.store = store
        self.token = store.token
        self.status = "unknown"

    def _update_status(self, message: str) -> str:
        self.status = message
        log.info("credentials: %s", message)
        return message

    def _persist(self, token: str) -> None:
        try:
            self.store.save_token(token)
        except ConfigPersistenceError as exc:
            log.error("unable to persist credential: %s", exc)

    async def login(self, account: str, password: str) -> str:
        try:
            info = await self.api.login(account, password)
        except ApiError as exc:
            return self._update_status(f"access token request failed: {exc}")
        except Exception as exc:
            log.exception("login crashed")
            return self._update_status(f"access token request failed: {exc}")
        if info is None:
            return self._update_status("access token request failed")
        self.token = info.access_token
        return self._update_status(
            f"access token acquired, valid until {_fmt_expiry(info.expires)}"
        )

    async def apply_token(self, token: str | None = None) -> str:
        """Validate and install ``token`` (or the pending one) into the API client."""
        if token is not None:
            self.token = token.strip()
        value = self.token
        kind = classify_credential(value)

        if kind is CredentialKind.EMPTY:
            self.api.reload(None)
            self._persist("")
            return self._update_status("not logged in")
        if kind is CredentialKind.BAD_LENGTH:
            return self._update_status(
                f"login failed: credential length is {len(value)}, expected {CREDENTIAL_LENGTH}"
            )
        if kind is CredentialKind.BAD_FORMAT:
            return self._update_status("login failed: access token format is invalid")
        if kind is CredentialKind.COOKIE:
            self.api.reload(value)
            self._persist(value)
            return self._update_status("cookie applied")

        try:
            info = await self.api.get_token_info(value)
        except ApiError as exc:
            return self._update_status(f"login failed: {exc}")
        except Exception as exc:
            log.exception("token lookup crashed")
            return self._update_status(f"login failed: {exc}")
        if info is None:
            return self._update_status("login failed: token rejected")
        self.token = info.access_token
        self.api.reload(info.access_token)
        self._persist(info.access_token)
        return self._update_status(f"logged in, token valid until {_fmt_expiry(info.expires)}")

    async def revoke(self) -> str:
        if not is_token(self.token):
            return self._update_status("access token format is invalid")
        try:
            await self.api.revoke_token(self.token)
        except ApiError as exc:
            return self._update_status(f"revoke failed: {exc}")
        except Exception as exc:
            log.exception("revoke crashed")
            return self._update_status(f"revoke failed: {exc}")
        self.token = ""
        self.api.reload(None)
        self._persist("")
        return self._update_status("revoke request sent")
