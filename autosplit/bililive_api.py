"""Live-status API boundary and the aiohttp client that implements it."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import re
import time
import urllib.parse
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping

import aiohttp
import rsa

log = logging.getLogger("autosplit.api")

COOKIE_DELIMITER = "%2C"
CREDENTIAL_LENGTH = 32
_TOKEN_RE = re.compile(r"^[0-9a-f]{32}$")

# Codes returned by get_info for ids that do not exist.
_NOT_FOUND_CODES = frozenset({1, 60004, 19002000})
_TRANSIENT_STATUS = frozenset({408, 412, 429, 500, 502, 503, 504})


class ApiError(Exception):
    """Base class for live-status API failures."""


class RoomNotFound(ApiError):
    """The room id does not resolve to a room."""


class TransientApiError(ApiError):
    """Network, rate-limit or server hiccup; retry on the next cycle."""


@dataclass(frozen=True)
class RoomInfo:
    room_id: int
    short_id: int
    display_name: str
    title: str
    is_live: bool


@dataclass(frozen=True)
class TokenInfo:
    access_token: str
    expires: datetime
    mid: int = 0


def is_token(value: str | None) -> bool:
    """Shape check for an access token: 32 lowercase hex characters."""
    return bool(value) and bool(_TOKEN_RE.match(value or ""))


class LiveStatusApi:
    """What the core needs from the live platform."""

    async def get_room_info(self, room_id: int) -> RoomInfo:  # pragma: no cover - interface only
        raise NotImplementedError

    async def get_play_url(self, room_id: int) -> str:  # pragma: no cover - interface only
        raise NotImplementedError

    async def login(self, account: str, password: str) -> TokenInfo | None:  # pragma: no cover
        raise NotImplementedError

    async def get_token_info(self, token: str) -> TokenInfo | None:  # pragma: no cover
        raise NotImplementedError

    async def revoke_token(self, token: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def reload(self, credential: str | None) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    async def close(self) -> None:
        return None


class BililiveApi(LiveStatusApi):
    """aiohttp client for the bilibili live endpoints.

    A cookie credential (``SESSDATA``) is sent as a cookie, an access token
    as the ``access_key`` query parameter. Password login fetches the
    passport's RSA key and sends the salted password encrypted with it.
    """

    def __init__(
        self,
        *,
        live_base_url: str = "https://api.live.bilibili.com",
        passport_base_url: str = "https://passport.bilibili.com",
        timeout_sec: float = 10.0,
        user_agent: str = "Mozilla/5.0 autosplit/1.0",
        app_key: str = "",
        app_secret: str = "",
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.live_base_url = live_base_url.rstrip("/")
        self.passport_base_url = passport_base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_sec)))
        self.user_agent = user_agent
        self.app_key = app_key
        self.app_secret = app_secret
        self._session = session
        self._owns_session = session is None
        self._cookie: str | None = None
        self._access_key: str | None = None

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any]) -> "BililiveApi":
        api_cfg = cfg.get("api") or {}
        rec_cfg = cfg.get("recording") or {}
        return cls(
            live_base_url=str(api_cfg.get("live_base_url") or "https://api.live.bilibili.com"),
            passport_base_url=str(
                api_cfg.get("passport_base_url") or "https://passport.bilibili.com"
            ),
            timeout_sec=float(api_cfg.get("timeout_sec", 10.0) or 10.0),
            user_agent=str(rec_cfg.get("user_agent") or "Mozilla/5.0 autosplit/1.0"),
            app_key=str(api_cfg.get("app_key") or ""),
            app_secret=str(api_cfg.get("app_secret") or ""),
        )

    # --- credentials ---
    def reload(self, credential: str | None) -> None:
        self._cookie = None
        self._access_key = None
        if not credential:
            return
        if COOKIE_DELIMITER in credential:
            self._cookie = credential
        else:
            self._access_key = credential

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if not (self.app_key and self.app_secret):
            return params
        signed = dict(params, appkey=self.app_key, ts=int(time.time()))
        query = urllib.parse.urlencode(sorted(signed.items()))
        signed["sign"] = hashlib.md5((query + self.app_secret).encode("utf-8")).hexdigest()
        return signed

    # --- transport ---
    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent, "Referer": "https://live.bilibili.com/"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: Dict[str, Any] | None = None,
        data: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        session = await self._get_session()
        query = dict(params or {})
        if self._access_key:
            query.setdefault("access_key", self._access_key)
        headers = {}
        if self._cookie:
            headers["Cookie"] = f"SESSDATA={self._cookie}"
        try:
            async with session.request(method, url, params=query, data=data, headers=headers) as resp:
                if resp.status in _TRANSIENT_STATUS:
                    raise TransientApiError(f"{method} {url} returned HTTP {resp.status}")
                if resp.status >= 400:
                    raise ApiError(f"{method} {url} returned HTTP {resp.status}")
                payload = await resp.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise TransientApiError(f"{method} {url} failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise TransientApiError(f"{method} {url} timed out") from exc
        if not isinstance(payload, dict):
            raise TransientApiError(f"{method} {url} returned a non-object body")
        return payload

    # --- endpoints ---
    async def get_room_info(self, room_id: int) -> RoomInfo:
        payload = await self._request_json(
            "GET", f"{self.live_base_url}/room/v1/Room/get_info", params={"room_id": int(room_id)}
        )
        code = payload.get("code")
        if code in _NOT_FOUND_CODES:
            raise RoomNotFound(f"room {room_id} not found: {payload.get('message') or code}")
        if code != 0:
            raise TransientApiError(f"get_info {room_id} returned code {code}")
        data = payload.get("data") or {}
        uid = int(data.get("uid") or 0)
        display_name = await self._get_display_name(uid) if uid else ""
        return RoomInfo(
            room_id=int(data.get("room_id") or room_id),
            short_id=int(data.get("short_id") or 0),
            display_name=display_name or str(data.get("room_id") or room_id),
            title=str(data.get("title") or ""),
            is_live=int(data.get("live_status") or 0) == 1,
        )

    async def _get_display_name(self, uid: int) -> str:
        try:
            payload = await self._request_json(
                "GET", f"{self.live_base_url}/live_user/v1/Master/info", params={"uid": uid}
            )
        except ApiError as exc:
            log.debug("display name lookup failed uid=%s: %s", uid, exc)
            return ""
        info = (payload.get("data") or {}).get("info") or {}
        return str(info.get("uname") or "")

    async def get_play_url(self, room_id: int) -> str:
        payload = await self._request_json(
            "GET",
            f"{self.live_base_url}/room/v1/Room/playUrl",
            params={"cid": int(room_id), "qn": 10000, "platform": "web"},
        )
        if payload.get("code") != 0:
            raise TransientApiError(f"playUrl {room_id} returned code {payload.get('code')}")
        durl = (payload.get("data") or {}).get("durl") or []
        for entry in durl:
            url = entry.get("url") if isinstance(entry, dict) else None
            if url:
                return str(url)
        raise TransientApiError(f"playUrl {room_id} returned no stream url")

    async def _get_login_key(self) -> tuple[str, rsa.PublicKey]:
        payload = await self._request_json(
            "GET", f"{self.passport_base_url}/api/oauth2/getKey", params=self._sign({})
        )
        if payload.get("code") != 0:
            raise ApiError(f"getKey returned code {payload.get('code')}: {payload.get('message') or ''}")
        data = payload.get("data") or {}
        salt = str(data.get("hash") or "")
        pem = str(data.get("key") or "").encode("utf-8")
        try:
            if b"BEGIN RSA PUBLIC KEY" in pem:
                key = rsa.PublicKey.load_pkcs1(pem)
            else:
                key = rsa.PublicKey.load_pkcs1_openssl_pem(pem)
        except (ValueError, IndexError) as exc:
            raise ApiError(f"getKey returned an unusable public key: {exc}") from exc
        return salt, key

    async def login(self, account: str, password: str) -> TokenInfo | None:
        """Password login. Returns None when the passport rejects the credentials."""
        salt, key = await self._get_login_key()
        try:
            encrypted = rsa.encrypt((salt + password).encode("utf-8"), key)
        except OverflowError as exc:
            raise ApiError("password is too long for the passport key") from exc
        payload = await self._request_json(
            "POST",
            f"{self.passport_base_url}/api/v3/oauth2/login",
            data=self._sign(
                {"username": account, "password": base64.b64encode(encrypted).decode("ascii")}
            ),
        )
        if payload.get("code") != 0:
            log.warning("login rejected code=%s: %s", payload.get("code"), payload.get("message"))
            return None
        data = payload.get("data") or {}
        token_info = data.get("token_info") or data
        access_token = str(token_info.get("access_token") or "")
        if not access_token:
            log.warning("login returned no access token (status=%s)", data.get("status"))
            return None
        expires_in = int(token_info.get("expires_in") or 0)
        return TokenInfo(
            access_token=access_token,
            expires=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            mid=int(token_info.get("mid") or 0),
        )

    async def get_token_info(self, token: str) -> TokenInfo | None:
        payload = await self._request_json(
            "GET",
            f"{self.passport_base_url}/api/v2/oauth2/info",
            params=self._sign({"access_token": token}),
        )
        if payload.get("code") != 0:
            return None
        data = payload.get("data") or {}
        expires_in = int(data.get("expires_in") or 0)
        return TokenInfo(
            access_token=str(data.get("access_token") or token),
            expires=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            mid=int(data.get("mid") or 0),
        )

    async def revoke_token(self, token: str) -> None:
        payload = await self._request_json(
            "POST",
            f"{self.passport_base_url}/x/passport-login/revoke",
            params=self._sign({"access_token": token}),
        )
        if payload.get("code") != 0:
            raise ApiError(f"revoke returned code {payload.get('code')}")
