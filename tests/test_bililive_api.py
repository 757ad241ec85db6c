from __future__ import annotations

import base64

import pytest
import pytest_asyncio
import rsa
from aiohttp import web

from autosplit.bililive_api import BililiveApi, RoomNotFound, TransientApiError, is_token

COOKIE = "abcdef12%2C1700000000%2Cabcd1234"
TOKEN = "0123456789abcdef0123456789abcdef"
LOGIN_SALT = "5f3c1a9e0b7d2c44"
PUBLIC_KEY, PRIVATE_KEY = rsa.newkeys(512)


def _build_app(seen: list[dict]) -> web.Application:
    async def get_info(request: web.Request) -> web.Response:
        seen.append({"query": dict(request.query), "cookie": request.headers.get("Cookie")})
        room_id = int(request.query["room_id"])
        if room_id == 503:
            return web.Response(status=503)
        if room_id == 404:
            return web.json_response({"code": 60004, "message": "room does not exist"})
        return web.json_response(
            {
                "code": 0,
                "data": {"room_id": 1001, "short_id": 5, "uid": 42, "title": "hi", "live_status": 1},
            }
        )

    async def master_info(request: web.Request) -> web.Response:
        return web.json_response({"code": 0, "data": {"info": {"uname": "alice"}}})

    async def play_url(request: web.Request) -> web.Response:
        return web.json_response({"code": 0, "data": {"durl": [{"url": "http://cdn.invalid/live.flv"}]}})

    async def token_info(request: web.Request) -> web.Response:
        token = request.query["access_token"]
        if token != TOKEN:
            return web.json_response({"code": -101, "message": "token invalid"})
        return web.json_response(
            {"code": 0, "data": {"access_token": token, "expires_in": 3600, "mid": 7}}
        )

    async def get_key(request: web.Request) -> web.Response:
        return web.json_response(
            {"code": 0, "data": {"hash": LOGIN_SALT, "key": PUBLIC_KEY.save_pkcs1().decode("ascii")}}
        )

    async def password_login(request: web.Request) -> web.Response:
        form = await request.post()
        secret = rsa.decrypt(base64.b64decode(form["password"]), PRIVATE_KEY).decode("utf-8")
        seen.append({"login": form["username"]})
        if secret != LOGIN_SALT + "hunter2":
            return web.json_response({"code": -629, "message": "wrong password"})
        return web.json_response(
            {
                "code": 0,
                "data": {
                    "status": 0,
                    "token_info": {"access_token": TOKEN, "expires_in": 7200, "mid": 9},
                },
            }
        )

    app = web.Application()
    app.router.add_get("/api/oauth2/getKey", get_key)
    app.router.add_post("/api/v3/oauth2/login", password_login)
    app.router.add_get("/room/v1/Room/get_info", get_info)
    app.router.add_get("/live_user/v1/Master/info", master_info)
    app.router.add_get("/room/v1/Room/playUrl", play_url)
    app.router.add_get("/api/v2/oauth2/info", token_info)
    return app


@pytest_asyncio.fixture
async def api_and_seen(aiohttp_server):
    seen: list[dict] = []
    server = await aiohttp_server(_build_app(seen))
    base = str(server.make_url("")).rstrip("/")
    api = BililiveApi(live_base_url=base, passport_base_url=base, timeout_sec=5)
    yield api, seen
    await api.close()


@pytest.mark.asyncio
async def test_room_info_by_short_id(api_and_seen) -> None:
    api, seen = api_and_seen

    info = await api.get_room_info(5)

    assert info.room_id == 1001
    assert info.short_id == 5
    assert info.display_name == "alice"
    assert info.is_live is True
    assert await api.get_play_url(1001) == "http://cdn.invalid/live.flv"


@pytest.mark.asyncio
async def test_error_mapping(api_and_seen) -> None:
    api, _ = api_and_seen

    with pytest.raises(RoomNotFound):
        await api.get_room_info(404)
    with pytest.raises(TransientApiError):
        await api.get_room_info(503)


@pytest.mark.asyncio
async def test_reload_switches_credential_transport(api_and_seen) -> None:
    api, seen = api_and_seen

    api.reload(COOKIE)
    await api.get_room_info(1001)
    api.reload(TOKEN)
    await api.get_room_info(1001)
    api.reload(None)
    await api.get_room_info(1001)

    assert seen[0]["cookie"] == f"SESSDATA={COOKIE}"
    assert "access_key" not in seen[0]["query"]
    assert seen[1]["query"]["access_key"] == TOKEN
    assert seen[1]["cookie"] is None
    assert "access_key" not in seen[2]["query"]


@pytest.mark.asyncio
async def test_token_info(api_and_seen) -> None:
    api, _ = api_and_seen

    info = await api.get_token_info(TOKEN)
    assert info is not None and info.mid == 7
    assert await api.get_token_info("f" * 32) is None


def test_is_token_shape() -> None:
    assert is_token(TOKEN)
    assert not is_token(TOKEN.upper())
    assert not is_token(COOKIE)
    assert not is_token(None)


@pytest.mark.asyncio
async def test_password_login(api_and_seen) -> None:
    api, seen = api_and_seen

    info = await api.login("alice", "hunter2")

    assert info is not None
    assert info.access_token == TOKEN
    assert info.mid == 9
    assert {"login": "alice"} in seen


@pytest.mark.asyncio
async def test_password_login_rejected(api_and_seen) -> None:
    api, _ = api_and_seen

    assert await api.login("alice", "wrong") is None
