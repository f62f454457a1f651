import pytest
from aiohttp import web
from aiohttp import test_utils

from hubbridge.lib.hub_client import HubAuthError, HubClient, HubError
from hubbridge.lib.store import CredentialStore


@pytest.fixture
async def hub_server():
    seen = []
    app = web.Application()

    async def authenticate(request):
        body = await request.json()
        seen.append(("auth", request.headers.get("X-Emby-Authorization"), body))
        if body.get("Pw") == "plain":
            return web.Response(text="welcome")
        if body.get("Pw") != "secret":
            return web.Response(status=401)
        return web.json_response({"AccessToken": "tok", "User": {"Id": "uid"}})

    async def info(request):
        if request.headers.get("X-Emby-Token") != "tok":
            return web.Response(status=401)
        return web.json_response({"Version": "10.9"})

    async def episodes(request):
        seen.append(("episodes", request.match_info["series"], dict(request.query)))
        return web.json_response({"Items": [{"Id": "e1"}, {"Id": "e2"}]})

    async def playing(request):
        seen.append(("playing", request.path, await request.json()))
        return web.Response(status=204)

    async def item(request):
        item_id = request.match_info["item"]
        if item_id == "truncated":
            return web.Response(text="{truncated", content_type="application/json")
        if item_id == "text":
            return web.Response(text="not an item")
        return web.json_response({"Id": item_id})

    async def broken(request):
        return web.Response(status=500)

    app.router.add_post("/Users/AuthenticateByName", authenticate)
    app.router.add_get("/System/Info", info)
    app.router.add_get("/Shows/{series}/Episodes", episodes)
    app.router.add_post("/Sessions/Playing/Stopped", playing)
    app.router.add_post("/Users/{uid}/PlayedItems/{item}", broken)
    app.router.add_get("/Users/{uid}/Items/{item}", item)

    server = test_utils.TestServer(app)
    await server.start_server()
    server.seen = seen
    yield server
    await server.close()


@pytest.fixture
async def client(hub_server, tmp_path):
    creds = CredentialStore(str(tmp_path), "dev")
    hub = HubClient(str(hub_server.make_url("")), "TV", "dev", creds,
                    username="tv", password="secret")
    yield hub
    await hub.close()


async def test_authenticate_saves_credentials(client, hub_server, tmp_path):
    assert await client.authenticate()

    assert (client.credentials.access_token, client.credentials.user_id) == ("tok", "uid")
    stored = CredentialStore(str(tmp_path), "dev")
    assert stored.load()
    _, auth_header, body = hub_server.seen[0]
    assert 'DeviceId="dev"' in auth_header
    assert body == {"Username": "tv", "Pw": "secret"}


async def test_bad_password(client):
    client.password = "wrong"
    assert not await client.authenticate()
    assert not client.credentials.is_valid


async def test_server_info_distinguishes_401(client):
    with pytest.raises(HubAuthError):
        await client.server_info()
    await client.authenticate()
    assert (await client.server_info())["Version"] == "10.9"


async def test_server_error_is_hub_error(client):
    await client.authenticate()
    with pytest.raises(HubError) as exc:
        await client.mark_played("item")
    assert exc.value.status == 500
    assert not isinstance(exc.value, HubAuthError)


async def test_unreachable_hub_is_hub_error(tmp_path):
    creds = CredentialStore(str(tmp_path), "dev")
    hub = HubClient("http://127.0.0.1:1", "TV", "dev", creds, timeout=2)
    try:
        with pytest.raises(HubError):
            await hub.server_info()
    finally:
        await hub.close()


async def test_episode_listing(client, hub_server):
    await client.authenticate()
    items = await client.get_episodes("show", "season1")

    assert [i["Id"] for i in items] == ["e1", "e2"]
    _, series, query = hub_server.seen[-1]
    assert series == "show"
    assert query["seasonId"] == "season1"
    assert query["userId"] == "uid"


async def test_stop_report_body(client, hub_server):
    await client.authenticate()
    await client.report_stop("item", 1234, "psid")

    _, path, body = hub_server.seen[-1]
    assert body == {"ItemId": "item", "PositionTicks": 1234, "PlaySessionId": "psid"}


def test_urls(tmp_path):
    creds = CredentialStore(str(tmp_path), "dev")
    creds.access_token = "tok"
    hub = HubClient("https://hub.example/", "TV", "dev", creds)

    assert hub.stream_url("abc") == "https://hub.example/Videos/abc/stream?static=true&api_key=tok"
    assert hub.socket_url() == "wss://hub.example/socket?api_key=tok&deviceId=dev"

    hub = HubClient("http://hub:8096", "TV", "dev", creds)
    assert hub.socket_url().startswith("ws://hub:8096/socket?")


async def test_item_lookup(client):
    await client.authenticate()
    assert await client.get_item("abc") == {"Id": "abc"}


@pytest.mark.parametrize("item_id", ["truncated", "text"])
async def test_unreadable_item_body_is_hub_error(client, item_id):
    await client.authenticate()
    with pytest.raises(HubError):
        await client.get_item(item_id)


async def test_non_json_login_response_fails_cleanly(client):
    client.password = "plain"
    assert not await client.authenticate()
    assert not client.credentials.is_valid
