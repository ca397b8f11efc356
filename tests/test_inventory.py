"""
Tests for the appcmd and static inventory providers.
"""

import json

import pytest

from recycler.errors import InventoryError
from recycler.inventory import (
    AppCmdInventoryProvider,
    StaticInventoryProvider,
    parse_app_pool_list,
    parse_bindings,
    parse_site_list,
)

APPCMD = r"C:\Windows\System32\inetsrv\appcmd.exe"

SITES_XML = """<?xml version="1.0" encoding="UTF-8"?>
<appcmd>
    <SITE SITE.NAME="Default Web Site" SITE.ID="1" bindings="http/*:80:,net.tcp/808:*" state="Started" />
    <SITE SITE.NAME="Shop" SITE.ID="2" bindings="https/*:443:shop.example.com,http/*:80:shop.example.com" state="Stopped" />
</appcmd>
"""

APPS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<appcmd>
    <APP APP.NAME="Default Web Site/" APPPOOL.NAME="DefaultAppPool" SITE.NAME="Default Web Site" path="/" />
    <APP APP.NAME="Default Web Site/legacy" APPPOOL.NAME="LegacyPool" SITE.NAME="Default Web Site" path="/legacy" />
    <APP APP.NAME="Shop/" APPPOOL.NAME="ShopPool" SITE.NAME="Shop" path="/" />
</appcmd>
"""

POOLS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<appcmd>
    <APPPOOL APPPOOL.NAME="DefaultAppPool" PipelineMode="Integrated" RuntimeVersion="v4.0" state="Started" />
    <APPPOOL APPPOOL.NAME="ShopPool" PipelineMode="Integrated" RuntimeVersion="v4.0" state="Stopped" />
</appcmd>
"""


class FakeExecutor:
    """Answers appcmd invocations from canned output."""

    def __init__(self, outputs=None):
        self.outputs = outputs or {}
        self.calls = []
        self.closed = False

    async def execute(self, args, timeout=None, max_retries=3):
        self.calls.append(list(args))
        return self.outputs.get(" ".join(args[1:]), ("", "ERROR ( message:Unknown command )", 1))

    async def close(self):
        self.closed = True


@pytest.fixture
def executor():
    return FakeExecutor({
        "list site /xml": (SITES_XML, "", 0),
        "list app /xml": (APPS_XML, "", 0),
        "list apppool /xml": (POOLS_XML, "", 0),
        "recycle apppool /apppool.name:ShopPool": ('"ShopPool" successfully recycled', "", 0),
    })


class TestAppCmdParsing:
    """Test parsing of appcmd XML output."""

    def test_parse_bindings(self):
        bindings = parse_bindings("http/*:80:,https/10.0.0.1:443:www.example.com")
        assert [(b.protocol, b.binding_information, b.host) for b in bindings] == [
            ("http", "*:80:", ""),
            ("https", "10.0.0.1:443:www.example.com", "www.example.com"),
        ]

    def test_parse_bindings_keeps_malformed_specifier(self):
        bindings = parse_bindings("net.tcp/808:*")
        assert bindings[0].binding_information == "808:*"
        assert bindings[0].host == ""

    def test_parse_bindings_empty(self):
        assert parse_bindings("") == []

    def test_sites_use_root_application_pool(self):
        sites = parse_site_list(SITES_XML, APPS_XML)
        assert [(s.name, s.id, s.state, s.app_pool_name) for s in sites] == [
            ("Default Web Site", 1, "Started", "DefaultAppPool"),
            ("Shop", 2, "Stopped", "ShopPool"),
        ]
        assert len(sites[1].bindings) == 2

    def test_app_pools(self):
        pools = parse_app_pool_list(POOLS_XML)
        assert [(p.name, p.state) for p in pools] == [("DefaultAppPool", "Started"), ("ShopPool", "Stopped")]

    def test_garbage_output_raises(self):
        with pytest.raises(InventoryError):
            parse_app_pool_list("ERROR ( hresult:80070005, message:Access denied )")


class TestAppCmdInventory:
    """Test the appcmd-backed session."""

    @pytest.mark.asyncio
    async def test_list_sites(self, executor):
        provider = AppCmdInventoryProvider(executor, APPCMD)
        async with provider.open_session() as session:
            sites = await session.list_sites()
        assert [s.app_pool_name for s in sites] == ["DefaultAppPool", "ShopPool"]
        assert all(call[0] == APPCMD for call in executor.calls)

    @pytest.mark.asyncio
    async def test_recycle_issues_appcmd(self, executor):
        provider = AppCmdInventoryProvider(executor, APPCMD)
        async with provider.open_session() as session:
            await session.recycle("ShopPool")
            await session.commit()
        assert executor.calls[-1] == [APPCMD, "recycle", "apppool", "/apppool.name:ShopPool"]

    @pytest.mark.asyncio
    async def test_failed_command_raises(self, executor):
        provider = AppCmdInventoryProvider(executor, APPCMD)
        async with provider.open_session() as session:
            with pytest.raises(InventoryError):
                await session.recycle("MissingPool")

    @pytest.mark.asyncio
    async def test_get_app_pool(self, executor):
        provider = AppCmdInventoryProvider(executor, APPCMD)
        async with provider.open_session() as session:
            pool = await session.get_app_pool("ShopPool")
            missing = await session.get_app_pool("Nope")
        assert pool.state == "Stopped"
        assert missing is None

    @pytest.mark.asyncio
    async def test_close_closes_executor(self, executor):
        provider = AppCmdInventoryProvider(executor, APPCMD)
        await provider.close()
        assert executor.closed is True


class TestStaticInventory:
    """Test the in-memory inventory."""

    def test_pools_derived_from_sites(self, inventory):
        names = [pool.name for pool in inventory.app_pools]
        assert names[0] == "ShopPool"
        assert "DefaultAppPool" in names
        assert len(names) == len(set(names))

    @pytest.mark.asyncio
    async def test_recycle_applies_on_commit(self, inventory):
        async with inventory.open_session() as session:
            await session.recycle("ShopPool")
            assert inventory.recycle_calls == []
            await session.commit()
        assert inventory.recycle_calls == ["ShopPool"]

    @pytest.mark.asyncio
    async def test_sessions_return_copies(self, inventory):
        async with inventory.open_session() as session:
            sites = await session.list_sites()
        sites[0].app_pool_name = "Changed"
        assert inventory.sites[0].app_pool_name == "ShopPool"

    @pytest.mark.asyncio
    async def test_unknown_pool_raises(self, inventory):
        async with inventory.open_session() as session:
            with pytest.raises(InventoryError):
                await session.recycle("Nope")

    def test_from_file(self, tmp_path):
        path = tmp_path / "inventory.json"
        path.write_text(json.dumps({
            "sites": [{
                "name": "Blog",
                "id": 3,
                "app_pool_name": "BlogPool",
                "bindings": [{"protocol": "https", "binding_information": "*:443:blog.example.com"}],
            }],
            "app_pools": [{"name": "BlogPool", "state": "Started"}, {"name": "SparePool"}],
        }), encoding="utf-8")

        provider = StaticInventoryProvider.from_file(path)
        assert provider.sites[0].bindings[0].binding_information == "*:443:blog.example.com"
        assert [p.name for p in provider.app_pools] == ["BlogPool", "SparePool"]

    def test_from_missing_file(self, tmp_path):
        with pytest.raises(InventoryError):
            StaticInventoryProvider.from_file(tmp_path / "missing.json")

    @pytest.mark.parametrize("content", [
        "[]",
        '{"sites": [{"name": "Blog"}]}',
        '{"sites": 5}',
        '{"app_pools": [{"state": "Started"}]}',
    ])
    def test_from_invalid_file(self, tmp_path, content):
        path = tmp_path / "inventory.json"
        path.write_text(content, encoding="utf-8")
        with pytest.raises(InventoryError):
            StaticInventoryProvider.from_file(path)
