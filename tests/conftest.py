"""
Shared fixtures: a small IIS inventory, audit log and deployment fakes.
"""

import pytest

from recycler.audit import AuditLog
from recycler.inventory import StaticInventoryProvider
from recycler.models import Binding, Site


def make_site(name, site_id, app_pool, *bindings):
    return Site(
        name=name,
        id=site_id,
        state="Started",
        app_pool_name=app_pool,
        bindings=[
            Binding(protocol=protocol, binding_information=info, host=info.split(":")[-1])
            for protocol, info in bindings
        ],
    )


def sample_sites():
    """Sites in inventory order; the catch-all http site comes last."""
    return [
        make_site("Shop", 2, "ShopPool",
                  ("https", "*:443:shop.example.com"),
                  ("http", "*:80:shop.example.com")),
        make_site("Tenants", 3, "TenantsPool",
                  ("https", "*:443:*.tenants.example.com")),
        make_site("Api", 4, "ApiPool",
                  ("https", "*:8443:api.example.com")),
        make_site("Broken", 5, "BrokenPool",
                  ("https", "*:443")),
        make_site("Empty", 6, "EmptyPool"),
        make_site("Default Web Site", 1, "DefaultAppPool",
                  ("http", "*:80:")),
    ]


class FakeLauncher:
    """Records launches instead of spawning processes."""

    def __init__(self):
        self.launches = []

    async def launch(self, script, output_log):
        self.launches.append((script, output_log))
        return 4242


@pytest.fixture
def sites():
    return sample_sites()


@pytest.fixture
def inventory():
    return StaticInventoryProvider(sites=sample_sites())


@pytest.fixture
def audit(tmp_path):
    return AuditLog(tmp_path / "webhook.log", tmp_path / "webhook-deployment.log")


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def trust_config_file(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text(
        "; deployment webhook trust config\n"
        "secret = s3cret\n"
        "repository = acme/web-portal\n"
        "branch = main\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def deploy_script(tmp_path):
    path = tmp_path / "deploy-webhook.bat"
    path.write_text("@echo off\r\necho deploying\r\n", encoding="utf-8")
    return path
