"""
IIS inventory providers.

The core only talks to the host through InventoryProvider.open_session(). A
session is opened per request and discarded afterwards, so the site list is
re-read on every call. Two providers exist:

- AppCmdInventoryProvider drives appcmd.exe on the IIS host
- StaticInventoryProvider serves a fixed inventory (dev, tests, dry runs)
"""

import asyncio
import json
import structlog
import xml.etree.ElementTree as ET
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Protocol, Union

from pydantic import ValidationError

from .config import Settings
from .errors import InventoryError
from .host_executor import HostCommandExecutor
from .models import AppPool, Binding, Site

logger = structlog.get_logger()


class InventorySession(Protocol):
    """Short-lived view onto the host inventory."""

    async def list_sites(self) -> List[Site]:
        ...

    async def list_app_pools(self) -> List[AppPool]:
        ...

    async def get_app_pool(self, name: str) -> Optional[AppPool]:
        ...

    async def recycle(self, name: str) -> None:
        """Signal a recycle. Raises InventoryError when the host refuses."""
        ...

    async def commit(self) -> None:
        ...


class InventoryProvider(Protocol):
    """Opens sessions onto the host inventory."""

    def open_session(self):
        """Return an async context manager yielding an InventorySession."""
        ...


# =============================================================================
# Static inventory
# =============================================================================

class StaticInventorySession:
    """Session over in-memory sites; recycles apply on commit."""

    def __init__(self, provider: "StaticInventoryProvider"):
        self._provider = provider
        self._pending: List[str] = []

    async def list_sites(self) -> List[Site]:
        return [site.model_copy(deep=True) for site in self._provider.sites]

    async def list_app_pools(self) -> List[AppPool]:
        return [pool.model_copy() for pool in self._provider.app_pools]

    async def get_app_pool(self, name: str) -> Optional[AppPool]:
        for pool in self._provider.app_pools:
            if pool.name == name:
                return pool.model_copy()
        return None

    async def recycle(self, name: str) -> None:
        if await self.get_app_pool(name) is None:
            raise InventoryError(f"App pool not found: {name}")
        if name in self._provider.failing_pools:
            raise InventoryError(f"Recycle refused for app pool: {name}")
        self._pending.append(name)

    async def commit(self) -> None:
        for name in self._pending:
            self._provider.recycle_calls.append(name)
        self._pending.clear()


class StaticInventoryProvider:
    """
    Fixed inventory held in memory.

    recycle_calls records every committed recycle in order; pools listed in
    failing_pools refuse to recycle.
    """

    def __init__(
        self,
        sites: Optional[List[Site]] = None,
        app_pools: Optional[List[AppPool]] = None,
    ):
        self.sites: List[Site] = list(sites or [])
        if app_pools is None:
            names = []
            for site in self.sites:
                if site.app_pool_name and site.app_pool_name not in names:
                    names.append(site.app_pool_name)
            app_pools = [AppPool(name=name, state="Started") for name in names]
        self.app_pools: List[AppPool] = list(app_pools)
        self.failing_pools: set = set()
        self.recycle_calls: List[str] = []
        self.sessions_opened = 0

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "StaticInventoryProvider":
        """
        Load an inventory from a JSON file of the form
        {"sites": [...], "app_pools": [...]}; app_pools is optional.
        """
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise InventoryError(f"Cannot load inventory file {path}: {e}") from e

        if not isinstance(data, dict):
            raise InventoryError(f"Inventory file {path} must hold a JSON object")

        try:
            sites = [Site.model_validate(item) for item in data.get("sites", [])]
            pools = data.get("app_pools")
            app_pools = [AppPool.model_validate(item) for item in pools] if pools is not None else None
        except (TypeError, ValidationError) as e:
            raise InventoryError(f"Invalid inventory file {path}: {e}") from e
        return cls(sites=sites, app_pools=app_pools)

    @asynccontextmanager
    async def open_session(self) -> AsyncIterator[StaticInventorySession]:
        self.sessions_opened += 1
        yield StaticInventorySession(self)


# =============================================================================
# appcmd.exe inventory
# =============================================================================

def parse_bindings(bindings: str) -> List[Binding]:
    """
    Parse appcmd's bindings attribute, e.g. "http/*:80:,https/*:443:www.example.com".

    Entries without a protocol separator are dropped; the specifier itself is
    kept verbatim even when it does not have three fields.
    """
    result = []
    for entry in bindings.split(","):
        entry = entry.strip()
        if not entry or "/" not in entry:
            continue
        protocol, information = entry.split("/", 1)
        parts = information.split(":")
        host = parts[2] if len(parts) == 3 else ""
        result.append(Binding(protocol=protocol, binding_information=information, host=host))
    return result


def _parse_xml(output: str, what: str) -> ET.Element:
    try:
        return ET.fromstring(output)
    except ET.ParseError as e:
        raise InventoryError(f"Unparseable appcmd output for {what}: {e}") from e


def parse_site_list(sites_xml: str, apps_xml: str) -> List[Site]:
    """
    Build Site models from `appcmd list site /xml` and `appcmd list app /xml`.

    A site's app pool is the pool of its root application (path "/").
    Document order is preserved.
    """
    root_pools: Dict[str, str] = {}
    for app in _parse_xml(apps_xml, "apps").iter("APP"):
        if app.get("path", "/") == "/":
            root_pools[app.get("SITE.NAME", "")] = app.get("APPPOOL.NAME", "")

    sites = []
    for element in _parse_xml(sites_xml, "sites").iter("SITE"):
        name = element.get("SITE.NAME", "")
        try:
            site_id = int(element.get("SITE.ID", "0"))
        except ValueError:
            site_id = 0
        sites.append(Site(
            name=name,
            id=site_id,
            state=element.get("state", "Unknown"),
            app_pool_name=root_pools.get(name, ""),
            bindings=parse_bindings(element.get("bindings", "")),
        ))
    return sites


def parse_app_pool_list(pools_xml: str) -> List[AppPool]:
    """Build AppPool models from `appcmd list apppool /xml`."""
    return [
        AppPool(name=element.get("APPPOOL.NAME", ""), state=element.get("state", "Unknown"))
        for element in _parse_xml(pools_xml, "app pools").iter("APPPOOL")
    ]


class AppCmdInventorySession:
    """Session that reads and recycles through appcmd.exe."""

    def __init__(self, executor: HostCommandExecutor, appcmd_path: str):
        self.executor = executor
        self.appcmd_path = appcmd_path
        self.logger = logger.bind(component="appcmd_inventory")

    async def _appcmd(self, *args: str, max_retries: int = 3) -> str:
        stdout, stderr, exit_code = await self.executor.execute(
            [self.appcmd_path, *args],
            max_retries=max_retries
        )
        if exit_code != 0:
            self.logger.error(
                "appcmd_failed",
                args=list(args),
                exit_code=exit_code,
                stderr=stderr or stdout
            )
            raise InventoryError(f"appcmd {' '.join(args)} failed ({exit_code}): {stderr or stdout}")
        return stdout

    async def list_sites(self) -> List[Site]:
        sites_xml, apps_xml = await asyncio.gather(
            self._appcmd("list", "site", "/xml"),
            self._appcmd("list", "app", "/xml"),
        )
        return parse_site_list(sites_xml, apps_xml)

    async def list_app_pools(self) -> List[AppPool]:
        return parse_app_pool_list(await self._appcmd("list", "apppool", "/xml"))

    async def get_app_pool(self, name: str) -> Optional[AppPool]:
        for pool in await self.list_app_pools():
            if pool.name == name:
                return pool
        return None

    async def recycle(self, name: str) -> None:
        # Single attempt: a dropped connection may already have delivered the signal
        output = await self._appcmd("recycle", "apppool", f"/apppool.name:{name}", max_retries=1)
        self.logger.debug("appcmd_recycle_output", app_pool=name, output=output)

    async def commit(self) -> None:
        # appcmd applies changes immediately; nothing is staged
        return None


class AppCmdInventoryProvider:
    """Inventory backed by appcmd.exe, locally or over SSH."""

    def __init__(self, executor: HostCommandExecutor, appcmd_path: str):
        self.executor = executor
        self.appcmd_path = appcmd_path

    @asynccontextmanager
    async def open_session(self) -> AsyncIterator[AppCmdInventorySession]:
        yield AppCmdInventorySession(self.executor, self.appcmd_path)

    async def close(self):
        await self.executor.close()


def build_inventory_provider(settings: Settings):
    """Create the inventory provider selected by settings."""
    if settings.inventory_backend == "static":
        if not settings.inventory_file:
            logger.warning("static_inventory_without_file")
            return StaticInventoryProvider()
        return StaticInventoryProvider.from_file(settings.inventory_file)

    return AppCmdInventoryProvider(
        executor=HostCommandExecutor.from_settings(settings),
        appcmd_path=settings.appcmd_path,
    )
