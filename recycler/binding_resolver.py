"""
Binding resolution: map a URL to the app pool of the IIS site serving it.

Sites are walked in inventory order and bindings in declared order; the first
binding that matches wins. There is no scoring between exact and wildcard
bindings, so inventory order is authoritative.
"""

import structlog
from typing import Iterable, NamedTuple, Optional
from urllib.parse import urlsplit

from . import metrics
from .errors import InvalidUrlError
from .inventory import InventoryProvider
from .models import Binding, Site

logger = structlog.get_logger()

DEFAULT_SCHEME = "https"
DEFAULT_PORTS = {"http": 80, "https": 443}


class UrlTarget(NamedTuple):
    """Scheme, host and port a binding is matched against."""
    scheme: str
    host: str
    port: int


def normalize_url(url: str) -> str:
    """
    Prefix https:// when the URL carries no http(s) scheme.

    Args:
        url: URL as received from a caller or monitor

    Returns:
        URL with an explicit scheme
    """
    url = url.strip()
    if not url.lower().startswith(("http://", "https://")):
        url = f"{DEFAULT_SCHEME}://{url}"
    return url


def parse_url(url: str) -> UrlTarget:
    """
    Split a URL into the parts bindings are matched on.

    Raises:
        InvalidUrlError: No scheme, no host, or a non-numeric port
    """
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as e:
        raise InvalidUrlError(f"Invalid URL: {url}") from e

    scheme = parts.scheme.lower()
    host = parts.hostname or ""
    if not scheme or not host:
        raise InvalidUrlError(f"Invalid URL: {url}")

    if port is None:
        port = DEFAULT_PORTS.get(scheme)
        if port is None:
            raise InvalidUrlError(f"No default port for scheme '{scheme}': {url}")

    return UrlTarget(scheme=scheme, host=host, port=port)


def host_matches(binding_host: str, host: str) -> bool:
    """
    Match a binding host field against a request host.

    Empty or "*" accepts any host. "*.example.com" accepts any host ending in
    ".example.com" but not "example.com" itself.
    """
    if not binding_host or binding_host == "*":
        return True

    binding_host = binding_host.lower()
    host = host.lower()

    if binding_host == host:
        return True

    if binding_host.startswith("*."):
        # keep the leading dot so "evil-example.com" never matches
        suffix = binding_host[1:]
        return host.endswith(suffix) and len(host) > len(suffix)

    return False


def binding_matches(binding: Binding, target: UrlTarget) -> bool:
    """Check one binding against a parsed URL."""
    if binding.protocol.lower() != target.scheme:
        return False

    parts = binding.binding_information.split(":")
    if len(parts) != 3:
        logger.debug(
            "binding_skipped_malformed",
            binding_information=binding.binding_information
        )
        return False

    _, port_field, host_field = parts

    # Unparseable port fields are treated as a port wildcard
    try:
        binding_port = int(port_field)
    except ValueError:
        binding_port = None

    if binding_port is not None and binding_port != target.port:
        return False

    return host_matches(host_field, target.host)


def find_site(sites: Iterable[Site], url: str) -> Optional[Site]:
    """
    Find the first site with a binding matching the URL.

    Args:
        sites: Sites in inventory order
        url: Absolute URL (callers normalize the scheme first)

    Returns:
        The matching site, or None when the URL is not hosted here

    Raises:
        InvalidUrlError: URL cannot be parsed
    """
    target = parse_url(url)

    for site in sites:
        for binding in site.bindings:
            if binding_matches(binding, target):
                logger.info(
                    "binding_matched",
                    url=url,
                    site=site.name,
                    binding=f"{binding.protocol}/{binding.binding_information}",
                    app_pool=site.app_pool_name
                )
                return site

    return None


def resolve_app_pool(sites: Iterable[Site], url: str) -> Optional[str]:
    """
    Resolve a URL to the name of the app pool that serves it.

    Returns:
        App pool name, or None when no site binding matches
    """
    site = find_site(sites, url)
    if site is None:
        logger.warning("no_matching_app_pool", url=url)
        metrics.record_resolution("not_found")
        return None
    metrics.record_resolution("found")
    return site.app_pool_name or None


async def lookup_app_pool(provider: InventoryProvider, url: str) -> Optional[str]:
    """
    Read the current site list and resolve a URL against it.

    Raises:
        InvalidUrlError: URL cannot be parsed (checked before the inventory is read)
        InventoryError: Site list could not be read
    """
    try:
        parse_url(url)
    except InvalidUrlError:
        metrics.record_resolution("invalid")
        raise

    logger.info("looking_up_app_pool", url=url)
    async with provider.open_session() as session:
        sites = await session.list_sites()
    return resolve_app_pool(sites, url)
