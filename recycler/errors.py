"""
Exception types raised by the recycler core.

Route handlers map these onto HTTP status codes; nothing here is allowed to
escape a request boundary unclassified.
"""


class RecyclerError(Exception):
    """Base class for all recycler errors."""


class InvalidUrlError(RecyclerError, ValueError):
    """URL could not be parsed into scheme, host and port."""


class InventoryError(RecyclerError):
    """The host inventory could not be read or written."""


class DeploymentConfigError(RecyclerError):
    """Deployment trust config or script is missing or unusable."""


class DeploymentSpawnError(RecyclerError):
    """The deployment script could not be started."""


class MalformedPayloadError(RecyclerError):
    """A signed webhook body could not be parsed."""
