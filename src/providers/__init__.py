"""Resource providers: per-type adapters between the executor and a control-plane."""

import logging
from typing import Optional

from providers.aws import TYPED_PROVIDERS
from providers.base import (
    APIError,
    ControlPlane,
    GenericProvider,
    PermanentAPIError,
    ProviderError,
    ProviderResult,
    ResourceNotFoundError,
    ResourceProvider,
    ResourceRequest,
    TransientAPIError,
)
from providers.control_plane import HttpControlPlane, LocalControlPlane, build_control_plane

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Maps resource type tags to provider instances.

    Unknown types fall back to GenericProvider.
    """

    def __init__(self, control_plane: ControlPlane, providers: Optional[dict] = None):
        self.control_plane = control_plane
        self._classes: dict[str, type] = {p.resource_type: p for p in TYPED_PROVIDERS}
        self._classes.update(providers or {})
        self._instances: dict[str, ResourceProvider] = {}

    def register(self, resource_type: str, provider_cls: type) -> None:
        self._classes[resource_type] = provider_cls
        self._instances.pop(resource_type, None)

    def is_known(self, resource_type: str) -> bool:
        return resource_type in self._classes

    def get(self, resource_type: str) -> ResourceProvider:
        if resource_type not in self._instances:
            provider_cls = self._classes.get(resource_type)
            if provider_cls is None:
                logger.debug(f"No provider for {resource_type}, using generic provider")
                provider_cls = GenericProvider
            self._instances[resource_type] = provider_cls(self.control_plane)
        return self._instances[resource_type]


__all__ = [
    'APIError',
    'ControlPlane',
    'GenericProvider',
    'HttpControlPlane',
    'LocalControlPlane',
    'PermanentAPIError',
    'ProviderError',
    'ProviderRegistry',
    'ProviderResult',
    'ResourceNotFoundError',
    'ResourceProvider',
    'ResourceRequest',
    'TransientAPIError',
    'build_control_plane',
]
