"""Resource provider base classes and control-plane error taxonomy."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Control-plane call failed.

    Attributes:
        status_code: HTTP status (None for connection-level failures)
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientAPIError(APIError):
    """Retryable failure (throttling, server error, timeout, connection reset)."""


class PermanentAPIError(APIError):
    """Failure that will not succeed on retry (validation, permission, conflict)."""


class ResourceNotFoundError(PermanentAPIError):
    """The addressed physical resource does not exist."""


class ProviderError(Exception):
    """Provider cannot build a request (e.g. missing required property)."""


@dataclass
class ResourceRequest:
    """Everything a provider needs to act on one resource.

    Attributes:
        logical_name: Logical name in the template
        resource_type: Resource type tag
        properties: Fully materialised properties
        stack_name: Owning stack
        region: Target region
        account_id: Target account
        physical_id: Existing physical id (update/delete)
        previous_properties: Materialised properties of the last apply (update)
        previous_attributes: Recorded attributes of the last apply (update)
    """
    logical_name: str
    resource_type: str
    properties: dict
    stack_name: str = ''
    region: str = 'us-east-1'
    account_id: str = '123456789012'
    physical_id: Optional[str] = None
    previous_properties: Optional[dict] = None
    previous_attributes: dict = field(default_factory=dict)


@dataclass
class ProviderResult:
    """Outcome of a successful create/update/describe."""
    physical_id: str
    attributes: dict = field(default_factory=dict)


@runtime_checkable
class ControlPlane(Protocol):
    """Protocol for control-plane backends."""

    def create_resource(self, resource_type: str, properties: dict,
                        physical_id: Optional[str] = None) -> dict:
        """Create a resource. Returns {'id': ..., 'attributes': {...}}."""

    def update_resource(self, resource_type: str, physical_id: str, properties: dict) -> dict:
        """Update a resource in place. Returns {'id': ..., 'attributes': {...}}."""

    def delete_resource(self, resource_type: str, physical_id: str) -> None:
        """Delete a resource. Raises ResourceNotFoundError if it is gone."""

    def get_resource(self, resource_type: str, physical_id: str) -> dict:
        """Describe a resource. Raises ResourceNotFoundError if it is gone."""


class ResourceProvider:
    """Base provider: forwards lifecycle calls to the control-plane.

    Subclasses choose physical ids and derive the attributes Fn::GetAtt can
    read; attributes returned by the control-plane take precedence.
    """

    resource_type = '*'
    # Properties that identify the resource and therefore name it
    name_property: Optional[str] = None

    def __init__(self, control_plane: ControlPlane):
        self.control_plane = control_plane

    def physical_id(self, request: ResourceRequest) -> Optional[str]:
        """Physical id to request on create (None = control-plane assigns)."""
        if self.name_property and request.properties.get(self.name_property):
            return str(request.properties[self.name_property])
        return None

    def derive_attributes(self, request: ResourceRequest, physical_id: str) -> dict:
        """Attributes known from the request and physical id alone."""
        return {}

    def _result(self, request: ResourceRequest, record: dict) -> ProviderResult:
        physical_id = str(record.get('id') or '')
        if not physical_id:
            raise PermanentAPIError(
                f"Control-plane returned no id for {request.resource_type} '{request.logical_name}'"
            )
        attributes = self.derive_attributes(request, physical_id)
        attributes.update(record.get('attributes') or {})
        return ProviderResult(physical_id=physical_id, attributes=attributes)

    def create(self, request: ResourceRequest) -> ProviderResult:
        record = self.control_plane.create_resource(
            request.resource_type, request.properties, physical_id=self.physical_id(request),
        )
        return self._result(request, record)

    def update(self, request: ResourceRequest) -> ProviderResult:
        if not request.physical_id:
            raise ProviderError(f"Cannot update '{request.logical_name}': no physical id recorded")
        record = self.control_plane.update_resource(
            request.resource_type, request.physical_id, request.properties,
        )
        result = self._result(request, record)
        # Keep attributes only issued at create time (e.g. secrets)
        merged = dict(request.previous_attributes)
        merged.update(result.attributes)
        result.attributes = merged
        return result

    def delete(self, request: ResourceRequest) -> bool:
        """Delete the resource. Returns False if it was already gone."""
        if not request.physical_id:
            logger.warning(f"No physical id recorded for '{request.logical_name}', nothing to delete")
            return False
        try:
            self.control_plane.delete_resource(request.resource_type, request.physical_id)
        except ResourceNotFoundError:
            logger.info(f"'{request.logical_name}' ({request.physical_id}) already gone")
            return False
        return True

    def describe(self, request: ResourceRequest) -> ProviderResult:
        if not request.physical_id:
            raise ProviderError(f"Cannot describe '{request.logical_name}': no physical id recorded")
        record = self.control_plane.get_resource(request.resource_type, request.physical_id)
        return self._result(request, record)


class GenericProvider(ResourceProvider):
    """Fallback for resource types without a dedicated provider."""


def require_property(request: ResourceRequest, key: str) -> Any:
    """Get a required property.

    Raises:
        ProviderError: If the property is missing or empty
    """
    value = request.properties.get(key)
    if value in (None, '', [], {}):
        raise ProviderError(f"{request.resource_type} '{request.logical_name}' requires property {key}")
    return value
