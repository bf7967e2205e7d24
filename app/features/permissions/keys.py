"""
Structured permission keys.

Permissions travel through the engine as ``PermissionKey(resource, operation)``
pairs and are only rendered as ``"resource:operation"`` strings at the API
boundary.
"""
from typing import Iterable, NamedTuple


# Permissions on this resource are only ever granted through global roles
PLATFORM_RESOURCE = "system"


class PermissionKey(NamedTuple):
    resource: str
    operation: str

    @classmethod
    def parse(cls, value: "str | PermissionKey") -> "PermissionKey":
        """
        Parse ``"resource:operation"``.

        Raises:
            ValueError: if either half is missing, e.g. ``"users"``,
                ``":update"`` or ``"users:"``.
        """
        if isinstance(value, PermissionKey):
            return value
        resource, sep, operation = (value or "").partition(":")
        resource, operation = resource.strip(), operation.strip()
        if not sep or not resource or not operation or ":" in operation:
            raise ValueError(f"Invalid permission {value!r}, expected 'resource:operation'")
        return cls(resource, operation)

    def __str__(self) -> str:
        return f"{self.resource}:{self.operation}"

    @property
    def is_platform(self) -> bool:
        return self.resource == PLATFORM_RESOURCE


def parse_keys(values: Iterable["str | PermissionKey"]) -> frozenset[PermissionKey]:
    return frozenset(PermissionKey.parse(value) for value in values)


def format_keys(keys: Iterable[PermissionKey]) -> list[str]:
    """Render keys as sorted ``resource:operation`` strings."""
    return sorted(str(key) for key in keys)
