"""Stack state management for template-based orchestration.

Records, per stack, what has been created: physical identifiers, attributes
and the desired properties they were created from. State is persisted to
<state_dir>/<stack>/state.json so later plans diff against reality and
destroy can find physical ids without the template.

A lock file next to the state serialises plan/apply/destroy on one stack.
"""

import json
import logging
import os
import socket
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

STATE_VERSION = 1
STATE_FILE = 'state.json'
LOCK_FILE = 'state.lock'

# Poll interval while waiting for a held lock
LOCK_POLL_INTERVAL = 0.5


class StateError(Exception):
    """Unreadable or incompatible state file."""


class ConflictError(Exception):
    """Another process holds the stack lock."""

    def __init__(self, message: str, holder: Optional[dict] = None):
        super().__init__(message)
        self.holder = holder or {}


@dataclass
class ResourceState:
    """Recorded state of one created resource.

    Attributes:
        name: Logical name
        type: Resource type tag
        properties: Desired property tree the resource was applied from
        physical_id: Identifier assigned by the control-plane
        attributes: Attributes available to Fn::GetAtt
        dependencies: Logical names this resource depended on when applied
        deletion_policy: Delete or Retain
        updated_at: Timestamp of the last successful change
    """
    name: str
    type: str
    properties: dict = field(default_factory=dict)
    physical_id: Optional[str] = None
    attributes: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    deletion_policy: str = 'Delete'
    updated_at: Optional[float] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'type': self.type,
            'properties': self.properties,
            'physical_id': self.physical_id,
            'attributes': self.attributes,
            'dependencies': self.dependencies,
        }
        if self.deletion_policy != 'Delete':
            d['deletion_policy'] = self.deletion_policy
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, name: str, data: dict) -> 'ResourceState':
        return cls(
            name=name,
            type=data['type'],
            properties=data.get('properties') or {},
            physical_id=data.get('physical_id'),
            attributes=data.get('attributes') or {},
            dependencies=list(data.get('dependencies') or []),
            deletion_policy=data.get('deletion_policy', 'Delete'),
            updated_at=data.get('updated_at'),
        )


class StackState:
    """Stack-level state with save/load.

    Resources are kept in the order they were recorded. Every save
    increments the serial.

    State is persisted to <state_dir>/<stack>/state.json.
    """

    def __init__(self, stack_name: str, state_dir: Path):
        """Initialize stack state.

        Args:
            stack_name: Stack identifier
            state_dir: Root state directory (per-stack directories live below it)
        """
        self.stack_name = stack_name
        self.state_dir = Path(state_dir)
        self.serial = 0
        self.description = ''
        self.parameters: dict[str, Any] = {}
        self.outputs: dict[str, Any] = {}
        self._resources: dict[str, ResourceState] = {}

    @property
    def path(self) -> Path:
        return self.state_dir / self.stack_name / STATE_FILE

    @property
    def resources(self) -> dict[str, ResourceState]:
        return dict(self._resources)

    @property
    def is_empty(self) -> bool:
        return not self._resources

    def get_resource(self, name: str) -> ResourceState:
        """Get resource state by name.

        Raises:
            KeyError: If resource not recorded
        """
        return self._resources[name]

    def set_resource(self, resource: ResourceState) -> None:
        """Record (or replace) a resource."""
        resource.updated_at = time.time()
        self._resources[resource.name] = resource

    def remove_resource(self, name: str) -> Optional[ResourceState]:
        """Forget a resource. Returns the removed state, if any."""
        return self._resources.pop(name, None)

    def to_dict(self) -> dict:
        return {
            'version': STATE_VERSION,
            'stack_name': self.stack_name,
            'serial': self.serial,
            'description': self.description,
            'parameters': self.parameters,
            'resources': {name: r.to_dict() for name, r in self._resources.items()},
            'outputs': self.outputs,
        }

    def save(self) -> Path:
        """Save state atomically (write temp file, then rename).

        Returns:
            Path where state was saved
        """
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        self.serial += 1

        tmp_path = path.with_name(f'.{path.name}.{os.getpid()}.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        logger.debug(f"Saved stack state to {path} (serial {self.serial})")
        return path

    @classmethod
    def load(cls, stack_name: str, state_dir: Path) -> 'StackState':
        """Load state from JSON file.

        Returns an empty state when no file exists yet.

        Raises:
            StateError: If the file is unreadable or has an unsupported version
        """
        state = cls(stack_name, state_dir)
        path = state.path
        if not path.exists():
            logger.debug(f"No state at {path}, starting empty")
            return state

        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateError(f"Cannot read state file {path}: {e}")

        if not isinstance(data, dict):
            raise StateError(f"State file {path} must contain a JSON object")
        version = data.get('version')
        if version != STATE_VERSION:
            raise StateError(
                f"Unsupported state version {version!r} in {path} (expected {STATE_VERSION})"
            )

        state.serial = int(data.get('serial', 0))
        state.description = data.get('description', '')
        state.parameters = data.get('parameters') or {}
        state.outputs = data.get('outputs') or {}
        try:
            for name, resource_data in (data.get('resources') or {}).items():
                state._resources[name] = ResourceState.from_dict(name, resource_data)
        except (KeyError, TypeError) as e:
            raise StateError(f"Malformed resource entry in {path}: {e}")

        logger.debug(f"Loaded stack state from {path} (serial {state.serial})")
        return state


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class StateLock:
    """Exclusive per-stack lock file.

    Created with O_CREAT|O_EXCL and holding the owner's pid, host and
    operation. Use as a context manager:

        with StateLock(state_dir, 'site', 'apply'):
            ...

    Locks whose owning process on this host has exited are reclaimed.
    """

    def __init__(self, state_dir: Path, stack_name: str, operation: str, timeout: float = 0.0):
        self.path = Path(state_dir) / stack_name / LOCK_FILE
        self.stack_name = stack_name
        self.operation = operation
        self.timeout = timeout
        self._held = False

    def read_holder(self) -> dict:
        """Contents of the current lock file ({} if absent or unreadable)."""
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    def _is_stale(self, holder: dict) -> bool:
        if holder.get('host') != socket.gethostname():
            return False
        pid = holder.get('pid')
        return isinstance(pid, int) and not _pid_alive(pid)

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump({
                'pid': os.getpid(),
                'host': socket.gethostname(),
                'operation': self.operation,
                'created_at': time.time(),
            }, f)
        return True

    def acquire(self) -> None:
        """Acquire the lock, waiting up to timeout seconds.

        Raises:
            ConflictError: If the lock is still held after the timeout
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.time() + self.timeout

        while True:
            if self._try_create():
                self._held = True
                logger.debug(f"Acquired lock {self.path}")
                return

            holder = self.read_holder()
            if self._is_stale(holder):
                logger.warning(f"Removing stale lock {self.path} (pid {holder.get('pid')} not running)")
                self.path.unlink(missing_ok=True)
                continue

            if time.time() >= deadline:
                owner = f"pid {holder.get('pid', '?')} on {holder.get('host', '?')}"
                raise ConflictError(
                    f"Stack '{self.stack_name}' is locked by {owner} "
                    f"({holder.get('operation', 'unknown')}). "
                    f"If that process is gone, run: stack-driver unlock -s {self.stack_name}",
                    holder,
                )
            time.sleep(LOCK_POLL_INTERVAL)

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False
            logger.debug(f"Released lock {self.path}")

    def force_release(self) -> bool:
        """Remove the lock regardless of owner. Returns True if a lock existed."""
        if not self.path.exists():
            return False
        self.path.unlink(missing_ok=True)
        return True

    def __enter__(self) -> 'StateLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
