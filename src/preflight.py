"""Pre-flight readiness checks for stack operations.

Validates prerequisites before apply/destroy touches anything:
- State directory is writable
- HTTP control-plane is reachable and accepts the token
"""

import logging
import os
import tempfile
from pathlib import Path

import requests
import urllib3

from config import ControlPlaneSettings, DriverConfig

logger = logging.getLogger(__name__)


def validate_state_dir(state_dir: Path) -> tuple[bool, str]:
    """Check the state directory exists (or can be created) and is writable.

    Returns:
        (success, message) tuple
    """
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=state_dir, prefix='.preflight-'):
            pass
    except OSError as e:
        return False, f"State directory {state_dir} is not writable: {e}"
    if not os.access(state_dir, os.W_OK):
        return False, f"State directory {state_dir} is not writable"
    return True, f"State directory {state_dir} writable"


def validate_control_plane(settings: ControlPlaneSettings) -> tuple[bool, str]:
    """Check the HTTP control-plane health endpoint.

    Makes a lightweight GET {endpoint}/health to verify reachability and
    credentials.

    Returns:
        (success, message) tuple
    """
    headers = {}
    if settings.token:
        headers['Authorization'] = f'Bearer {settings.token}'
    if not settings.verify_tls:
        # Suppress SSL warnings for self-signed certs
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    try:
        resp = requests.get(
            f"{settings.endpoint}/health",
            headers=headers,
            verify=settings.verify_tls,
            timeout=10,
        )
    except requests.exceptions.ConnectionError as e:
        return False, f"Cannot connect to {settings.endpoint}: {e}"
    except requests.exceptions.Timeout:
        return False, f"Timeout connecting to {settings.endpoint}"

    if resp.status_code in (401, 403):
        return False, (
            "Control-plane rejected the token.\n"
            "Set control_plane.token in the driver config or export STACK_DRIVER_TOKEN"
        )
    if resp.status_code == 200:
        return True, f"Control-plane reachable at {settings.endpoint}"
    return False, f"Unexpected health response: {resp.status_code} - {resp.text[:100]}"


def validate_readiness(config: DriverConfig) -> list[str]:
    """Run all pre-flight checks for a driver configuration.

    Returns:
        List of error messages (empty = ready)
    """
    errors = []

    ok, message = validate_state_dir(config.state_dir)
    if ok:
        logger.debug(message)
    else:
        errors.append(message)

    if config.control_plane.type == 'http':
        ok, message = validate_control_plane(config.control_plane)
        if ok:
            logger.debug(message)
        else:
            errors.append(message)

    return errors


def format_preflight_errors(errors: list[str]) -> str:
    """Format pre-flight errors for display."""
    lines = ["", "Pre-flight validation failed:"]
    for error in errors:
        for i, line in enumerate(error.split('\n')):
            prefix = "  ✗ " if i == 0 else "    "
            lines.append(f"{prefix}{line}")
    lines.extend(["", "Use --skip-preflight to bypass these checks", ""])
    return '\n'.join(lines)
