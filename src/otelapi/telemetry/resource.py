"""Resource descriptor attached to every span, metric stream and log record."""

import platform
import re
import socket
from pathlib import Path

from opentelemetry.sdk.resources import (
    CONTAINER_ID,
    DEPLOYMENT_ENVIRONMENT,
    HOST_NAME,
    OS_TYPE,
    SERVICE_NAME,
    SERVICE_VERSION,
    ProcessResourceDetector,
    Resource,
    get_aggregated_resources,
)

_CGROUP_PATH = Path("/proc/self/cgroup")
_CONTAINER_ID_RE = re.compile(r"([0-9a-f]{64})")


def _container_id(cgroup_path: Path = _CGROUP_PATH) -> str | None:
    """Best-effort container id from the cgroup file, ``None`` outside containers."""
    try:
        content = cgroup_path.read_text()
    except OSError:
        return None
    for line in content.splitlines():
        match = _CONTAINER_ID_RE.search(line)
        if match:
            return match.group(1)
    return None


def build_resource(
    service_name: str,
    service_version: str,
    environment: str,
) -> Resource:
    """Build the process-wide resource descriptor.

    Service identity comes from configuration; host, OS, process and
    container facts are detected once at startup. ``OTEL_RESOURCE_ATTRIBUTES``
    is honoured by ``Resource.create`` but never overrides the identity keys.

    Args:
        service_name: Logical service name.
        service_version: Deployed version string.
        environment: Deployment environment (development, staging, ...).

    Returns:
        Immutable resource shared by all three providers.
    """
    attributes: dict[str, str] = {
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        DEPLOYMENT_ENVIRONMENT: environment,
        HOST_NAME: socket.gethostname(),
        OS_TYPE: platform.system().lower(),
    }
    container_id = _container_id()
    if container_id:
        attributes[CONTAINER_ID] = container_id

    detected = get_aggregated_resources([ProcessResourceDetector()])
    return detected.merge(Resource.create(attributes))
