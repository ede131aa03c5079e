# backend/vibespace/services/errors.py
"""Exception taxonomy shared by the hypervisor client, pollers and lifecycle layer."""
from typing import Optional, Union


class VibespaceError(Exception):
    """Base class for orchestration errors."""
    pass


class ConfigurationError(VibespaceError):
    """Missing or invalid hypervisor configuration. Never retried."""
    pass


class ProxmoxAPIError(VibespaceError):
    """The hypervisor REST API rejected a request."""

    def __init__(self, message: str, status_code: Optional[int] = None, path: Optional[str] = None):
        self.status_code = status_code
        self.path = path
        super().__init__(message)

    @property
    def is_not_found(self) -> bool:
        text = str(self).lower()
        return (
            self.status_code == 404
            or "does not exist" in text
            or "not found" in text
            or "no such" in text
        )

    @property
    def is_vmid_conflict(self) -> bool:
        text = str(self).lower()
        return "already exists" in text or "already in use" in text


class RemoteTaskFailure(VibespaceError):
    """A hypervisor task stopped with an exit status other than "OK"."""

    def __init__(self, upid: str, exitstatus: Optional[str]):
        self.upid = upid
        self.exitstatus = exitstatus
        super().__init__(f"Task {upid} failed: {exitstatus or 'unknown error'}")


class PollTimeoutError(VibespaceError, TimeoutError):
    """A poller exceeded its wall-clock budget."""

    def __init__(self, resource: Union[str, int], elapsed: float, detail: str = ""):
        self.resource = resource
        self.elapsed = elapsed
        message = f"Timed out after {elapsed:.0f}s waiting for {resource}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class TransientFetchError(PollTimeoutError):
    """Status fetches kept failing until the poll budget ran out."""

    def __init__(self, resource: Union[str, int], elapsed: float, cause: Exception):
        self.cause = cause
        super().__init__(resource, elapsed, f"last status fetch failed: {cause}")


class ContainerStateError(VibespaceError):
    """A container reported a state that contradicts the one being waited for."""
    pass


class StaleRecordError(VibespaceError):
    """A local record points at a hypervisor container that no longer exists."""

    def __init__(self, vmid: int):
        self.vmid = vmid
        super().__init__(f"Container {vmid} no longer exists on the hypervisor")


class ProvisioningError(VibespaceError):
    """A script executed over SSH exited non-zero."""

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        self.exit_code = exit_code
        self.stderr = stderr
        if stderr:
            message = f"{message}: {stderr.strip()[-2000:]}"
        super().__init__(message)


class RangeExhaustedError(VibespaceError):
    """No free VMID between the floor and ceiling."""

    def __init__(self, floor: int, ceiling: int):
        self.floor = floor
        self.ceiling = ceiling
        super().__init__(f"No free VMID available in range {floor}-{ceiling}")


class SSHConnectionError(VibespaceError):
    """Could not establish an SSH session."""
    pass


class TemplateValidationError(VibespaceError):
    """A template record operation violates a structural rule."""
    pass


class TemplateNotFoundError(VibespaceError):
    pass


class LifecycleError(VibespaceError):
    """Failure surfaced from the template lifecycle with enough context to render it."""

    def __init__(self, resource_id: Union[str, int], step: str, message: str, cause: Optional[Exception] = None):
        self.resource_id = resource_id
        self.step = step
        self.cause = cause
        super().__init__(f"[{step}] {resource_id}: {message}")
