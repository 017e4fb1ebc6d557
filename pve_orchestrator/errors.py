"""
Error taxonomy for the orchestrator.

Every error carries a stable ``kind`` string which is what run reports and
the JSON output show to the operator.
"""

from typing import Any, Dict, List, Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator failures"""

    kind = "orchestrator_error"
    fatal = True


class ValidationError(OrchestratorError):
    """Bad topology or configuration, raised before any platform mutation"""

    kind = "validation_error"


class PreconditionError(OrchestratorError):
    """A phase was requested without the inputs it needs"""

    kind = "precondition_error"


class InvalidTransition(OrchestratorError):
    """Illegal resource lifecycle transition"""

    kind = "invalid_transition"


class PlatformError(OrchestratorError):
    """Non-retryable error reported by the virtualization platform"""

    kind = "platform_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PlatformAuthError(PlatformError):
    kind = "platform_auth_error"


class PlatformUnavailable(PlatformError):
    """Transient platform failure that survived the retry budget"""

    kind = "platform_unavailable"
    fatal = False


class ResourceConflict(PlatformError):
    """Another resource already owns the requested identity"""

    kind = "resource_conflict"


class QuotaExceeded(PlatformError):
    kind = "quota_exceeded"


class ReadinessTimeout(OrchestratorError):
    """A resource did not report a usable address before the deadline"""

    kind = "readiness_timeout"

    def __init__(self, spec_id: int, name: str, timeout: float, polls: int):
        super().__init__(
            f"Resource {spec_id} ({name}) not ready after {timeout:.0f}s ({polls} polls)"
        )
        self.spec_id = spec_id
        self.name = name
        self.timeout = timeout
        self.polls = polls


class UnresolvedRoleError(OrchestratorError):
    """A discovered address has no matching resource spec"""

    kind = "unresolved_role"

    def __init__(self, spec_id: int):
        super().__init__(f"Discovered address for unknown resource id {spec_id}")
        self.spec_id = spec_id


class OrchestrationCancelled(OrchestratorError):
    kind = "cancelled"


class ConcurrentRunError(OrchestratorError):
    """Another orchestrator run holds the topology lock"""

    kind = "concurrent_run"


class SecretError(OrchestratorError):
    kind = "secret_error"


class StateError(OrchestratorError):
    """Local state directory or generated file could not be read or written"""

    kind = "state_error"


class HealthCheckError(OrchestratorError):
    """Cluster nodes missing or not Ready after configuration"""

    kind = "health_check_failed"


class ApplyError(OrchestratorError):
    """The configuration-apply collaborator failed for a role group"""

    kind = "apply_error"

    def __init__(self, role: str, returncode: int, detail: str = ""):
        message = f"Apply step for role '{role}' exited with {returncode}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.role = role
        self.returncode = returncode


class PhaseFailed(OrchestratorError):
    """Aggregate of every per-resource failure in one phase"""

    kind = "phase_failed"

    def __init__(self, phase: str, failures: Dict[Any, BaseException]):
        # keys are spec ids for infra/bootstrap and role names for configure
        self.phase = phase
        self.failures = failures
        lines: List[str] = [
            f"{key}: {error_kind(exc)}: {exc}"
            for key, exc in sorted(failures.items(), key=lambda item: item[0])
        ]
        super().__init__(
            f"Phase {phase} failed for {len(failures)} item(s): " + "; ".join(lines)
        )


def error_kind(exc: BaseException) -> str:
    """Stable kind string for any exception, including foreign ones"""
    return getattr(exc, "kind", type(exc).__name__)
