"""
Error taxonomy shared by every layer of the provisioner.

Each error carries enough context for the operator to know which phase and
resource failed and whether simply running the command again can make
progress.
"""

from __future__ import annotations


class TalosGCPError(Exception):
    """Base class. ``retryable`` tells the operator if a re-run may progress."""

    retryable = True
    label = "error"

    def __init__(
        self,
        message: str,
        *,
        phase: str | None = None,
        kind: str | None = None,
        name: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.kind = kind
        self.name = name

    def with_phase(self, phase: str) -> TalosGCPError:
        if self.phase is None:
            self.phase = phase
        return self

    @property
    def resource(self) -> str | None:
        if self.kind and self.name:
            return f"{self.kind}/{self.name}"
        return self.name or self.kind

    def describe(self) -> str:
        parts = [f"{self.label}: {self.message}"]
        if self.phase:
            parts.append(f"phase={self.phase}")
        if self.resource:
            parts.append(f"resource={self.resource}")
        parts.append("re-run may progress" if self.retryable else "re-run will not help")
        return " | ".join(parts)

    def __str__(self) -> str:
        if self.resource:
            return f"{self.resource}: {self.message}"
        return self.message


class ConfigurationError(TalosGCPError):
    """Invalid or inconsistent configuration. Fatal, never retried."""

    retryable = False
    label = "configuration error"


class ProviderError(TalosGCPError):
    """The cloud API rejected a call (permissions, quota, invalid request)."""

    label = "provider error"


class TransientProviderError(ProviderError):
    """Rate limit, temporary lock or propagation delay. Retried with backoff."""

    label = "transient provider error"


class ConflictError(ProviderError):
    """A resource with the same name already exists."""

    label = "conflict"


class PhaseTimeoutError(TalosGCPError, TimeoutError):
    """A phase did not reach the expected state within its timeout."""

    label = "timeout"


class SafetyViolation(TalosGCPError):
    """An action would touch a resource that lacks this cluster's label."""

    retryable = False
    label = "safety violation"
