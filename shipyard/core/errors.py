"""Error taxonomy for the deployment controller.

Per-target failures are contained by the scheduler: they fail the step they
occurred in and feed plan-level policy.  Only configuration and programming
errors propagate out of a rollout.
"""

from __future__ import annotations


class ShipyardError(RuntimeError):
    """Base class for all controller errors."""


class BuildError(ShipyardError):
    """The build of a revision failed.

    A failing build is a fact about the revision and its configuration,
    so it is surfaced and never retried.
    """


class TargetConnectionError(ShipyardError):
    """The target could not be reached or rejected authentication.

    Transient: the executor reconnects with backoff before escalating.
    """


class OperationError(ShipyardError):
    """A remote command exited non-zero.

    Parameters
    ----------
    message:
        Human-readable description.
    exit_code:
        Exit status of the failing command, if known.
    stderr:
        Captured standard error of the failing command.
    """

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class HealthTimeoutError(ShipyardError):
    """No successful readiness probe before the deadline."""


class ConflictError(ShipyardError):
    """Two plans contend for the same target.  Rejected, never queued."""


class InvalidTransitionError(ShipyardError):
    """A plan or step state transition is not permitted."""


class UnknownTargetError(ShipyardError):
    """A target name is not present in the registry."""


class LedgerIntegrityError(ShipyardError):
    """Raised when the ledger hash chain is broken."""
