"""Exception hierarchy shared by the orchestrator, storage and API layers."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for run orchestration failures."""


class RobotNotFoundError(OrchestratorError):
    def __init__(self, robot_id: str) -> None:
        super().__init__(f"Robot {robot_id} does not exist")
        self.robot_id = robot_id


class RunNotFoundError(OrchestratorError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} does not exist")
        self.run_id = run_id


class RunNotAuthorizedError(OrchestratorError):
    def __init__(self, robot_id: str, user_id: str) -> None:
        super().__init__(f"User {user_id} is not allowed to run robot {robot_id}")
        self.robot_id = robot_id
        self.user_id = user_id


class WorkerAcquisitionError(OrchestratorError):
    """A browser worker could not be allocated or never became ready."""


class WorkerUnavailableError(OrchestratorError):
    """The worker exists but has no usable page."""


class InvalidRunTransitionError(OrchestratorError):
    def __init__(self, run_id: str, current: str, target: str) -> None:
        super().__init__(f"Run {run_id} cannot move from {current} to {target}")
        self.run_id = run_id
        self.current = current
        self.target = target


class DeadlineExceededError(OrchestratorError, TimeoutError):
    def __init__(self, operation: str, timeout_s: float) -> None:
        super().__init__(f"{operation} timed out after {timeout_s:g}s")
        self.operation = operation
        self.timeout_s = timeout_s


class MaxRetriesExceededError(OrchestratorError):
    def __init__(self, run_id: str, retry_count: int, max_retries: int) -> None:
        super().__init__(f"Max retries exceeded ({retry_count}/{max_retries})")
        self.run_id = run_id
        self.retry_count = retry_count
        self.max_retries = max_retries


class DeliveryError(OrchestratorError):
    """A webhook or integration sink rejected a delivery."""


class IntegrationNotConfiguredError(OrchestratorError):
    """A sink was asked to deliver for a robot without its credentials."""
