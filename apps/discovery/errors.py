# apps/discovery/errors.py
from typing import Any, Optional


class DiscoveryError(Exception):
    """Base class for errors raised by the discovery core."""


class StorageError(DiscoveryError):
    """A store query or connection failed. Always propagated to the caller."""

    def __init__(self, operation: str, entity_id: Optional[Any] = None):
        self.operation = operation
        self.entity_id = entity_id
        target = f" ({entity_id})" if entity_id is not None else ""
        super().__init__(f"storage failure during {operation}{target}")


class ConflictError(DiscoveryError):
    def __init__(self, entity: str, key: Any):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} already exists: {key}")


class NotFoundError(DiscoveryError):
    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class NoVariantsError(DiscoveryError):
    def __init__(self, experiment_id: Any):
        self.experiment_id = experiment_id
        super().__init__(f"No variants defined for experiment {experiment_id}")


class InvalidTransitionError(DiscoveryError):
    def __init__(self, experiment_id: Any, current: str, target: str):
        self.experiment_id = experiment_id
        self.current = current
        self.target = target
        super().__init__(
            f"experiment {experiment_id} cannot move from {current} to {target}"
        )


class AssignmentLockTimeout(DiscoveryError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"timed out waiting for assignment lock {key}")
