class ReconcilerError(Exception):
    """Base class for errors raised by the reconciler."""


class ResizeRequestError(ReconcilerError):
    """The orchestrator rejected or failed a fleet resize request."""

    def __init__(self, fleet_name, target, cause=None):
        self.fleet_name = fleet_name
        self.target = target
        self.cause = cause
        super().__init__(f"Failed to resize fleet {fleet_name} to {target}: {cause}")


class ReplacementError(ReconcilerError):
    """An instance replacement could not be requested."""

    def __init__(self, instance_id, cause=None):
        self.instance_id = instance_id
        self.cause = cause
        super().__init__(f"Failed to replace instance {instance_id}: {cause}")
