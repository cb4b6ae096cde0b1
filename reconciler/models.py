import enum
from typing import NamedTuple, Optional, Tuple


METRIC_KINDS = ('cpu', 'memory')


class ScalingDecision(enum.Enum):
    """Outcome of a threshold evaluation."""
    SCALE_UP = 'ScaleUp'
    SCALE_DOWN = 'ScaleDown'
    NO_ACTION = 'NoAction'

    @property
    def direction(self) -> Optional[str]:
        """'up', 'down' or None, matching the keys used for cooldown state."""
        if self is ScalingDecision.SCALE_UP:
            return 'up'
        if self is ScalingDecision.SCALE_DOWN:
            return 'down'
        return None


class LaunchSpec(NamedTuple):
    """Immutable description of how fleet instances are launched."""
    machine_image: str
    instance_type: str
    storage_spec: Tuple[Tuple[str, int], ...] = ()
    bootstrap_script: str = ''
    network_attachment: Tuple[str, ...] = ()
    version: int = 1

    def next_version(self, **changes) -> 'LaunchSpec':
        """Return a new spec superseding this one."""
        return self._replace(version=self.version + 1, **changes)


class HealthCheckPolicy(NamedTuple):
    grace_period_seconds: int = 300
    min_healthy_percentage: int = 90
    max_replacement_attempts: int = 3


class ScalingPolicy(NamedTuple):
    """
    Threshold-driven step scaling policy.

    cooldown_seconds applies to scale-out, scale_in_cooldown_seconds to scale-in.
    """
    metric_kind: str
    high_threshold: float
    low_threshold: float
    step_size: int = 1
    cooldown_seconds: int = 300
    scale_in_cooldown_seconds: int = 300
    evaluation_periods: int = 2
    period_seconds: int = 60


class Fleet(NamedTuple):
    """Size bounds and launch settings of the instance fleet. min_size <= desired_size <= max_size."""
    min_size: int
    max_size: int
    desired_size: int
    launch_spec: LaunchSpec
    health_check_policy: HealthCheckPolicy = HealthCheckPolicy()

    def with_desired(self, desired_size: int) -> 'Fleet':
        return self._replace(desired_size=clamp_desired(desired_size, self.min_size, self.max_size))


class InstanceState(enum.Enum):
    PENDING = 'pending'
    HEALTHY = 'healthy'
    UNHEALTHY = 'unhealthy'
    TERMINATED = 'terminated'


class Instance:
    """A single fleet member as tracked by the fleet manager."""

    def __init__(self, instance_id: str, launch_spec_version: int, launched_at: float,
                 state: InstanceState = InstanceState.PENDING, replaces: Optional[str] = None,
                 replacement_attempts: int = 0):
        self.instance_id = instance_id
        self.launch_spec_version = launch_spec_version
        self.launched_at = launched_at
        self.state = state
        self.unhealthy_since = None
        # Id of the instance this one was launched to replace
        self.replaces = replaces
        # Consecutive failed replacements in this slot
        self.replacement_attempts = replacement_attempts

    @property
    def active(self) -> bool:
        return self.state is not InstanceState.TERMINATED

    def __repr__(self):
        return (f"Instance({self.instance_id!r}, v{self.launch_spec_version}, "
                f"{self.state.value}, launched_at={self.launched_at})")


def clamp_desired(desired_size: int, min_size: int, max_size: int) -> int:
    """Clamp a desired size into [min_size, max_size]."""
    return max(min_size, min(max_size, desired_size))


def validate_policy(policy: ScalingPolicy) -> ScalingPolicy:
    """
    Check the invariants of a scaling policy.

    Raises:
        ValueError: If the metric kind is unknown, low_threshold >= high_threshold,
                    or step/cooldown/window values are not positive
    """
    if policy.metric_kind not in METRIC_KINDS:
        raise ValueError(f"Unsupported metric kind: {policy.metric_kind}. "
                         f"Supported kinds: {', '.join(METRIC_KINDS)}")
    if policy.low_threshold >= policy.high_threshold:
        raise ValueError(f"Scale-down threshold ({policy.low_threshold}) must be lower than "
                         f"scale-up threshold ({policy.high_threshold})")
    if policy.step_size < 1:
        raise ValueError(f"Scaling step size must be at least 1, got {policy.step_size}")
    if policy.evaluation_periods < 1 or policy.period_seconds < 1:
        raise ValueError("Evaluation periods and period length must be positive")
    if policy.cooldown_seconds < 0 or policy.scale_in_cooldown_seconds < 0:
        raise ValueError("Cooldowns cannot be negative")
    return policy


def validate_fleet(fleet: Fleet) -> Fleet:
    """
    Check the size invariant of a fleet.

    Raises:
        ValueError: If sizes are negative or min_size <= desired_size <= max_size does not hold
    """
    if fleet.min_size < 0:
        raise ValueError(f"Fleet min_size cannot be negative, got {fleet.min_size}")
    if fleet.min_size > fleet.max_size:
        raise ValueError(f"Fleet min_size ({fleet.min_size}) exceeds max_size ({fleet.max_size})")
    if not fleet.min_size <= fleet.desired_size <= fleet.max_size:
        raise ValueError(f"Fleet desired_size ({fleet.desired_size}) is outside "
                         f"[{fleet.min_size}, {fleet.max_size}]")
    return fleet
