import os
from typing import Dict, Any, Optional, NamedTuple

from reconciler.capacity import CapacityBinding, validate_binding
from reconciler.models import (
    METRIC_KINDS,
    Fleet,
    HealthCheckPolicy,
    LaunchSpec,
    ScalingPolicy,
    validate_policy,
)

TRUE_VALUES = ('true', '1', 't', 'yes')


class Config(NamedTuple):
    """Configuration for the reconciler."""
    # Cluster and fleet
    cluster_name: str
    fleet_name: str
    capacity_provider_name: str
    min_size: int
    max_size: int

    # Threshold scaling
    metric_kind: str
    scale_up_threshold: float
    scale_down_threshold: float
    scaling_step_size: int
    evaluation_periods: int
    period_seconds: int

    # Cooldown configuration
    scale_out_cooldown: int
    scale_in_cooldown: int

    # Fleet health
    health_check_grace_period: int
    min_healthy_percentage: int
    max_replacement_attempts: int

    # Managed scaling
    managed_scaling: bool
    target_capacity: int
    min_scaling_step: int
    max_scaling_step: int

    # Control loop
    poll_interval: int
    dry_run: bool

    # AWS configuration
    region: str
    sso_profile: Optional[str]
    s3_state_bucket: Optional[str]

    def scaling_policy(self) -> ScalingPolicy:
        return ScalingPolicy(
            metric_kind=self.metric_kind,
            high_threshold=self.scale_up_threshold,
            low_threshold=self.scale_down_threshold,
            step_size=self.scaling_step_size,
            cooldown_seconds=self.scale_out_cooldown,
            scale_in_cooldown_seconds=self.scale_in_cooldown,
            evaluation_periods=self.evaluation_periods,
            period_seconds=self.period_seconds,
        )

    def health_check_policy(self) -> HealthCheckPolicy:
        return HealthCheckPolicy(
            grace_period_seconds=self.health_check_grace_period,
            min_healthy_percentage=self.min_healthy_percentage,
            max_replacement_attempts=self.max_replacement_attempts,
        )

    def capacity_binding(self) -> CapacityBinding:
        return CapacityBinding(
            fleet_reference=self.fleet_name,
            target_utilization_percent=self.target_capacity,
            step_bounds=(self.min_scaling_step, self.max_scaling_step),
        )

    def fleet(self, desired_size: int = None, launch_spec: LaunchSpec = None) -> Fleet:
        """Fleet with the configured bounds; desired defaults to min_size."""
        return Fleet(
            min_size=self.min_size,
            max_size=self.max_size,
            desired_size=self.min_size if desired_size is None else desired_size,
            launch_spec=launch_spec or LaunchSpec(machine_image='', instance_type=''),
            health_check_policy=self.health_check_policy(),
        )


def _get(config_from_event, key, env_name, default=None):
    value = config_from_event.get(key)
    if value is None or value == '':
        value = os.environ.get(env_name, default)
    return value


def _get_bool(config_from_event, key, env_name, default):
    value = _get(config_from_event, key, env_name, default)
    if isinstance(value, bool):
        return value
    return str(value).lower() in TRUE_VALUES


def load_config(event: Dict[str, Any] = None) -> Config:
    """
    Load configuration from environment variables and optional event payload.

    Event payload values override environment variables when present.

    Args:
        event: Optional Lambda event that may contain configuration overrides

    Returns:
        Config: Configuration object with all reconciler settings
    """
    event = event or {}
    config_from_event = event.get('config', {})

    cluster_name = _get(config_from_event, 'cluster_name', 'ECS_CLUSTER')
    fleet_name = _get(config_from_event, 'fleet_name', 'ASG_NAME')
    capacity_provider_name = _get(config_from_event, 'capacity_provider_name', 'CAPACITY_PROVIDER_NAME') or \
        f"{cluster_name}-capacity-provider"
    min_size = int(_get(config_from_event, 'min_size', 'MIN_SIZE', '1'))
    max_size = int(_get(config_from_event, 'max_size', 'MAX_SIZE', '10'))

    metric_kind = str(_get(config_from_event, 'metric_kind', 'METRIC_KIND', 'cpu')).lower()
    scale_up_threshold = float(_get(config_from_event, 'scale_up_threshold', 'SCALE_UP_THRESHOLD', '75'))
    # Both thresholds are independent; half of the scale-up threshold is only the default
    scale_down_raw = _get(config_from_event, 'scale_down_threshold', 'SCALE_DOWN_THRESHOLD')
    scale_down_threshold = float(scale_down_raw) if scale_down_raw is not None else scale_up_threshold / 2
    scaling_step_size = int(_get(config_from_event, 'scaling_step_size', 'SCALING_STEP_SIZE', '1'))
    evaluation_periods = int(_get(config_from_event, 'evaluation_periods', 'EVALUATION_PERIODS', '2'))
    period_seconds = int(_get(config_from_event, 'period_seconds', 'PERIOD_SECONDS', '60'))

    scale_out_cooldown = int(_get(config_from_event, 'scale_out_cooldown', 'SCALE_OUT_COOLDOWN', '300'))
    scale_in_cooldown = int(_get(config_from_event, 'scale_in_cooldown', 'SCALE_IN_COOLDOWN', '300'))

    health_check_grace_period = int(_get(config_from_event, 'health_check_grace_period',
                                         'HEALTH_CHECK_GRACE_PERIOD', '300'))
    min_healthy_percentage = int(_get(config_from_event, 'min_healthy_percentage',
                                      'MIN_HEALTHY_PERCENTAGE', '90'))
    max_replacement_attempts = int(_get(config_from_event, 'max_replacement_attempts',
                                        'MAX_REPLACEMENT_ATTEMPTS', '3'))

    managed_scaling = _get_bool(config_from_event, 'managed_scaling', 'MANAGED_SCALING', 'true')
    target_capacity = int(_get(config_from_event, 'target_capacity', 'TARGET_CAPACITY', '100'))
    min_scaling_step = int(_get(config_from_event, 'min_scaling_step', 'MIN_SCALING_STEP', '1'))
    max_scaling_step = int(_get(config_from_event, 'max_scaling_step', 'MAX_SCALING_STEP', '10'))

    poll_interval = int(_get(config_from_event, 'poll_interval', 'POLL_INTERVAL', '60'))
    dry_run = _get_bool(config_from_event, 'dry_run', 'DRY_RUN', 'false')

    region = _get(config_from_event, 'region', 'AWS_REGION', 'us-east-1')
    sso_profile = _get(config_from_event, 'sso_profile', 'SSO_PROFILE')
    s3_state_bucket = _get(config_from_event, 's3_state_bucket', 'S3_STATE_BUCKET')

    return Config(
        cluster_name=cluster_name,
        fleet_name=fleet_name,
        capacity_provider_name=capacity_provider_name,
        min_size=min_size,
        max_size=max_size,
        metric_kind=metric_kind,
        scale_up_threshold=scale_up_threshold,
        scale_down_threshold=scale_down_threshold,
        scaling_step_size=scaling_step_size,
        evaluation_periods=evaluation_periods,
        period_seconds=period_seconds,
        scale_out_cooldown=scale_out_cooldown,
        scale_in_cooldown=scale_in_cooldown,
        health_check_grace_period=health_check_grace_period,
        min_healthy_percentage=min_healthy_percentage,
        max_replacement_attempts=max_replacement_attempts,
        managed_scaling=managed_scaling,
        target_capacity=target_capacity,
        min_scaling_step=min_scaling_step,
        max_scaling_step=max_scaling_step,
        poll_interval=poll_interval,
        dry_run=dry_run,
        region=region,
        sso_profile=sso_profile,
        s3_state_bucket=s3_state_bucket
    )


def validate_config(config: Config) -> Config:
    """
    Check that a configuration can drive a reconciliation cycle.

    Raises:
        ValueError: Describing the first problem found
    """
    if not config.cluster_name or not config.fleet_name:
        raise ValueError("ECS_CLUSTER and ASG_NAME must be configured")
    if not config.s3_state_bucket:
        raise ValueError("S3_STATE_BUCKET must be configured to track cooldowns")
    if config.min_size < 0 or config.max_size < 0:
        raise ValueError(f"Fleet sizes cannot be negative: min={config.min_size}, max={config.max_size}")
    if config.min_size > config.max_size:
        raise ValueError(f"MIN_SIZE ({config.min_size}) exceeds MAX_SIZE ({config.max_size})")
    if config.metric_kind not in METRIC_KINDS:
        raise ValueError(f"Unsupported metric kind: {config.metric_kind}. Supported kinds: {', '.join(METRIC_KINDS)}")
    if not 0 <= config.min_healthy_percentage <= 100:
        raise ValueError(f"MIN_HEALTHY_PERCENTAGE must be in [0, 100], got {config.min_healthy_percentage}")
    if config.poll_interval < 1:
        raise ValueError(f"POLL_INTERVAL must be positive, got {config.poll_interval}")
    validate_policy(config.scaling_policy())
    validate_binding(config.capacity_binding())
    return config
