import logging
from typing import Dict, Any, Optional

from reconciler.aws.autoscaling import AutoScalingOrchestrator
from reconciler.aws.wrapper import AWSWrapper
from reconciler.capacity import required_instances_from_reservation
from reconciler.config import load_config, validate_config, Config
from reconciler.evaluator import evaluate
from reconciler.fleet import FleetManager
from reconciler.metrics.cloudwatch import get_cluster_utilization, get_capacity_provider_reservation
from reconciler.models import ScalingDecision, clamp_desired
from reconciler.scaler import apply_decision, apply_capacity_target
from reconciler.state.s3_state import load_fleet_state, save_fleet_state


def build_fleet_manager(config: Config, orchestrator: AutoScalingOrchestrator, group: Dict[str, Any]) -> FleetManager:
    """Create a fleet manager for a freshly described Auto Scaling Group."""
    desired = clamp_desired(group['DesiredCapacity'], group['MinSize'], group['MaxSize'])
    fleet = config.fleet(desired_size=desired)._replace(min_size=group['MinSize'], max_size=group['MaxSize'])
    return FleetManager(fleet, orchestrator)


def scaling_bounds(config: Config, fleet_manager: FleetManager):
    """
    Bounds the actuator may move the fleet within: the configured bounds narrowed to the group's.

    Raises:
        ValueError: If the two ranges do not overlap
    """
    min_size = max(config.min_size, fleet_manager.fleet.min_size)
    max_size = min(config.max_size, fleet_manager.fleet.max_size)
    if min_size > max_size:
        raise ValueError(f"Configured bounds [{config.min_size}, {config.max_size}] do not overlap the bounds of "
                         f"{config.fleet_name} [{fleet_manager.fleet.min_size}, {fleet_manager.fleet.max_size}]")
    return min_size, max_size


def reconcile(config: Config, aws_wrapper: AWSWrapper, fleet_manager: Optional[FleetManager] = None) -> Dict[str, Any]:
    """
    Run one reconciliation cycle: observe, evaluate, actuate, then check fleet health.

    Args:
        config: Validated configuration
        aws_wrapper: AWS API wrapper instance
        fleet_manager: Fleet manager kept between cycles by a long-running loop; built
                       from the Auto Scaling Group when omitted

    Returns:
        dict: Cycle result with utilization, decision, sizes and fleet maintenance actions
    """
    logging.info(f"Starting reconciliation for fleet {config.fleet_name} in cluster {config.cluster_name}")

    orchestrator = AutoScalingOrchestrator(aws_wrapper, config.fleet_name)
    group = orchestrator.describe_fleet()
    if fleet_manager is None:
        fleet_manager = build_fleet_manager(config, orchestrator, group)

    state_loaded = True
    if not fleet_manager.restored:
        try:
            fleet_manager.restore(load_fleet_state(aws_wrapper, config.s3_state_bucket,
                                                   config.cluster_name, config.fleet_name))
        except Exception as e:
            logging.error(f"Could not read fleet state, skipping fleet maintenance this cycle: {e}")
            state_loaded = False

    instance_ids = [i['InstanceId'] for i in group.get('Instances', [])]
    try:
        launch_times = orchestrator.describe_launch_times(instance_ids)
    except Exception as e:
        logging.warning(f"Could not read instance launch times, using first-seen times: {e}")
        launch_times = {}
    fleet_manager.sync(group, launch_times)

    policy = config.scaling_policy()
    min_size, max_size = scaling_bounds(config, fleet_manager)
    current_size = fleet_manager.desired_size

    result = {
        'cluster': config.cluster_name,
        'fleet': config.fleet_name,
        'metric_kind': config.metric_kind,
        'current_size': current_size,
        'new_size': current_size,
        'skipped': False,
    }

    series = get_cluster_utilization(aws_wrapper, config.cluster_name, config.metric_kind,
                                     config.evaluation_periods, config.period_seconds)
    result['utilization'] = series

    if not series:
        logging.warning("No utilization data available, skipping evaluation until the next poll")
        result['skipped'] = True
        result['decision'] = ScalingDecision.NO_ACTION.value
    else:
        decision = evaluate(series, policy)
        actuation = apply_decision(aws_wrapper, fleet_manager, decision, current_size, policy, min_size, max_size,
                                   config.s3_state_bucket, config.cluster_name, config.fleet_name, config.dry_run)

        if decision is ScalingDecision.NO_ACTION and config.managed_scaling:
            reservation = get_capacity_provider_reservation(aws_wrapper, config.cluster_name,
                                                            config.capacity_provider_name, config.period_seconds)
            if reservation:
                required = required_instances_from_reservation(reservation['reservation'], current_size)
                actuation = apply_capacity_target(aws_wrapper, fleet_manager, config.capacity_binding(),
                                                  current_size, required, policy, min_size, max_size,
                                                  config.s3_state_bucket, config.cluster_name, config.fleet_name,
                                                  config.dry_run)
                result['reservation'] = reservation['reservation']
        result.update(actuation)

    if config.dry_run or not state_loaded:
        result['replaced'] = []
        result['rolling'] = {'terminated': [], 'launched': []}
    else:
        result['replaced'] = fleet_manager.check_health()
        result['rolling'] = fleet_manager.rolling_replace_step()
        try:
            save_fleet_state(aws_wrapper, config.s3_state_bucket, config.cluster_name, config.fleet_name,
                             fleet_manager.snapshot())
        except Exception as e:
            logging.error(f"Could not save fleet state: {e}")
            result['fleet_state_error'] = str(e)
    result['alerts'] = list(fleet_manager.alerts)

    logging.info(f"Reconciliation result: {result}")
    return result


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Lambda handler function running one reconciliation cycle for the configured fleet.

    Configuration can be provided via environment variables or in the event payload.

    Args:
        event: AWS Lambda event object, can contain configuration overrides
        context: AWS Lambda context object

    Returns:
        dict: Reconciliation result, or a statusCode/error pair on failure
    """
    config = load_config(event)

    try:
        validate_config(config)
    except ValueError as e:
        logging.error(f"Invalid configuration: {e}")
        return {"statusCode": 500, "error": str(e)}

    aws_wrapper = AWSWrapper(
        sso_profile_name=config.sso_profile,
        region_name=config.region
    )

    try:
        return reconcile(config, aws_wrapper)
    except Exception as e:
        logging.error(f"Error in reconciliation lambda: {e}", exc_info=True)
        return {"statusCode": 500, "error": str(e)}
