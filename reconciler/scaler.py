import logging
import time
from datetime import datetime
from typing import Any, Dict

from reconciler.exceptions import ResizeRequestError
from reconciler.models import ScalingDecision, ScalingPolicy, clamp_desired
from reconciler.state.s3_state import get_last_scaling_time, set_last_scaling_time


def calculate_new_desired_size(current_size, decision, step_size, min_size, max_size):
    """Calculate the new desired fleet size for a scaling decision, clamped to the fleet bounds."""
    if decision is ScalingDecision.SCALE_UP:
        target = current_size + step_size
    elif decision is ScalingDecision.SCALE_DOWN:
        target = current_size - step_size
    else:
        target = current_size

    new_size = clamp_desired(target, min_size, max_size)
    if new_size != target:
        logging.info(f"{decision.value} target {target} clamped to fleet bounds [{min_size}, {max_size}]: {new_size}")
    logging.info(f"Calculated desired size for {decision.value}: {current_size} -> {new_size}")
    return new_size


def can_scale(
        aws_wrapper,
        direction,
        s3_state_bucket,
        cluster_name,
        fleet_name,
        scale_out_cooldown,
        scale_in_cooldown,
        now=None
):
    """
    Check if we can scale based on the cooldown of the same direction.

    Args:
        aws_wrapper: AWS wrapper instance
        direction: 'up' or 'down' scaling action
        s3_state_bucket: S3 bucket for state storage
        cluster_name: ECS cluster name
        fleet_name: Auto Scaling Group name
        scale_out_cooldown: Cooldown period for scaling out
        scale_in_cooldown: Cooldown period for scaling in
        now: Optional current epoch time, defaults to time.time()

    Returns:
        bool: Whether scaling action is allowed
    """
    try:
        last_time, count = get_last_scaling_time(aws_wrapper, direction, s3_state_bucket, cluster_name, fleet_name)

        cooldown = scale_out_cooldown if direction == 'up' else scale_in_cooldown
        now = time.time() if now is None else now
        elapsed_time = now - last_time
        time_remaining = max(0, cooldown - elapsed_time)

        last_time_readable = datetime.fromtimestamp(last_time).strftime('%Y-%m-%d %H:%M:%S')
        current_time_readable = datetime.fromtimestamp(now).strftime('%Y-%m-%d %H:%M:%S')

        can_perform_scaling = elapsed_time >= cooldown

        if can_perform_scaling:
            logging.info(f"Cooldown period passed for {direction} scaling. Last action: {last_time_readable}, "
                         f"Now: {current_time_readable}, Elapsed: {elapsed_time:.2f}s, Actions so far: {count}")
        else:
            logging.info(f"In cooldown period for {direction} scaling. Last action: {last_time_readable}, "
                         f"Now: {current_time_readable}, Remaining: {time_remaining:.2f}s")

        return can_perform_scaling
    except Exception as e:
        # Fail closed in both directions, the next poll re-evaluates
        logging.error(f"Error in can_scale function: {e}", exc_info=True)
        return False


def resize_with_cooldown(
        aws_wrapper,
        fleet_manager,
        current_size: int,
        new_size: int,
        policy: ScalingPolicy,
        s3_state_bucket: str,
        cluster_name: str,
        fleet_name: str,
        dry_run: bool = False
) -> Dict[str, Any]:
    """
    Issue at most one fleet resize request through the fleet manager, honoring the
    cooldown of the resize direction.

    The action time is only recorded once the resize request has been accepted, so
    a failed request is retried on the next evaluated trigger. A failure to persist the
    action time is reported as state_error; the cooldown still holds in this process.

    Returns:
        dict: Actuation result with the previous and new desired size
    """
    result = {
        'current_size': current_size,
        'new_size': current_size,
        'applied': False,
    }

    if new_size == current_size:
        logging.info(f"Fleet {fleet_name} already at target size {current_size}")
        result['reason'] = 'at target'
        return result

    direction = 'up' if new_size > current_size else 'down'
    if not can_scale(aws_wrapper, direction, s3_state_bucket, cluster_name, fleet_name,
                     policy.cooldown_seconds, policy.scale_in_cooldown_seconds):
        logging.info(f"Scaling action needed (from {current_size} to {new_size}) but in cooldown period")
        result['reason'] = 'cooldown'
        return result

    if dry_run:
        logging.info(f"[DRY RUN] Would scale {direction} fleet {fleet_name} from {current_size} to {new_size}")
        result['new_size'] = new_size
        result['reason'] = 'dry run'
        return result

    try:
        logging.info(f"Scaling {direction} fleet {fleet_name} from {current_size} to {new_size} instances")
        fleet_manager.resize(new_size)
    except ResizeRequestError as e:
        logging.error(f"Resize request failed, will retry on next trigger: {e}")
        result['reason'] = 'resize failed'
        result['error'] = str(e)
        return result

    result['new_size'] = new_size
    result['applied'] = True
    result['reason'] = 'scaled'
    try:
        set_last_scaling_time(aws_wrapper, direction, s3_state_bucket, cluster_name, fleet_name)
    except Exception as e:
        logging.error(f"Fleet {fleet_name} resized but its {direction} cooldown was not persisted: {e}")
        result['state_error'] = str(e)
    return result


def apply_decision(
        aws_wrapper,
        fleet_manager,
        decision: ScalingDecision,
        current_size: int,
        policy: ScalingPolicy,
        min_size: int,
        max_size: int,
        s3_state_bucket: str,
        cluster_name: str,
        fleet_name: str,
        dry_run: bool = False
) -> Dict[str, Any]:
    """
    Apply a threshold decision as a single step of policy.step_size, clamped to [min_size, max_size].

    A decision that would push the fleet past a bound is a no-op, and so is one whose clamp
    would move the fleet against the decision (a fleet already outside the bounds).
    """
    if decision.direction is None:
        logging.info(f"No scaling action needed, maintaining {current_size} instances")
        result = {'current_size': current_size, 'new_size': current_size, 'applied': False, 'reason': 'no action'}
    else:
        new_size = calculate_new_desired_size(current_size, decision, policy.step_size, min_size, max_size)
        moves_with_decision = (new_size > current_size) == (decision is ScalingDecision.SCALE_UP)
        if new_size == current_size or not moves_with_decision:
            logging.info(f"{decision.value} requested but fleet {fleet_name} is already at or past its bound "
                         f"(size {current_size}, bounds [{min_size}, {max_size}])")
            result = {'current_size': current_size, 'new_size': current_size, 'applied': False, 'reason': 'at bound'}
        else:
            result = resize_with_cooldown(aws_wrapper, fleet_manager, current_size, new_size, policy,
                                          s3_state_bucket, cluster_name, fleet_name, dry_run)
    result['decision'] = decision.value
    return result


def apply_capacity_target(
        aws_wrapper,
        fleet_manager,
        binding,
        current_size: int,
        required_instances: int,
        policy: ScalingPolicy,
        min_size: int,
        max_size: int,
        s3_state_bucket: str,
        cluster_name: str,
        fleet_name: str,
        dry_run: bool = False
) -> Dict[str, Any]:
    """Move the fleet one bounded step toward the capacity binding's target utilization."""
    target = clamp_desired(binding.target_size(current_size, required_instances), min_size, max_size)
    result = resize_with_cooldown(aws_wrapper, fleet_manager, current_size, target, policy,
                                  s3_state_bucket, cluster_name, fleet_name, dry_run)
    result['decision'] = 'CapacityTarget'
    result['required_instances'] = required_instances
    return result
