import logging
from typing import Sequence

from reconciler.models import ScalingDecision, ScalingPolicy


def evaluate(series: Sequence[float], policy: ScalingPolicy) -> ScalingDecision:
    """
    Compare a utilization series against the policy thresholds.

    Only the most recent `policy.evaluation_periods` values are considered, and a
    threshold only triggers when it is breached in every one of them.

    Args:
        series: Per-period average utilization percentages, oldest first
        policy: Scaling policy holding the thresholds and window length

    Returns:
        ScalingDecision: ScaleUp, ScaleDown or NoAction
    """
    periods = policy.evaluation_periods
    if len(series) < periods:
        logging.info(f"Insufficient data for evaluation: {len(series)} of {periods} periods available")
        return ScalingDecision.NO_ACTION

    window = list(series)[-periods:]
    logging.info(f"Evaluating {policy.metric_kind} utilization window {window} against "
                 f"high={policy.high_threshold}, low={policy.low_threshold}")

    if all(value > policy.high_threshold for value in window):
        decision = ScalingDecision.SCALE_UP
    elif all(value < policy.low_threshold for value in window):
        decision = ScalingDecision.SCALE_DOWN
    else:
        decision = ScalingDecision.NO_ACTION

    logging.info(f"Threshold evaluation result: {decision.value}")
    return decision
