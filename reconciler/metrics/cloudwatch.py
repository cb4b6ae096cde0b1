import logging
from datetime import timedelta
from typing import Dict, List

ECS_NAMESPACE = 'AWS/ECS'
MANAGED_SCALING_NAMESPACE = 'AWS/ECS/ManagedScaling'

UTILIZATION_METRICS = {
    'cpu': 'CPUReservation',
    'memory': 'MemoryReservation',
}


def get_metric(aws_wrapper, name, dims, window, namespace=ECS_NAMESPACE, period=60, statistic='Average') -> List[float]:
    """
    Get a metric series from CloudWatch.

    Args:
        aws_wrapper: AWS wrapper instance
        name: CloudWatch metric name
        dims: Dict of dimension name to value
        window: Length of the window in seconds
        namespace: CloudWatch namespace
        period: Period of each datapoint in seconds
        statistic: Statistic to read from each datapoint

    Returns:
        list: One value per period, oldest first. Empty if the metric could not be read.
    """
    try:
        cloudwatch_client = aws_wrapper.create_aws_client('cloudwatch')
        end_time = aws_wrapper.get_time_now()

        response = cloudwatch_client.get_metric_statistics(
            Namespace=namespace,
            MetricName=name,
            Dimensions=[{'Name': key, 'Value': value} for key, value in dims.items()],
            StartTime=end_time - timedelta(seconds=window),
            EndTime=end_time,
            Period=period,
            Statistics=[statistic]
        )

        datapoints = sorted(response.get('Datapoints', []), key=lambda dp: dp['Timestamp'])
        series = [float(dp[statistic]) for dp in datapoints]

        logging.info(f"{namespace} {name} {dims} over the last {window}s: {series}")
        return series
    except Exception as e:
        logging.error(f"Error getting metric {namespace}/{name}: {e}", exc_info=True)
        return []


def get_cluster_utilization(aws_wrapper, cluster_name, metric_kind, evaluation_periods=2, period=60) -> List[float]:
    """
    Get the cluster's CPU or memory reservation series over the evaluation window.

    Raises:
        ValueError: If the metric kind is not supported
    """
    if metric_kind not in UTILIZATION_METRICS:
        supported = ', '.join(UTILIZATION_METRICS.keys())
        raise ValueError(f"Unsupported metric kind: {metric_kind}. Supported kinds: {supported}")

    return get_metric(
        aws_wrapper,
        UTILIZATION_METRICS[metric_kind],
        {'ClusterName': cluster_name},
        evaluation_periods * period,
        period=period
    )


def get_capacity_provider_reservation(aws_wrapper, cluster_name, capacity_provider_name, period=60) -> Dict[str, float]:
    """
    Get the latest capacity provider reservation.

    Returns:
        dict: {'reservation': percent} or an empty dict when no datapoint is available
    """
    series = get_metric(
        aws_wrapper,
        'CapacityProviderReservation',
        {'ClusterName': cluster_name, 'CapacityProviderName': capacity_provider_name},
        # Managed scaling publishes once a minute; look back a few periods for the latest value
        3 * period,
        namespace=MANAGED_SCALING_NAMESPACE,
        period=period
    )
    if not series:
        return {}
    return {'reservation': series[-1]}
