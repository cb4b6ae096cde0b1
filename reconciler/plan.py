"""
Explicit dependency graph of the AWS resources behind an EC2-backed ECS cluster.

Only plans: produces the order in which resources would be created or deleted,
with the settings derived from the reconciler configuration. Nothing here calls AWS.
"""
import logging
from graphlib import CycleError, TopologicalSorter
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

from reconciler.config import Config
from reconciler.metrics.cloudwatch import ECS_NAMESPACE, UTILIZATION_METRICS


class Resource(NamedTuple):
    name: str
    kind: str
    depends_on: Tuple[str, ...] = ()
    properties: Optional[Dict[str, Any]] = None


class ResourcePlan:
    """
    A set of resources and the edges between them.

    Raises:
        ValueError: On duplicate names, dependencies on unknown resources, or cycles
    """

    def __init__(self, resources: Iterable[Resource]):
        self.resources: Dict[str, Resource] = {}
        for resource in resources:
            if resource.name in self.resources:
                raise ValueError(f"Duplicate resource: {resource.name}")
            if resource.properties is None:
                resource = resource._replace(properties={})
            self.resources[resource.name] = resource

        for resource in self.resources.values():
            missing = [dep for dep in resource.depends_on if dep not in self.resources]
            if missing:
                raise ValueError(f"Resource {resource.name} depends on unknown resource(s): {', '.join(missing)}")

        self._order = self._resolve()

    def _resolve(self) -> List[str]:
        sorter = TopologicalSorter({name: r.depends_on for name, r in self.resources.items()})
        try:
            return list(sorter.static_order())
        except CycleError as e:
            raise ValueError(f"Dependency cycle between resources: {' -> '.join(e.args[1])}") from e

    def creation_order(self) -> List[str]:
        return list(self._order)

    def deletion_order(self) -> List[str]:
        return list(reversed(self._order))

    def dependents(self, name: str) -> List[str]:
        """Resources that directly depend on `name`."""
        return [r.name for r in self.resources.values() if name in r.depends_on]


def build_resource_graph(config: Config) -> ResourcePlan:
    """Build the plan of the cluster, fleet, capacity provider and scaling alarms for a configuration."""
    policy = config.scaling_policy()
    metric_name = UTILIZATION_METRICS[policy.metric_kind]
    cluster = config.cluster_name
    fleet = config.fleet_name

    alarm_common = {
        'namespace': ECS_NAMESPACE,
        'metric_name': metric_name,
        'statistic': 'Average',
        'period': policy.period_seconds,
        'evaluation_periods': policy.evaluation_periods,
        'dimensions': {'ClusterName': cluster},
    }

    resources = [
        Resource('instance_role', 'aws_iam_role',
                 properties={'name': f"{cluster}-instance-role",
                             'managed_policies': ['AmazonEC2ContainerServiceforEC2Role']}),
        Resource('instance_profile', 'aws_iam_instance_profile', ('instance_role',),
                 {'name': f"{cluster}-instance-profile"}),
        Resource('security_group', 'aws_security_group',
                 properties={'name': f"{cluster}-instances"}),
        Resource('ecs_cluster', 'aws_ecs_cluster', properties={'name': cluster}),
        Resource('launch_template', 'aws_launch_template',
                 ('instance_profile', 'security_group', 'ecs_cluster'),
                 {'name_prefix': f"{cluster}-", 'user_data': f"echo ECS_CLUSTER={cluster} >> /etc/ecs/ecs.config"}),
        Resource('auto_scaling_group', 'aws_autoscaling_group', ('launch_template',),
                 {'name': fleet,
                  'min_size': config.min_size,
                  'max_size': config.max_size,
                  'desired_capacity': config.min_size,
                  'health_check_grace_period': config.health_check_grace_period,
                  'termination_policies': ['OldestLaunchTemplate', 'OldestInstance'],
                  'instance_refresh': {'min_healthy_percentage': config.min_healthy_percentage}}),
        Resource('scale_up_policy', 'aws_autoscaling_policy', ('auto_scaling_group',),
                 {'adjustment_type': 'ChangeInCapacity', 'scaling_adjustment': policy.step_size,
                  'cooldown': policy.cooldown_seconds}),
        Resource('scale_down_policy', 'aws_autoscaling_policy', ('auto_scaling_group',),
                 {'adjustment_type': 'ChangeInCapacity', 'scaling_adjustment': -policy.step_size,
                  'cooldown': policy.scale_in_cooldown_seconds}),
        Resource('high_utilization_alarm', 'aws_cloudwatch_metric_alarm', ('ecs_cluster', 'scale_up_policy'),
                 dict(alarm_common, comparison_operator='GreaterThanThreshold', threshold=policy.high_threshold)),
        Resource('low_utilization_alarm', 'aws_cloudwatch_metric_alarm', ('ecs_cluster', 'scale_down_policy'),
                 dict(alarm_common, comparison_operator='LessThanThreshold', threshold=policy.low_threshold)),
    ]

    if config.managed_scaling:
        min_step, max_step = config.capacity_binding().step_bounds
        resources.extend([
            Resource('capacity_provider', 'aws_ecs_capacity_provider', ('auto_scaling_group',),
                     {'name': config.capacity_provider_name,
                      'managed_scaling': {'status': 'ENABLED',
                                          'target_capacity': config.target_capacity,
                                          'minimum_scaling_step_size': min_step,
                                          'maximum_scaling_step_size': max_step}}),
            Resource('cluster_capacity_providers', 'aws_ecs_cluster_capacity_providers',
                     ('ecs_cluster', 'capacity_provider'),
                     {'capacity_providers': [config.capacity_provider_name]}),
        ])

    plan = ResourcePlan(resources)
    logging.debug(f"Resource creation order: {plan.creation_order()}")
    return plan
