import io
import json
import os
import unittest
from unittest import mock

from reconciler.__main__ import main
from reconciler.config import load_config
from reconciler.plan import Resource, ResourcePlan, build_resource_graph

BASE_CONFIG = {
    'cluster_name': 'test-cluster',
    'fleet_name': 'test-fleet',
    's3_state_bucket': 'test-bucket',
}


@mock.patch.dict(os.environ, {}, clear=True)
class TestResourcePlan(unittest.TestCase):
    """Tests for the resource dependency graph."""

    def test_creation_order_respects_dependencies(self):
        plan = build_resource_graph(load_config({'config': BASE_CONFIG}))
        order = plan.creation_order()

        for resource in plan.resources.values():
            for dependency in resource.depends_on:
                self.assertLess(order.index(dependency), order.index(resource.name),
                                f"{dependency} must be created before {resource.name}")
        self.assertEqual(plan.deletion_order(), list(reversed(order)))

    def test_managed_scaling_adds_capacity_provider(self):
        plan = build_resource_graph(load_config({'config': BASE_CONFIG}))

        provider = plan.resources['capacity_provider']
        self.assertEqual(provider.properties['name'], 'test-cluster-capacity-provider')
        self.assertEqual(provider.properties['managed_scaling']['target_capacity'], 100)
        self.assertIn('cluster_capacity_providers', plan.dependents('capacity_provider'))

    def test_without_managed_scaling(self):
        plan = build_resource_graph(load_config({'config': dict(BASE_CONFIG, managed_scaling=False)}))

        self.assertNotIn('capacity_provider', plan.resources)
        self.assertNotIn('cluster_capacity_providers', plan.resources)

    def test_alarms_follow_scaling_policy(self):
        config = load_config({'config': dict(BASE_CONFIG, metric_kind='memory', scale_up_threshold=80,
                                             scale_down_threshold=25)})
        plan = build_resource_graph(config)

        high = plan.resources['high_utilization_alarm'].properties
        low = plan.resources['low_utilization_alarm'].properties
        self.assertEqual(high['metric_name'], 'MemoryReservation')
        self.assertEqual((high['threshold'], high['comparison_operator']), (80.0, 'GreaterThanThreshold'))
        self.assertEqual((low['threshold'], low['comparison_operator']), (25.0, 'LessThanThreshold'))
        self.assertEqual((high['period'], high['evaluation_periods']), (60, 2))

    def test_cycle_rejected(self):
        with self.assertRaises(ValueError):
            ResourcePlan([Resource('a', 'x', ('b',)), Resource('b', 'x', ('a',))])

    def test_unknown_dependency_rejected(self):
        with self.assertRaises(ValueError):
            ResourcePlan([Resource('a', 'x', ('missing',))])

    def test_duplicate_rejected(self):
        with self.assertRaises(ValueError):
            ResourcePlan([Resource('a', 'x'), Resource('a', 'y')])

    def test_resources_without_properties_do_not_share_them(self):
        self.assertIsNone(Resource('a', 'x').properties)

        plan = ResourcePlan([Resource('a', 'x'), Resource('b', 'x', ('a',))])
        plan.resources['a'].properties['name'] = 'only-a'

        self.assertEqual(plan.resources['b'].properties, {})

    @mock.patch('sys.stdout', new_callable=io.StringIO)
    def test_plan_command(self, mock_stdout):
        with mock.patch.dict(os.environ, {'ECS_CLUSTER': 'test-cluster', 'ASG_NAME': 'test-fleet',
                                          'S3_STATE_BUCKET': 'test-bucket'}):
            self.assertEqual(main(['plan']), 0)

        output = json.loads(mock_stdout.getvalue())
        self.assertEqual(output['delete'], list(reversed(output['create'])))
        self.assertEqual(output['resources']['auto_scaling_group']['name'], 'test-fleet')

    def test_invalid_configuration_exits_nonzero(self):
        self.assertEqual(main(['plan']), 1)


if __name__ == '__main__':
    unittest.main()
