import os
import unittest
from unittest import mock

from reconciler.config import load_config
from reconciler.exceptions import ResizeRequestError
from reconciler.main import lambda_handler, reconcile

BASE_CONFIG = {
    'cluster_name': 'test-cluster',
    'fleet_name': 'test-fleet',
    's3_state_bucket': 'test-bucket',
    'min_size': 1,
    'max_size': 5,
}


def make_group(desired=2, min_size=1, max_size=5):
    return {
        'AutoScalingGroupName': 'test-fleet',
        'MinSize': min_size,
        'MaxSize': max_size,
        'DesiredCapacity': desired,
        'Instances': [
            {'InstanceId': f'i-{n}', 'LifecycleState': 'InService', 'HealthStatus': 'Healthy',
             'LaunchTemplate': {'Version': '1'}}
            for n in range(desired)
        ],
    }


def make_wrapper(store=None):
    """AWS wrapper stand-in whose S3 objects live in a dict."""
    store = {} if store is None else store
    wrapper = mock.MagicMock()

    def get_file_content(bucket_name, file_key):
        if file_key not in store:
            raise Exception("An error occurred (NoSuchKey) when calling the GetObject operation")
        return store[file_key]

    def upload_bytes(bucket, file_path, content, metadata=None):
        store[file_path] = content

    wrapper.get_file_content_from_s3_bucket.side_effect = get_file_content
    wrapper.upload_bytes_to_s3.side_effect = upload_bytes
    return wrapper


@mock.patch.dict(os.environ, {}, clear=True)
@mock.patch('reconciler.scaler.set_last_scaling_time')
@mock.patch('reconciler.scaler.get_last_scaling_time', return_value=(0.0, 0))
@mock.patch('reconciler.main.get_capacity_provider_reservation')
@mock.patch('reconciler.main.get_cluster_utilization')
@mock.patch('reconciler.main.AutoScalingOrchestrator')
class TestReconcile(unittest.TestCase):
    """Tests for a full reconciliation cycle."""

    def _setup(self, mock_orchestrator_cls, group):
        orchestrator = mock_orchestrator_cls.return_value
        orchestrator.describe_fleet.return_value = group
        orchestrator.describe_launch_times.return_value = {}
        return orchestrator

    def test_scale_up(self, mock_orchestrator_cls, mock_utilization, mock_reservation, mock_get, mock_set):
        orchestrator = self._setup(mock_orchestrator_cls, make_group(desired=2))
        mock_utilization.return_value = [90.0, 92.0]

        result = reconcile(load_config({'config': BASE_CONFIG}), make_wrapper())

        self.assertEqual(result['decision'], 'ScaleUp')
        self.assertTrue(result['applied'])
        self.assertEqual(result['new_size'], 3)
        orchestrator.resize_fleet.assert_called_once_with(3)
        mock_reservation.assert_not_called()
        self.assertEqual(result['replaced'], [])

    def test_scale_down(self, mock_orchestrator_cls, mock_utilization, mock_reservation, mock_get, mock_set):
        orchestrator = self._setup(mock_orchestrator_cls, make_group(desired=3))
        mock_utilization.return_value = [30.0, 32.0]

        result = reconcile(load_config({'config': BASE_CONFIG}), make_wrapper())

        self.assertEqual(result['decision'], 'ScaleDown')
        orchestrator.resize_fleet.assert_called_once_with(2)

    def test_scale_up_at_max_is_noop(self, mock_orchestrator_cls, mock_utilization, mock_reservation,
                                      mock_get, mock_set):
        orchestrator = self._setup(mock_orchestrator_cls, make_group(desired=5))
        mock_utilization.return_value = [95.0, 99.0]

        result = reconcile(load_config({'config': BASE_CONFIG}), make_wrapper())

        self.assertEqual(result['new_size'], 5)
        self.assertEqual(result['reason'], 'at bound')
        orchestrator.resize_fleet.assert_not_called()

    def test_configured_bounds_narrow_group_bounds(self, mock_orchestrator_cls, mock_utilization,
                                                   mock_reservation, mock_get, mock_set):
        orchestrator = self._setup(mock_orchestrator_cls, make_group(desired=4, max_size=10))
        mock_utilization.return_value = [90.0, 92.0]

        result = reconcile(load_config({'config': dict(BASE_CONFIG, max_size=4)}), make_wrapper())

        self.assertEqual(result['reason'], 'at bound')
        orchestrator.resize_fleet.assert_not_called()

    def test_metric_failure_skips_cycle(self, mock_orchestrator_cls, mock_utilization, mock_reservation,
                                        mock_get, mock_set):
        orchestrator = self._setup(mock_orchestrator_cls, make_group(desired=2))
        mock_utilization.return_value = []

        result = reconcile(load_config({'config': BASE_CONFIG}), make_wrapper())

        self.assertTrue(result['skipped'])
        self.assertEqual(result['decision'], 'NoAction')
        orchestrator.resize_fleet.assert_not_called()
        mock_reservation.assert_not_called()

    def test_capacity_binding_when_no_threshold_breached(self, mock_orchestrator_cls, mock_utilization,
                                                         mock_reservation, mock_get, mock_set):
        orchestrator = self._setup(mock_orchestrator_cls, make_group(desired=2))
        mock_utilization.return_value = [50.0, 55.0]
        mock_reservation.return_value = {'reservation': 150.0}

        result = reconcile(load_config({'config': BASE_CONFIG}), make_wrapper())

        self.assertEqual(result['decision'], 'CapacityTarget')
        self.assertEqual(result['required_instances'], 3)
        orchestrator.resize_fleet.assert_called_once_with(3)

    def test_managed_scaling_disabled(self, mock_orchestrator_cls, mock_utilization, mock_reservation,
                                      mock_get, mock_set):
        orchestrator = self._setup(mock_orchestrator_cls, make_group(desired=2))
        mock_utilization.return_value = [50.0, 55.0]

        result = reconcile(load_config({'config': dict(BASE_CONFIG, managed_scaling=False)}), make_wrapper())

        self.assertEqual(result['decision'], 'NoAction')
        mock_reservation.assert_not_called()
        orchestrator.resize_fleet.assert_not_called()

    def test_resize_failure_surfaced(self, mock_orchestrator_cls, mock_utilization, mock_reservation,
                                     mock_get, mock_set):
        orchestrator = self._setup(mock_orchestrator_cls, make_group(desired=2))
        orchestrator.resize_fleet.side_effect = ResizeRequestError('test-fleet', 3, 'throttled')
        mock_utilization.return_value = [90.0, 92.0]

        result = reconcile(load_config({'config': BASE_CONFIG}), make_wrapper())

        self.assertFalse(result['applied'])
        self.assertIn('throttled', result['error'])
        mock_set.assert_not_called()

    def test_dry_run(self, mock_orchestrator_cls, mock_utilization, mock_reservation, mock_get, mock_set):
        orchestrator = self._setup(mock_orchestrator_cls, make_group(desired=2))
        mock_utilization.return_value = [90.0, 92.0]

        result = reconcile(load_config({'config': dict(BASE_CONFIG, dry_run=True)}), make_wrapper())

        self.assertEqual(result['new_size'], 3)
        orchestrator.resize_fleet.assert_not_called()
        orchestrator.replace_instance.assert_not_called()

    def test_unhealthy_instance_replaced(self, mock_orchestrator_cls, mock_utilization, mock_reservation,
                                         mock_get, mock_set):
        group = make_group(desired=2)
        group['Instances'][1]['HealthStatus'] = 'Unhealthy'
        orchestrator = self._setup(mock_orchestrator_cls, group)
        orchestrator.describe_launch_times.return_value = {'i-0': 0.0, 'i-1': 0.0}
        mock_utilization.return_value = [50.0, 55.0]
        mock_reservation.return_value = {}

        result = reconcile(load_config({'config': BASE_CONFIG}), make_wrapper())

        self.assertEqual(result['replaced'], ['i-1'])
        orchestrator.replace_instance.assert_called_once_with('i-1')

    def test_outdated_instances_rolled(self, mock_orchestrator_cls, mock_utilization, mock_reservation,
                                       mock_get, mock_set):
        group = make_group(desired=2)
        group['LaunchTemplate'] = {'LaunchTemplateId': 'lt-1', 'Version': '2'}
        orchestrator = self._setup(mock_orchestrator_cls, group)
        mock_utilization.return_value = [50.0, 55.0]
        mock_reservation.return_value = {}

        result = reconcile(load_config({'config': dict(BASE_CONFIG, min_healthy_percentage=50)}),
                           make_wrapper())

        self.assertEqual(result['rolling']['terminated'], ['i-0'])
        orchestrator.replace_instance.assert_called_once_with('i-0')

    def test_replacement_alert_across_invocations(self, mock_orchestrator_cls, mock_utilization,
                                                  mock_reservation, mock_get, mock_set):
        first = make_group(desired=1)
        first['Instances'][0]['HealthStatus'] = 'Unhealthy'
        second = make_group(desired=1)
        second['Instances'][0].update(InstanceId='i-9', HealthStatus='Unhealthy')
        orchestrator = self._setup(mock_orchestrator_cls, first)
        orchestrator.describe_fleet.side_effect = [first, second, second]
        orchestrator.describe_launch_times.return_value = {'i-0': 0.0, 'i-9': 0.0}
        mock_utilization.return_value = [50.0, 55.0]
        mock_reservation.return_value = {}
        config = load_config({'config': dict(BASE_CONFIG, max_replacement_attempts=1)})
        store = {}

        results = [reconcile(config, make_wrapper(store)) for _ in range(3)]

        self.assertEqual(results[0]['replaced'], ['i-0'])
        self.assertEqual(results[0]['alerts'], [])
        self.assertEqual(results[1]['replaced'], [])
        self.assertEqual(len(results[1]['alerts']), 1)
        self.assertIn('i-9', results[1]['alerts'][0])
        self.assertEqual(results[2]['alerts'], [])
        orchestrator.replace_instance.assert_called_once_with('i-0')
        self.assertIn('reconciler-state/test-cluster/test-fleet/fleet-state.json', store)

    def test_unreadable_fleet_state_skips_maintenance(self, mock_orchestrator_cls, mock_utilization,
                                                      mock_reservation, mock_get, mock_set):
        group = make_group(desired=2)
        group['Instances'][1]['HealthStatus'] = 'Unhealthy'
        orchestrator = self._setup(mock_orchestrator_cls, group)
        orchestrator.describe_launch_times.return_value = {'i-0': 0.0, 'i-1': 0.0}
        mock_utilization.return_value = [50.0, 55.0]
        mock_reservation.return_value = {}
        aws_wrapper = make_wrapper()
        aws_wrapper.get_file_content_from_s3_bucket.side_effect = Exception("AccessDenied")

        result = reconcile(load_config({'config': BASE_CONFIG}), aws_wrapper)

        self.assertEqual(result['replaced'], [])
        orchestrator.replace_instance.assert_not_called()
        aws_wrapper.upload_bytes_to_s3.assert_not_called()

    def test_fleet_state_write_failure_surfaced(self, mock_orchestrator_cls, mock_utilization,
                                                mock_reservation, mock_get, mock_set):
        self._setup(mock_orchestrator_cls, make_group(desired=2))
        mock_utilization.return_value = [50.0, 55.0]
        mock_reservation.return_value = {}
        aws_wrapper = make_wrapper()
        aws_wrapper.upload_bytes_to_s3.side_effect = Exception("SlowDown")

        result = reconcile(load_config({'config': BASE_CONFIG}), aws_wrapper)

        self.assertIn('SlowDown', result['fleet_state_error'])


@mock.patch.dict(os.environ, {}, clear=True)
class TestLambdaHandler(unittest.TestCase):
    """Tests for the Lambda entry point."""

    def test_invalid_configuration(self):
        result = lambda_handler({}, None)

        self.assertEqual(result['statusCode'], 500)
        self.assertIn('ECS_CLUSTER', result['error'])

    @mock.patch('reconciler.main.reconcile')
    @mock.patch('reconciler.main.AWSWrapper')
    def test_success(self, mock_wrapper_cls, mock_reconcile):
        mock_reconcile.return_value = {'decision': 'NoAction'}

        result = lambda_handler({'config': BASE_CONFIG}, None)

        self.assertEqual(result, {'decision': 'NoAction'})
        mock_wrapper_cls.assert_called_once_with(sso_profile_name=None, region_name='us-east-1')

    @mock.patch('reconciler.main.reconcile', side_effect=ValueError("Auto Scaling Group test-fleet not found"))
    @mock.patch('reconciler.main.AWSWrapper')
    def test_reconcile_error(self, mock_wrapper_cls, mock_reconcile):
        result = lambda_handler({'config': BASE_CONFIG}, None)

        self.assertEqual(result['statusCode'], 500)
        self.assertIn('not found', result['error'])


if __name__ == '__main__':
    unittest.main()
