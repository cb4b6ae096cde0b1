import unittest
from datetime import datetime, timezone
from unittest import mock

from botocore.exceptions import ClientError

from reconciler.aws.autoscaling import AutoScalingOrchestrator
from reconciler.exceptions import ReplacementError, ResizeRequestError


def client_error(operation):
    return ClientError({'Error': {'Code': 'ValidationError', 'Message': 'invalid'}}, operation)


class TestAutoScalingOrchestrator(unittest.TestCase):
    """Tests for the Auto Scaling Group collaborator."""

    def setUp(self):
        self.client = mock.MagicMock()
        self.aws_wrapper = mock.MagicMock()
        self.aws_wrapper.create_aws_client.return_value = self.client
        self.orchestrator = AutoScalingOrchestrator(self.aws_wrapper, 'test-fleet')

    def test_describe_fleet(self):
        group = {'AutoScalingGroupName': 'test-fleet', 'MinSize': 1, 'MaxSize': 5, 'DesiredCapacity': 2,
                 'Instances': []}
        self.client.describe_auto_scaling_groups.return_value = {'AutoScalingGroups': [group]}

        self.assertEqual(self.orchestrator.describe_fleet(), group)
        self.client.describe_auto_scaling_groups.assert_called_once_with(AutoScalingGroupNames=['test-fleet'])

    def test_describe_missing_fleet(self):
        self.client.describe_auto_scaling_groups.return_value = {'AutoScalingGroups': []}

        with self.assertRaises(ValueError):
            self.orchestrator.describe_fleet()

    def test_resize_fleet(self):
        self.orchestrator.resize_fleet(3)

        self.client.set_desired_capacity.assert_called_once_with(
            AutoScalingGroupName='test-fleet', DesiredCapacity=3, HonorCooldown=False)

    def test_resize_failure(self):
        self.client.set_desired_capacity.side_effect = client_error('SetDesiredCapacity')

        with self.assertRaises(ResizeRequestError) as ctx:
            self.orchestrator.resize_fleet(3)
        self.assertEqual(ctx.exception.target, 3)

    def test_replace_instance_keeps_desired_capacity(self):
        self.orchestrator.replace_instance('i-1')

        self.client.terminate_instance_in_auto_scaling_group.assert_called_once_with(
            InstanceId='i-1', ShouldDecrementDesiredCapacity=False)

    def test_replace_failure(self):
        self.client.terminate_instance_in_auto_scaling_group.side_effect = client_error('TerminateInstance')

        with self.assertRaises(ReplacementError):
            self.orchestrator.replace_instance('i-1')

    def test_terminate_instance_decrements_desired_capacity(self):
        self.orchestrator.terminate_instance('i-1')

        self.client.terminate_instance_in_auto_scaling_group.assert_called_once_with(
            InstanceId='i-1', ShouldDecrementDesiredCapacity=True)

    def test_describe_launch_times(self):
        launch_time = datetime(2024, 1, 1, tzinfo=timezone.utc)
        paginator = self.client.get_paginator.return_value
        paginator.paginate.return_value = [
            {'Reservations': [{'Instances': [{'InstanceId': 'i-1', 'LaunchTime': launch_time}]}]}
        ]

        self.assertEqual(self.orchestrator.describe_launch_times(['i-1']), {'i-1': 1704067200.0})
        self.assertEqual(self.orchestrator.describe_launch_times([]), {})


if __name__ == '__main__':
    unittest.main()
