import logging
from typing import Any, Dict

from botocore.exceptions import BotoCoreError, ClientError

from reconciler.exceptions import ReplacementError, ResizeRequestError


class AutoScalingOrchestrator:
    """
    Issues fleet changes to an EC2 Auto Scaling Group.

    Requests are fire-and-forget: the group converges on its own, the reconciler only
    observes the result on the next poll.
    """

    def __init__(self, aws_wrapper, fleet_name: str):
        self._aws_wrapper = aws_wrapper
        self.fleet_name = fleet_name

    @property
    def _client(self):
        return self._aws_wrapper.create_aws_client('autoscaling')

    def describe_fleet(self) -> Dict[str, Any]:
        """
        Describe the Auto Scaling Group backing the fleet.

        Returns:
            dict: The AutoScalingGroups entry for the fleet

        Raises:
            ValueError: If the group does not exist
        """
        response = self._client.describe_auto_scaling_groups(AutoScalingGroupNames=[self.fleet_name])
        groups = response.get('AutoScalingGroups', [])
        if not groups:
            raise ValueError(f"Auto Scaling Group {self.fleet_name} not found")
        group = groups[0]
        logging.info(f"Fleet {self.fleet_name} - min: {group['MinSize']}, max: {group['MaxSize']}, "
                     f"desired: {group['DesiredCapacity']}, instances: {len(group.get('Instances', []))}")
        return group

    def resize_fleet(self, target: int) -> None:
        """
        Request a new desired capacity for the fleet.

        Raises:
            ResizeRequestError: If the request is rejected
        """
        try:
            self._client.set_desired_capacity(
                AutoScalingGroupName=self.fleet_name,
                DesiredCapacity=target,
                HonorCooldown=False
            )
            logging.info(f"Requested desired capacity {target} for fleet {self.fleet_name}")
        except (ClientError, BotoCoreError) as e:
            logging.error(f"Error resizing fleet {self.fleet_name}: {e}", exc_info=True)
            raise ResizeRequestError(self.fleet_name, target, e) from e

    def replace_instance(self, instance_id: str) -> None:
        """
        Terminate an instance without decrementing desired capacity, so the group launches
        a replacement from the current launch template.

        Raises:
            ReplacementError: If the termination request is rejected
        """
        try:
            self._client.terminate_instance_in_auto_scaling_group(
                InstanceId=instance_id,
                ShouldDecrementDesiredCapacity=False
            )
            logging.info(f"Requested replacement of instance {instance_id} in fleet {self.fleet_name}")
        except (ClientError, BotoCoreError) as e:
            logging.error(f"Error replacing instance {instance_id}: {e}", exc_info=True)
            raise ReplacementError(instance_id, e) from e

    def terminate_instance(self, instance_id: str) -> None:
        """
        Terminate an instance and shrink desired capacity by one.

        Raises:
            ReplacementError: If the termination request is rejected
        """
        try:
            self._client.terminate_instance_in_auto_scaling_group(
                InstanceId=instance_id,
                ShouldDecrementDesiredCapacity=True
            )
            logging.info(f"Requested termination of instance {instance_id} in fleet {self.fleet_name}")
        except (ClientError, BotoCoreError) as e:
            logging.error(f"Error terminating instance {instance_id}: {e}", exc_info=True)
            raise ReplacementError(instance_id, e) from e

    def describe_launch_times(self, instance_ids) -> Dict[str, float]:
        """
        Look up EC2 launch times of fleet instances.

        Returns:
            dict: Epoch launch time per instance id
        """
        if not instance_ids:
            return {}
        ec2_client = self._aws_wrapper.create_aws_client('ec2')
        launch_times = {}
        paginator = ec2_client.get_paginator('describe_instances')
        for page in paginator.paginate(InstanceIds=list(instance_ids)):
            for reservation in page.get('Reservations', []):
                for instance in reservation.get('Instances', []):
                    launch_times[instance['InstanceId']] = instance['LaunchTime'].timestamp()
        return launch_times
