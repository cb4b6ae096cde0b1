"""
Fleet manager.

Owns the model of the instance set behind the cluster: which instances exist, which
launch spec version they run and whether they are healthy. It is the only component
that changes set membership, either directly (resize, replacement, rolling
replacement) or by refreshing from an Auto Scaling Group description.
"""
import logging
import math
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from reconciler.exceptions import ReplacementError, ResizeRequestError
from reconciler.models import Fleet, Instance, InstanceState, LaunchSpec, clamp_desired, validate_fleet


def _new_instance_id() -> str:
    return 'i-' + uuid.uuid4().hex[:17]


def termination_order(instances: List[Instance]) -> List[Instance]:
    """Order instances for scale-in: oldest launch spec version first, then oldest instance first."""
    return sorted(instances, key=lambda i: (i.launch_spec_version, i.launched_at))


class FleetManager:
    """
    Keeps the instance set consistent with the fleet's desired size and launch spec.

    Args:
        fleet: Fleet bounds, desired size, launch spec and health check policy
        orchestrator: Optional object with resize_fleet, replace_instance and
                      terminate_instance methods; without it only the model changes
        clock: Callable returning the current epoch time
        id_factory: Callable producing ids for instances launched by the model
    """

    def __init__(self, fleet: Fleet, orchestrator=None, clock: Callable[[], float] = time.time,
                 id_factory: Callable[[], str] = _new_instance_id):
        self.fleet = validate_fleet(fleet)
        self.orchestrator = orchestrator
        self.clock = clock
        self.id_factory = id_factory
        self.instances: Dict[str, Instance] = {}
        self.alerts: List[str] = []
        # Instances launched ahead of a rolling replacement, included in desired_size
        self.surge = 0
        self._abandoned = set()
        # Ids the model made up for launches the group has not reported yet
        self._placeholders = set()
        self._pending_replacements: List[int] = []
        self._carried_state: Optional[Dict[str, Any]] = None
        self.restored = False

    @property
    def desired_size(self) -> int:
        return self.fleet.desired_size

    @property
    def baseline_size(self) -> int:
        """Desired size without the instances launched ahead of a rolling replacement."""
        return self.desired_size - self.surge

    @property
    def launch_spec(self) -> LaunchSpec:
        return self.fleet.launch_spec

    @property
    def active_instances(self) -> List[Instance]:
        return [i for i in self.instances.values() if i.active]

    @property
    def healthy_instances(self) -> List[Instance]:
        return [i for i in self.instances.values() if i.state is InstanceState.HEALTHY]

    @property
    def outdated_instances(self) -> List[Instance]:
        return [i for i in self.active_instances if i.launch_spec_version < self.launch_spec.version]

    def min_healthy_count(self) -> int:
        """Smallest healthy count a rolling replacement may leave behind."""
        percentage = self.fleet.health_check_policy.min_healthy_percentage
        return math.ceil(percentage * self.baseline_size / 100)

    def _in_grace_period(self, instance: Instance, now: float) -> bool:
        return now - instance.launched_at < self.fleet.health_check_policy.grace_period_seconds

    def _launch(self, count: int, replaces: Optional[Instance] = None) -> List[Instance]:
        now = self.clock()
        attempts = replaces.replacement_attempts + 1 if replaces is not None else 0
        launched = []
        for _ in range(count):
            instance = Instance(self.id_factory(), self.launch_spec.version, now,
                                replaces=replaces.instance_id if replaces is not None else None,
                                replacement_attempts=attempts)
            self.instances[instance.instance_id] = instance
            if self.orchestrator is not None:
                self._placeholders.add(instance.instance_id)
            launched.append(instance)
        if launched:
            logging.info(f"Launched {len(launched)} instance(s) with launch spec v{self.launch_spec.version}: "
                         f"{[i.instance_id for i in launched]}")
        return launched

    def _terminate(self, instance: Instance) -> None:
        instance.state = InstanceState.TERMINATED
        self._abandoned.discard(instance.instance_id)
        logging.info(f"Terminated instance {instance.instance_id}")

    def resize(self, target: int) -> bool:
        """
        Change the desired size and launch or terminate instances to match it.

        Scale-in follows the termination policy of termination_order(). Instances launched
        ahead of a rolling replacement become regular members of the resized fleet.

        Returns:
            bool: False when the clamped target equals the current desired size

        Raises:
            ResizeRequestError: If the orchestrator rejects the request; the model is left unchanged
        """
        clamped = clamp_desired(target, self.fleet.min_size, self.fleet.max_size)
        if clamped != target:
            logging.warning(f"Resize target {target} clamped to [{self.fleet.min_size}, {self.fleet.max_size}]")
        if clamped == self.desired_size:
            logging.info(f"Fleet already at desired size {clamped}, nothing to do")
            return False

        if self.orchestrator is not None:
            self.orchestrator.resize_fleet(clamped)

        logging.info(f"Resizing fleet from {self.desired_size} to {clamped}")
        self.fleet = self.fleet.with_desired(clamped)
        self.surge = 0
        self.converge()
        return True

    def converge(self) -> None:
        """Launch or terminate modeled instances until their count matches the desired size."""
        active = self.active_instances
        if len(active) < self.desired_size:
            self._launch(self.desired_size - len(active))
        elif len(active) > self.desired_size:
            for instance in termination_order(active)[:len(active) - self.desired_size]:
                self._terminate(instance)

    def mark_bootstrapped(self, instance_id: str, success: bool = True) -> None:
        """Record the outcome of an instance's bootstrap script."""
        instance = self.instances[instance_id]
        if success:
            instance.state = InstanceState.HEALTHY
            instance.unhealthy_since = None
            instance.replacement_attempts = 0
            logging.info(f"Instance {instance_id} bootstrapped and marked healthy")
        else:
            instance.state = InstanceState.UNHEALTHY
            instance.unhealthy_since = self.clock()
            logging.warning(f"Bootstrap failed on instance {instance_id}")

    def record_health(self, instance_id: str, healthy: bool) -> None:
        """
        Record a health check result. Failures during the grace period are ignored.
        """
        instance = self.instances[instance_id]
        if not instance.active:
            return
        if healthy:
            if instance.state is not InstanceState.HEALTHY:
                logging.info(f"Instance {instance_id} passed its health check")
            instance.state = InstanceState.HEALTHY
            instance.unhealthy_since = None
            instance.replacement_attempts = 0
            return

        now = self.clock()
        if self._in_grace_period(instance, now):
            logging.debug(f"Ignoring failed health check on {instance_id} during grace period")
            return
        if instance.unhealthy_since is None:
            instance.unhealthy_since = now
        instance.state = InstanceState.UNHEALTHY
        logging.warning(f"Instance {instance_id} failed its health check")

    def check_health(self) -> List[str]:
        """
        Replace instances that are unhealthy, or still bootstrapping, past the grace period.

        A slot whose replacements keep failing raises an alert after
        max_replacement_attempts and is left to the operator.

        Returns:
            list: Ids of the instances that were replaced
        """
        now = self.clock()
        max_attempts = self.fleet.health_check_policy.max_replacement_attempts
        replaced = []
        for instance in list(self.active_instances):
            if instance.state is InstanceState.HEALTHY or self._in_grace_period(instance, now):
                continue
            if instance.instance_id in self._abandoned:
                continue

            if instance.replacement_attempts >= max_attempts:
                message = (f"Instance {instance.instance_id} is unhealthy after {instance.replacement_attempts} "
                           f"consecutive replacement attempts, manual intervention required")
                logging.error(message)
                self.alerts.append(message)
                self._abandoned.add(instance.instance_id)
                continue

            logging.warning(f"Instance {instance.instance_id} is {instance.state.value} past its grace period, "
                            f"replacing it")
            if self._replace(instance):
                replaced.append(instance.instance_id)
        return replaced

    def _replace(self, instance: Instance) -> Optional[Instance]:
        if self.orchestrator is not None:
            try:
                self.orchestrator.replace_instance(instance.instance_id)
            except ReplacementError as e:
                logging.error(f"Could not replace {instance.instance_id}, retrying next cycle: {e}")
                return None
        self._terminate(instance)
        return self._launch(1, replaces=instance)[0]

    def update_launch_spec(self, launch_spec: LaunchSpec) -> None:
        """
        Supersede the current launch spec. Existing instances are moved over by rolling_replace_step().

        Raises:
            ValueError: If the new spec does not have a higher version
        """
        if launch_spec.version <= self.launch_spec.version:
            raise ValueError(f"Launch spec version {launch_spec.version} does not supersede "
                             f"v{self.launch_spec.version}")
        logging.info(f"Launch spec updated from v{self.launch_spec.version} to v{launch_spec.version}, "
                     f"{len(self.outdated_instances)} instance(s) outdated")
        self.fleet = self.fleet._replace(launch_spec=launch_spec)

    def rolling_replace_step(self) -> Dict[str, List[str]]:
        """
        Replace one batch of outdated instances without dropping the healthy count below
        min_healthy_count().

        Outdated instances that are not healthy go first since they cost no capacity. When
        no healthy instance can be spared, one new instance is launched ahead of time if the
        fleet is below max_size. Outdated instances are then terminated with a decrement of
        desired capacity until the surge is used up, and the group returns to its baseline size.

        Returns:
            dict: Ids of the 'terminated' and 'launched' instances
        """
        result = {'terminated': [], 'launched': []}
        outdated = termination_order(self.outdated_instances)
        if not outdated:
            if self.surge:
                self._release_surge()
            return result

        budget = len(self.healthy_instances) - self.min_healthy_count()
        victims = [i for i in outdated if i.state is not InstanceState.HEALTHY]
        healthy_outdated = [i for i in outdated if i.state is InstanceState.HEALTHY]
        victims.extend(healthy_outdated[:max(0, budget)])

        if not victims:
            self._surge(result)
            return result

        for instance in victims:
            try:
                if self.surge > 0:
                    if self.orchestrator is not None:
                        self.orchestrator.terminate_instance(instance.instance_id)
                    self._terminate(instance)
                    self.surge -= 1
                    self.fleet = self.fleet.with_desired(self.desired_size - 1)
                else:
                    new_instance = self._replace(instance)
                    if new_instance is None:
                        break
                    result['launched'].append(new_instance.instance_id)
            except ReplacementError as e:
                logging.error(f"Rolling replacement stopped at {instance.instance_id}: {e}")
                break
            result['terminated'].append(instance.instance_id)

        logging.info(f"Rolling replacement step: terminated {result['terminated']}, launched {result['launched']}, "
                     f"{len(self.outdated_instances)} outdated remaining")
        return result

    def _surge(self, result: Dict[str, List[str]]) -> None:
        pending_current = [i for i in self.active_instances
                           if i.state is InstanceState.PENDING and i.launch_spec_version == self.launch_spec.version]
        if pending_current:
            logging.info(f"Rolling replacement waiting for {len(pending_current)} new instance(s) to become healthy")
            return
        if self.desired_size >= self.fleet.max_size or len(self.active_instances) >= self.fleet.max_size:
            logging.warning(f"Rolling replacement blocked: no healthy capacity to spare and fleet is at "
                            f"max size {self.fleet.max_size}")
            return

        target = self.desired_size + 1
        if self.orchestrator is not None:
            try:
                self.orchestrator.resize_fleet(target)
            except ResizeRequestError as e:
                logging.error(f"Could not launch replacement capacity ahead of time: {e}")
                return
        self.fleet = self.fleet.with_desired(target)
        self.surge += 1
        result['launched'].extend(i.instance_id for i in self._launch(1))

    def _release_surge(self) -> None:
        target = self.baseline_size
        if self.orchestrator is not None:
            try:
                self.orchestrator.resize_fleet(target)
            except ResizeRequestError as e:
                logging.error(f"Could not return fleet to {target} instances after rolling replacement: {e}")
                return
        logging.info(f"Rolling replacement finished, returning fleet from {self.desired_size} to {target}")
        self.fleet = self.fleet.with_desired(target)
        self.surge = 0
        self.converge()

    def snapshot(self) -> Dict[str, Any]:
        """
        Replacement history and surge count, in the form restore() takes.

        Launches whose instance the group has not reported yet are listed, oldest first,
        as pending replacements with the failure streak they carry.
        """
        active = self.active_instances
        known = [i for i in active if i.instance_id not in self._placeholders]
        placeholders = sorted((i for i in active if i.instance_id in self._placeholders),
                              key=lambda i: i.launched_at)
        return {
            'surge': self.surge,
            'known_instances': sorted(i.instance_id for i in known),
            'replacement_attempts': {i.instance_id: i.replacement_attempts
                                     for i in known if i.replacement_attempts},
            'pending_replacements': self._pending_replacements + [i.replacement_attempts for i in placeholders],
            'abandoned': sorted(self._abandoned),
        }

    def restore(self, state: Dict[str, Any]) -> None:
        """Carry the snapshot() of a previous run into the next sync()."""
        self._carried_state = dict(state or {})
        self.restored = True

    def sync(self, group: Dict[str, Any], launch_times: Optional[Dict[str, float]] = None) -> None:
        """
        Refresh the model from an Auto Scaling Group description.

        Instances the group reports for the first time inherit the failure streak of the
        model's pending replacements in launch order.

        Args:
            group: One entry of describe_auto_scaling_groups()['AutoScalingGroups']
            launch_times: Optional epoch launch time per instance id
        """
        launch_times = launch_times or {}
        now = self.clock()

        carried = self._carried_state if self._carried_state is not None else self.snapshot()
        self._carried_state = None
        known = set(carried.get('known_instances', []))
        attempts_by_id = carried.get('replacement_attempts', {})
        pending = list(carried.get('pending_replacements', []))
        self._abandoned |= set(carried.get('abandoned', []))

        group_version = _template_version(group.get('LaunchTemplate'), self.launch_spec.version)
        if group_version > self.launch_spec.version:
            self.fleet = self.fleet._replace(launch_spec=self.launch_spec._replace(version=group_version))

        self.fleet = validate_fleet(self.fleet._replace(
            min_size=group['MinSize'],
            max_size=group['MaxSize'],
            desired_size=group['DesiredCapacity'],
        ))
        self.surge = max(0, min(carried.get('surge', 0), self.desired_size - self.fleet.min_size))

        entries = []
        for entry in group.get('Instances', []):
            lifecycle = entry.get('LifecycleState', '')
            if lifecycle.startswith('Terminat') or lifecycle in ('Standby', 'Detached', 'Detaching'):
                continue
            entries.append(entry)
        seen = {entry['InstanceId'] for entry in entries}

        new_entries = sorted((e for e in entries if e['InstanceId'] not in self.instances),
                             key=lambda e: launch_times.get(e['InstanceId'], now))
        for entry in new_entries:
            instance_id = entry['InstanceId']
            if instance_id in known:
                attempts = attempts_by_id.get(instance_id, 0)
            else:
                attempts = pending.pop(0) if pending else 0
            self.instances[instance_id] = Instance(
                instance_id,
                _template_version(entry.get('LaunchTemplate'), self.launch_spec.version),
                launch_times.get(instance_id, now),
                replacement_attempts=attempts)

        for entry in entries:
            instance = self.instances[entry['InstanceId']]
            lifecycle = entry.get('LifecycleState', '')
            if lifecycle.startswith('Pending'):
                instance.state = InstanceState.PENDING
            elif entry.get('HealthStatus') == 'Unhealthy':
                if instance.unhealthy_since is None:
                    instance.unhealthy_since = now
                instance.state = InstanceState.UNHEALTHY
            else:
                instance.state = InstanceState.HEALTHY
                instance.unhealthy_since = None
                instance.replacement_attempts = 0

        for instance in self.active_instances:
            if instance.instance_id not in seen:
                self._terminate(instance)
        self._placeholders.clear()
        self._abandoned &= seen
        self._pending_replacements = pending[:max(0, self.desired_size - len(seen))]

        logging.debug(f"Synced fleet model: {self.instances}")


def _template_version(template: Optional[Dict[str, Any]], default: int) -> int:
    # '$Latest' and '$Default' carry no number
    if not template:
        return default
    try:
        return int(template.get('Version'))
    except (TypeError, ValueError):
        return default
