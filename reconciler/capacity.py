import logging
import math
from typing import NamedTuple, Tuple


class CapacityBinding(NamedTuple):
    """
    Binding between fleet capacity and the cluster's workload scheduling.

    Mirrors ECS managed scaling: the reservation is the number of instances the
    scheduled workload needs over the number running, and the binding moves the
    fleet toward the size at which that reservation equals the target utilization,
    bounded per adjustment by step_bounds.

    Created alongside the fleet and only changed through with_target().
    """
    fleet_reference: str
    target_utilization_percent: int = 100
    step_bounds: Tuple[int, int] = (1, 10)

    def with_target(self, target_utilization_percent: int = None, step_bounds: Tuple[int, int] = None) -> 'CapacityBinding':
        """Return the binding updated by a policy change."""
        return validate_binding(self._replace(
            target_utilization_percent=self.target_utilization_percent
            if target_utilization_percent is None else target_utilization_percent,
            step_bounds=self.step_bounds if step_bounds is None else tuple(step_bounds),
        ))

    @staticmethod
    def reservation_percent(current_instances: int, required_instances: int) -> float:
        """Capacity provider reservation for a fleet of current_instances."""
        if current_instances == 0:
            return 0.0 if required_instances == 0 else 200.0
        return required_instances * 100.0 / current_instances

    def target_size(self, current_instances: int, required_instances: int) -> int:
        """
        Fleet size the binding asks for.

        Args:
            current_instances: Instances currently running in the fleet
            required_instances: Instances needed to place every running and pending task

        Returns:
            int: Target fleet size, at most one bounded step away from current_instances
        """
        min_step, max_step = self.step_bounds

        if current_instances == 0:
            # Nothing to measure against; start with the smallest step
            return min_step if required_instances > 0 else 0

        ideal = math.ceil(required_instances * 100 / self.target_utilization_percent)
        delta = ideal - current_instances
        if delta == 0:
            return current_instances

        step = max(min_step, min(max_step, abs(delta)))
        target = current_instances + step if delta > 0 else current_instances - step
        logging.info(f"Capacity binding {self.fleet_reference}: reservation "
                     f"{self.reservation_percent(current_instances, required_instances):.1f}% "
                     f"(target {self.target_utilization_percent}%), ideal size {ideal}, target size {target}")
        return max(0, target)


def validate_binding(binding: CapacityBinding) -> CapacityBinding:
    """
    Raises:
        ValueError: If the target utilization is outside (0, 100] or the step bounds are inverted
    """
    if not 0 < binding.target_utilization_percent <= 100:
        raise ValueError(f"Target utilization must be in (0, 100], got {binding.target_utilization_percent}")
    min_step, max_step = binding.step_bounds
    if min_step < 1 or min_step > max_step:
        raise ValueError(f"Invalid scaling step bounds: ({min_step}, {max_step})")
    return binding


def required_instances_from_reservation(reservation_percent: float, current_instances: int) -> int:
    """Invert the reservation metric into the number of instances the workload needs."""
    return math.ceil(reservation_percent * current_instances / 100)
