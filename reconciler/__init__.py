"""
Capacity reconciler for EC2-backed ECS clusters.

This package runs the control loop that keeps an ECS cluster's Auto Scaling Group
sized to its workload: it observes cluster reservation metrics, evaluates scaling
thresholds, resizes the fleet within cooldowns, and replaces unhealthy or outdated
instances.
"""

__version__ = "0.1.0"
