import logging
import signal
import threading
from typing import Any, Callable, Dict, Optional

from reconciler.aws.autoscaling import AutoScalingOrchestrator
from reconciler.aws.wrapper import AWSWrapper
from reconciler.config import Config
from reconciler.main import build_fleet_manager, reconcile


class ControlLoop:
    """
    Runs reconciliation cycles sequentially on a fixed polling interval.

    The fleet manager is kept between cycles so health and replacement history
    accumulates. stop() lets the current cycle finish and interrupts the wait
    before the next one.
    """

    def __init__(self, config: Config, aws_wrapper: AWSWrapper,
                 reconcile_fn: Callable[..., Dict[str, Any]] = reconcile):
        self.config = config
        self.aws_wrapper = aws_wrapper
        self.reconcile_fn = reconcile_fn
        self.fleet_manager = None
        self.cycles = 0
        self.last_result: Optional[Dict[str, Any]] = None
        self._stop_event = threading.Event()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self, *_):
        if not self._stop_event.is_set():
            logging.info("Shutdown requested, finishing current cycle...")
        self._stop_event.set()

    def install_signal_handlers(self):
        signal.signal(signal.SIGTERM, self.stop)
        signal.signal(signal.SIGINT, self.stop)

    def run_once(self) -> Optional[Dict[str, Any]]:
        """Run a single cycle. Errors are logged and the loop carries on at the next poll."""
        try:
            if self.fleet_manager is None:
                orchestrator = AutoScalingOrchestrator(self.aws_wrapper, self.config.fleet_name)
                self.fleet_manager = build_fleet_manager(self.config, orchestrator, orchestrator.describe_fleet())
            self.last_result = self.reconcile_fn(self.config, self.aws_wrapper, self.fleet_manager)
        except Exception as e:
            logging.error(f"Reconciliation cycle failed, retrying in {self.config.poll_interval}s: {e}",
                          exc_info=True)
            self.last_result = None
        finally:
            self.cycles += 1
        return self.last_result

    def run(self, max_cycles: Optional[int] = None):
        """Run until stop() is called, or for max_cycles cycles."""
        logging.info(f"Control loop started for fleet {self.config.fleet_name}, "
                     f"polling every {self.config.poll_interval}s")
        while not self._stop_event.is_set():
            self.run_once()
            if max_cycles is not None and self.cycles >= max_cycles:
                break
            self._stop_event.wait(self.config.poll_interval)
        logging.info(f"Control loop stopped after {self.cycles} cycle(s)")
