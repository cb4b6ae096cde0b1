"""
Daemon entry point.

    python -m reconciler          run the control loop
    python -m reconciler plan     print the resource creation order as JSON
"""
import json
import logging
import sys

from reconciler.common.logger import setup_logging
from reconciler.aws.wrapper import AWSWrapper
from reconciler.config import load_config, validate_config
from reconciler.loop import ControlLoop
from reconciler.plan import build_resource_graph


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    setup_logging()
    config = load_config()
    try:
        validate_config(config)
    except ValueError as e:
        logging.error(f"Invalid configuration: {e}")
        return 1

    if argv and argv[0] == 'plan':
        plan = build_resource_graph(config)
        print(json.dumps({
            'create': plan.creation_order(),
            'delete': plan.deletion_order(),
            'resources': {name: r.properties for name, r in plan.resources.items()},
        }, indent=2))
        return 0

    loop = ControlLoop(config, AWSWrapper(sso_profile_name=config.sso_profile, region_name=config.region))
    loop.install_signal_handlers()
    loop.run()
    return 0


if __name__ == '__main__':
    sys.exit(main())
