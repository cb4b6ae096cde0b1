import json
import logging
import time
from datetime import datetime

STATE_PREFIX = 'reconciler-state'

# state key -> (timestamp, count) of the actions taken by this process
_recent_actions = {}


def state_key_for(direction, cluster_name, fleet_name):
    """S3 key of the last-action record for one scaling direction of a fleet."""
    return f"{STATE_PREFIX}/{cluster_name}/{fleet_name}/{direction}-last-action.json"


def _parse_timestamp(timestamp):
    # Epoch seconds, or an ISO-8601 string written by older versions
    try:
        return float(timestamp)
    except (TypeError, ValueError):
        return datetime.fromisoformat(timestamp).timestamp()


def get_last_scaling_time(aws_wrapper, direction, s3_state_bucket, cluster_name, fleet_name):
    """
    Get the time of the last scaling action of one direction.

    A missing record means the fleet was never scaled in that direction. An action taken
    by this process counts even if its record never reached S3.

    Args:
        aws_wrapper: AWS wrapper instance
        direction: 'up' or 'down' scaling action
        s3_state_bucket: S3 bucket name for state storage
        cluster_name: ECS cluster name
        fleet_name: Auto Scaling Group name

    Returns:
        tuple: (timestamp, count) of the last scaling action

    Raises:
        Exception: If the state exists but cannot be read, so callers can fail closed
    """
    state_key = state_key_for(direction, cluster_name, fleet_name)
    stored = _read_scaling_state(aws_wrapper, direction, s3_state_bucket, state_key)
    recent = _recent_actions.get(state_key)
    if recent is not None and recent[0] > stored[0]:
        logging.info(f"Using last {direction} scaling action recorded by this process: {recent[0]}")
        return recent
    return stored


def _read_scaling_state(aws_wrapper, direction, s3_state_bucket, state_key):
    logging.debug(f"Retrieving last scaling time for {direction} from {s3_state_bucket}/{state_key}")

    try:
        file_content = aws_wrapper.get_file_content_from_s3_bucket(s3_state_bucket, state_key)
    except Exception as e:
        if "NoSuchKey" in str(e):
            logging.info(f"No previous scaling state found for {direction}")
            return 0.0, 0
        raise

    if not file_content:
        return 0.0, 0

    try:
        state_data = json.loads(file_content.decode('utf-8'))
    except json.JSONDecodeError as e:
        logging.warning(f"Discarding unparseable scaling state at {state_key}: {e}")
        return 0.0, 0

    count = state_data.get('count', 0)
    timestamp = state_data.get('timestamp')
    if timestamp is None:
        logging.info(f"No timestamp found in state data for {direction}")
        return 0.0, count

    try:
        ts = _parse_timestamp(timestamp)
    except ValueError:
        logging.warning(f"Invalid timestamp format in scaling state: {timestamp}")
        return 0.0, count

    readable_time = datetime.fromtimestamp(ts).strftime('%Y-%m-%d %H:%M:%S')
    logging.info(f"Retrieved last {direction} scaling timestamp: {ts} ({readable_time}), count: {count}")
    return ts, count


def set_last_scaling_time(aws_wrapper, direction, s3_state_bucket, cluster_name, fleet_name, count=None, now=None):
    """
    Record a scaling action of one direction in S3.

    The action is remembered in this process before the upload, so a failed write still
    holds the cooldown for as long as the process lives.

    Args:
        aws_wrapper: AWS wrapper instance
        direction: 'up' or 'down' scaling action
        s3_state_bucket: S3 bucket name for state storage
        cluster_name: ECS cluster name
        fleet_name: Auto Scaling Group name
        count: Optional count to set (will increment current count if not provided)
        now: Optional epoch time of the action, defaults to time.time()

    Raises:
        Exception: If the record could not be written to S3
    """
    state_key = state_key_for(direction, cluster_name, fleet_name)
    now = time.time() if now is None else now

    if count is None:
        try:
            _, current_count = get_last_scaling_time(aws_wrapper, direction, s3_state_bucket,
                                                     cluster_name, fleet_name)
        except Exception as e:
            logging.warning(f"Could not read previous scaling count for {direction}: {e}")
            current_count = _recent_actions.get(state_key, (0.0, 0))[1]
        count = current_count + 1

    _recent_actions[state_key] = (now, count)
    readable_time = datetime.fromtimestamp(now).strftime('%Y-%m-%d %H:%M:%S')

    state_data = {
        'timestamp': now,
        'cluster': cluster_name,
        'fleet': fleet_name,
        'action_type': direction,
        'count': count
    }

    logging.info(f"Setting last {direction} scaling timestamp to {now} ({readable_time}), count: {count}")

    try:
        aws_wrapper.upload_bytes_to_s3(
            bucket=s3_state_bucket,
            file_path=state_key,
            content=json.dumps(state_data).encode('utf-8'),
            metadata={'ContentType': 'application/json'}
        )
    except Exception as e:
        logging.error(f"Error writing last scaling time to S3: {e}")
        raise


def fleet_state_key(cluster_name, fleet_name):
    """S3 key of the fleet manager's replacement history."""
    return f"{STATE_PREFIX}/{cluster_name}/{fleet_name}/fleet-state.json"


def load_fleet_state(aws_wrapper, s3_state_bucket, cluster_name, fleet_name):
    """
    Get the fleet manager state saved by the previous run.

    Returns:
        dict: The saved state, empty when nothing was saved yet or the record is unreadable

    Raises:
        Exception: If the state exists but cannot be fetched
    """
    state_key = fleet_state_key(cluster_name, fleet_name)
    try:
        file_content = aws_wrapper.get_file_content_from_s3_bucket(s3_state_bucket, state_key)
    except Exception as e:
        if "NoSuchKey" in str(e):
            logging.info(f"No previous fleet state found for {fleet_name}")
            return {}
        raise

    try:
        state = json.loads(file_content.decode('utf-8'))
    except (AttributeError, ValueError) as e:
        logging.warning(f"Discarding unparseable fleet state at {state_key}: {e}")
        return {}
    logging.debug(f"Loaded fleet state for {fleet_name}: {state}")
    return state if isinstance(state, dict) else {}


def save_fleet_state(aws_wrapper, s3_state_bucket, cluster_name, fleet_name, state):
    """
    Save the fleet manager state for the next run.

    Raises:
        Exception: If the state could not be written
    """
    state_key = fleet_state_key(cluster_name, fleet_name)
    aws_wrapper.upload_bytes_to_s3(
        bucket=s3_state_bucket,
        file_path=state_key,
        content=json.dumps(state, sort_keys=True).encode('utf-8'),
        metadata={'ContentType': 'application/json'}
    )
    logging.debug(f"Saved fleet state for {fleet_name} to {s3_state_bucket}/{state_key}")
