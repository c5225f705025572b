"""
Gateway transport for Mesh Traceroute Monitor
Asks the radio gateway to send traceroutes; results come back through the ingestion API
"""

import requests
import logging
import config
import database

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def get_gateway_url():
    """Get the gateway base URL (settings override config)"""
    return (database.get_setting('gateway_url') or config.GATEWAY_URL).rstrip('/')


def send_probe(from_node_num, to_node_num):
    """
    Ask the gateway to send a traceroute.

    Fire-and-forget: returns True if the gateway accepted the request. The
    result (or a failure) is delivered later to POST /api/traceroutes.
    """
    url = f"{get_gateway_url()}/api/traceroute"
    try:
        response = requests.post(
            url,
            json={'from': from_node_num, 'destination': to_node_num},
            timeout=config.REQUEST_TIMEOUT
        )
        response.raise_for_status()
        return True
    except requests.exceptions.Timeout:
        logger.warning(f"Timeout requesting traceroute to {to_node_num} via {url}")
        return False
    except requests.exceptions.RequestException as e:
        logger.warning(f"Error requesting traceroute to {to_node_num} via {url}: {e}")
        return False


def fetch_local_node_num():
    """Ask the gateway which node number the attached radio has"""
    url = f"{get_gateway_url()}/api/local-node"
    try:
        response = requests.get(url, timeout=config.REQUEST_TIMEOUT)
        response.raise_for_status()
        data = response.json()
    except requests.exceptions.Timeout:
        logger.warning(f"Timeout fetching {url}")
        return None
    except requests.exceptions.RequestException as e:
        logger.warning(f"Error fetching {url}: {e}")
        return None
    except ValueError as e:
        logger.warning(f"Invalid JSON from {url}: {e}")
        return None

    node_num = data.get('node_num', data.get('nodeNum')) if isinstance(data, dict) else None
    try:
        return int(node_num) if node_num is not None else None
    except (ValueError, TypeError):
        logger.warning(f"Gateway reported invalid local node number: {node_num!r}")
        return None


def get_local_node_num():
    """Local node number: settings, then config, then the gateway (cached in settings)"""
    value = database.get_setting('local_node_num')
    if value:
        return int(value)
    if config.LOCAL_NODE_NUM is not None:
        return config.LOCAL_NODE_NUM

    node_num = fetch_local_node_num()
    if node_num is not None:
        database.set_setting('local_node_num', str(node_num))
        logger.info(f"Local node number set to {node_num} from gateway")
    return node_num


def normalize_result(payload):
    """
    Convert a gateway traceroute result into upsert_traceroute arguments.

    Accepts snake_case or the gateway's camelCase keys. A timeout or
    rejection ('failed': true) is stored with no hops in either direction.

    Raises ValueError when the endpoints are missing or not numbers, or a
    hop/SNR field is neither a list nor JSON text.
    """
    def pick(*keys):
        for key in keys:
            if key in payload:
                return payload[key]
        return None

    from_num = pick('from_node_num', 'fromNodeNum', 'from')
    to_num = pick('to_node_num', 'toNodeNum', 'to')
    if from_num is None or to_num is None:
        raise ValueError("Traceroute result needs from and to node numbers")
    try:
        from_num = int(from_num)
        to_num = int(to_num)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid node number in traceroute result: {e}") from e

    failed = bool(payload.get('failed')) or payload.get('status') in ('timeout', 'rejected')

    result = {
        'from_node_num': from_num,
        'to_node_num': to_num,
        'from_node_id': pick('from_node_id', 'fromNodeId'),
        'to_node_id': pick('to_node_id', 'toNodeId'),
        'route': None if failed else pick('route', 'forward_hops'),
        'route_back': None if failed else pick('route_back', 'routeBack', 'return_hops'),
        'snr_towards': None if failed else pick('snr_towards', 'snrTowards', 'forward_snr'),
        'snr_back': None if failed else pick('snr_back', 'snrBack', 'return_snr'),
        'timestamp': pick('timestamp')
    }
    for key in ('route', 'route_back', 'snr_towards', 'snr_back'):
        if result[key] is not None and not isinstance(result[key], (list, str)):
            raise ValueError(f"Invalid {key} in traceroute result: expected a list, "
                             f"got {type(result[key]).__name__}")

    if result['timestamp'] is not None:
        try:
            result['timestamp'] = int(result['timestamp'])
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid timestamp in traceroute result: {e}") from e
    return result
