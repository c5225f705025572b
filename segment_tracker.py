"""
Record Segment Tracker for Mesh Traceroute Monitor
Logs every observed link distance and keeps the longest one ever seen flagged
"""

import json
import logging
import math

import config
import database
from geo import calculate_distance_km, node_position
from path_decoder import extract_segments

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


def consider_segment(pair, distance_km, timestamp=None, node_ids=None):
    """
    Record one segment observation.

    The row is always appended; it becomes the record holder only if it is
    strictly longer than the current record (ties keep the earlier row).

    Args:
        pair: (node_num1, node_num2), order does not matter
        distance_km: Measured distance between the two nodes
        timestamp: Observation time in epoch ms (default now)
        node_ids: Optional (node_id1, node_id2) matching pair

    Returns:
        The inserted row as a dict
    """
    if distance_km is None or math.isnan(distance_km) or distance_km < 0:
        raise ValueError(f"Invalid segment distance: {distance_km!r}")
    if timestamp is None:
        timestamp = database.now_ms()

    node_num1, node_num2 = pair
    id1, id2 = node_ids if node_ids else (None, None)
    if node_num1 > node_num2:
        node_num1, node_num2 = node_num2, node_num1
        id1, id2 = id2, id1

    row = database.insert_segment_observation(
        node_num1, node_num2, distance_km, timestamp,
        from_node_id=id1, to_node_id=id2
    )

    if row['is_record_holder']:
        logger.info(f"New longest segment: {node_num1} <-> {node_num2} at {distance_km:.2f} km")
        database.log_event(
            database.EVENT_SEGMENT_RECORD,
            node_num=node_num1,
            details=json.dumps({'from_node_num': node_num1, 'to_node_num': node_num2,
                                'distance_km': round(distance_km, 3)})
        )
    else:
        logger.debug(f"Segment {node_num1} <-> {node_num2}: {distance_km:.2f} km")

    return row


def cleanup_old_segments(retention_days=None, now=None):
    """Delete non-record segments older than the retention window"""
    if retention_days is None:
        retention_days = config.SEGMENT_RETENTION_DAYS
    if now is None:
        now = database.now_ms()

    count = database.cleanup_route_segments(now - retention_days * DAY_MS)
    if count > 0:
        logger.info(f"Cleaned up {count} old route segments")
    return count


def get_record_holder():
    """The longest segment ever observed, or None"""
    return database.get_record_holder_segment()


def get_longest_active(days=None, now=None):
    """The longest segment observed within the last N days, or None"""
    if days is None:
        days = config.ACTIVE_SEGMENT_DAYS
    if now is None:
        now = database.now_ms()
    return database.get_longest_segment_since(now - days * DAY_MS)


def record_traceroute_segments(traceroute, nodes=None, timestamp=None):
    """
    Feed every adjacent pair of a traceroute whose endpoints both have a
    position to consider_segment.

    Returns the inserted rows.
    """
    if nodes is None:
        nodes = database.get_nodes_map()
    if timestamp is None:
        timestamp = traceroute.get('timestamp') or database.now_ms()

    rows = []
    for node_num1, node_num2 in extract_segments(traceroute):
        node1 = nodes.get(node_num1)
        node2 = nodes.get(node_num2)
        pos1 = node_position(node1)
        pos2 = node_position(node2)
        if not pos1 or not pos2:
            continue
        distance = calculate_distance_km(*pos1, *pos2)
        rows.append(consider_segment(
            (node_num1, node_num2), distance, timestamp,
            node_ids=(node1.get('node_id'), node2.get('node_id'))
        ))
    return rows


def get_segment_summary(now=None):
    """Record and active-window longest segments for the dashboard"""
    return {
        'record_holder': get_record_holder(),
        'longest_active': get_longest_active(now=now),
        'active_days': config.ACTIVE_SEGMENT_DAYS,
        'retention_days': config.SEGMENT_RETENTION_DAYS
    }
