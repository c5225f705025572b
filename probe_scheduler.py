"""
Probe Scheduler for Mesh Traceroute Monitor
Picks the next node to traceroute and records that we asked
"""

import json
import logging
import random

import config
import database
import path_decoder

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000

CATEGORY_COLD = 'cold'    # No result with data yet (never probed or last probe failed)
CATEGORY_STALE = 'stale'  # Current result exists, long cooldown

_default_rng = random.Random()


def classify_candidate(node, has_result, now):
    """
    Decide whether a node may be probed this cycle.

    Args:
        node: Node dict (needs 'last_traceroute_request', epoch ms or None)
        has_result: True if a current traceroute local -> node carries data
        now: Current time in epoch ms

    Returns:
        CATEGORY_COLD, CATEGORY_STALE, or None when still cooling down
    """
    last_request = node.get('last_traceroute_request')

    if not has_result:
        cold_cutoff = now - config.COLD_RETRY_HOURS * HOUR_MS
        if last_request is None or last_request < cold_cutoff:
            return CATEGORY_COLD
        return None

    stale_cutoff = now - config.STALE_RETRY_HOURS * HOUR_MS
    if last_request is not None and last_request < stale_cutoff:
        return CATEGORY_STALE
    return None


def get_node_filter():
    """
    Get the set of node numbers auto-traceroute is limited to.

    Returns None when filtering is off or the list is empty (all nodes allowed).
    """
    if database.get_setting('traceroute_filter_enabled', 'false') != 'true':
        return None
    try:
        node_nums = json.loads(database.get_setting('traceroute_node_nums', '[]'))
    except (ValueError, TypeError):
        logger.warning("Ignoring unparseable traceroute node filter")
        return None
    if not isinstance(node_nums, list) or not node_nums:
        return None
    return {int(n) for n in node_nums}


def set_node_filter(enabled, node_nums=None):
    """Persist the auto-traceroute node filter"""
    database.set_setting('traceroute_filter_enabled', 'true' if enabled else 'false')
    if node_nums is not None:
        database.set_setting('traceroute_node_nums', json.dumps(sorted({int(n) for n in node_nums})))


def has_usable_result(candidate):
    """True if the candidate's stored local -> node traceroute decodes to a path"""
    if candidate.get('result_id') is None:
        return False
    return not path_decoder.is_failed({
        'route': candidate.get('result_route'),
        'route_back': candidate.get('result_route_back')
    })


def get_eligible_candidates(local_node_num, now=None):
    """Return (node, category) pairs for every node eligible this cycle"""
    if now is None:
        now = database.now_ms()

    allowed = get_node_filter()
    eligible = []
    for node in database.get_traceroute_candidates(local_node_num):
        if node['node_num'] == local_node_num:
            continue
        if allowed is not None and node['node_num'] not in allowed:
            continue
        category = classify_candidate(node, has_usable_result(node), now)
        if category:
            eligible.append((node, category))
    return eligible


def select_next_probe_target(local_node_num, rng=None, now=None):
    """
    Select at most one node to traceroute next.

    Picks uniformly at random among all eligible nodes so no part of the mesh
    is starved. Returns the node dict (with a 'category' key) or None.
    """
    if rng is None:
        rng = _default_rng

    eligible = get_eligible_candidates(local_node_num, now=now)
    if not eligible:
        logger.debug("No nodes eligible for traceroute")
        return None

    node, category = rng.choice(eligible)
    selected = dict(node)
    selected['category'] = category
    logger.debug(f"Selected {selected['node_id']} ({category}) from {len(eligible)} eligible nodes")
    return selected


def record_probe_requested(node_num, now=None):
    """Mark that we asked a node for a traceroute, whatever the outcome"""
    updated = database.record_traceroute_request(node_num, timestamp=now)
    if not updated:
        logger.warning(f"Recorded traceroute request for unknown node {node_num}")
    return updated


def run_scheduling_tick(local_node_num, send_probe, rng=None, now=None):
    """
    Run one auto-traceroute cycle.

    Args:
        local_node_num: Node number of the local radio
        send_probe: Callable(from_node_num, to_node_num) -> bool, fire-and-forget
        rng: Optional random.Random for selection
        now: Optional current time in epoch ms

    Returns:
        dict with {selected, category, sent}
    """
    if local_node_num is None:
        logger.debug("Local node unknown, skipping traceroute tick")
        return {'selected': None, 'category': None, 'sent': False}

    target = select_next_probe_target(local_node_num, rng=rng, now=now)
    if target is None:
        return {'selected': None, 'category': None, 'sent': False}

    sent = False
    try:
        sent = bool(send_probe(local_node_num, target['node_num']))
    finally:
        # Recorded even if the send failed so a dead node is not re-asked every tick
        record_probe_requested(target['node_num'], now=now)

    if sent:
        logger.info(f"Traceroute requested: {local_node_num} -> {target['node_id']} ({target['category']})")
    else:
        logger.warning(f"Traceroute request to {target['node_id']} was not accepted by the gateway")

    database.log_event(
        database.EVENT_TRACEROUTE_REQUESTED,
        node_num=target['node_num'],
        details=json.dumps({'category': target['category'], 'sent': sent}),
        severity='info' if sent else 'warning'
    )

    return {'selected': target, 'category': target['category'], 'sent': sent}


def get_scheduler_summary(local_node_num, now=None):
    """Get counts of eligible nodes by category"""
    if local_node_num is None:
        return {'local_node_num': None, 'eligible': 0, 'cold': 0, 'stale': 0, 'filter': []}

    eligible = get_eligible_candidates(local_node_num, now=now)
    return {
        'local_node_num': local_node_num,
        'eligible': len(eligible),
        'cold': sum(1 for _, c in eligible if c == CATEGORY_COLD),
        'stale': sum(1 for _, c in eligible if c == CATEGORY_STALE),
        'filter': sorted(get_node_filter() or [])
    }
