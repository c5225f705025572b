"""
Path Decoder for Mesh Traceroute Monitor
Turns stored hop/SNR sequences into ordered paths, route strings and segment matches
"""

import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import config
import database
from geo import calculate_distance_km, km_to_miles, node_position

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

FORWARD = 'forward'   # from -> to, uses route / snr_towards
RETURN = 'return'     # to -> from, uses route_back / snr_back

ROUTE_ARROW = ' → '
NO_DATA_TEXT = 'No response'

DAY_MS = 24 * 60 * 60 * 1000


class MalformedPathError(ValueError):
    """Stored hop data is present but is not a list of node numbers."""


@dataclass
class PathHop:
    node_num: int
    snr: Optional[float] = None


@dataclass
class DecodedPath:
    direction: str
    start_node_num: int
    end_node_num: int
    hops: List[PathHop] = field(default_factory=list)
    has_data: bool = False

    @property
    def node_nums(self) -> List[int]:
        return [hop.node_num for hop in self.hops]

    @property
    def hop_count(self) -> Optional[int]:
        """Number of intermediate relays (None when there is no data)"""
        if not self.has_data:
            return None
        return len(self.hops) - 2


@dataclass
class RenderedRoute:
    text: str
    has_data: bool
    highlights: List[dict] = field(default_factory=list)


# ============ Parsing ============

def _load_sequence(raw):
    """
    Load a stored hop sequence.

    Returns None for "no response" (None, '', 'null'), a list of ints otherwise.
    Raises MalformedPathError for anything else.
    """
    if raw is None:
        return None
    if isinstance(raw, (bytes, str)):
        text = raw.decode(errors='replace') if isinstance(raw, bytes) else raw
        text = text.strip()
        if text in ('', 'null'):
            return None
        try:
            raw = json.loads(text)
        except ValueError as e:
            raise MalformedPathError(f"invalid JSON: {e}") from e
        if raw is None:
            return None

    if not isinstance(raw, (list, tuple)):
        raise MalformedPathError(f"expected a list, got {type(raw).__name__}")

    hops = []
    for value in raw:
        if isinstance(value, bool) or not isinstance(value, int):
            raise MalformedPathError(f"invalid node number: {value!r}")
        hops.append(value)
    return hops


def parse_hops(raw):
    """Parse a hop sequence; malformed data is treated as no data (None)"""
    try:
        return _load_sequence(raw)
    except MalformedPathError as e:
        logger.debug(f"Unparseable hop data {raw!r}: {e}")
        return None


def parse_snr(raw):
    """Parse a raw SNR sequence into a list of numbers (None where missing)"""
    if raw is None:
        return []
    try:
        values = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError:
        logger.debug(f"Unparseable SNR data {raw!r}")
        return []
    if not isinstance(values, (list, tuple)):
        return []
    return [v if isinstance(v, (int, float)) and not isinstance(v, bool) else None
            for v in values]


def scale_snr(raw_snr):
    """Convert a raw SNR reading to dB"""
    if raw_snr is None:
        return None
    return raw_snr / config.SNR_SCALE


def build_sequence(start_node_num, hops, end_node_num):
    """Full ordered path: [start, *hops, end]"""
    return [start_node_num, *hops, end_node_num]


def _direction_fields(traceroute, direction):
    if direction == FORWARD:
        return (traceroute['from_node_num'], traceroute['to_node_num'],
                traceroute.get('route'), traceroute.get('snr_towards'))
    if direction == RETURN:
        return (traceroute['to_node_num'], traceroute['from_node_num'],
                traceroute.get('route_back'), traceroute.get('snr_back'))
    raise ValueError(f"Unknown direction: {direction}")


def decode_path(traceroute, direction):
    """
    Reconstruct one direction of a traceroute.

    The forward path runs from_node -> to_node, the return path to_node ->
    from_node. Each relay gets the SNR at its own index; the final endpoint
    gets the arrival SNR when the sequence carries one more entry than hops.
    Older dashboards repeated the last relay's SNR on the endpoint instead.
    """
    start, end, hops_raw, snr_raw = _direction_fields(traceroute, direction)
    hops = parse_hops(hops_raw)
    if hops is None:
        return DecodedPath(direction, start, end)

    snrs = [scale_snr(s) for s in parse_snr(snr_raw)]

    def snr_at(idx):
        return snrs[idx] if idx < len(snrs) else None

    path = [PathHop(start)]
    path.extend(PathHop(node_num, snr_at(idx)) for idx, node_num in enumerate(hops))
    path.append(PathHop(end, snr_at(len(hops))))
    return DecodedPath(direction, start, end, path, True)


def is_failed(traceroute):
    """A traceroute failed when neither direction carries data"""
    return (parse_hops(traceroute.get('route')) is None
            and parse_hops(traceroute.get('route_back')) is None)


def hop_count(traceroute):
    """Relay count of the forward path, falling back to the return path"""
    for key in ('route', 'route_back'):
        hops = parse_hops(traceroute.get(key))
        if hops is not None:
            return len(hops)
    return None


def best_traceroute(traceroutes):
    """Traceroute with the fewest relays (failed ones ignored)"""
    best = None
    best_count = None
    for tr in traceroutes:
        count = hop_count(tr)
        if count is None:
            continue
        if best_count is None or count < best_count:
            best, best_count = tr, count
    return best


# ============ Segments ============

def adjacent_pairs(node_nums):
    """Consecutive (a, b) pairs along a path"""
    return list(zip(node_nums, node_nums[1:]))


def _pair_matches(a, b, node_num1, node_num2):
    return (a == node_num1 and b == node_num2) or (a == node_num2 and b == node_num1)


def find_segment_positions(node_nums, node_num1, node_num2):
    """Indexes i where path[i], path[i + 1] is the pair, in either order"""
    return [idx for idx, (a, b) in enumerate(adjacent_pairs(node_nums))
            if _pair_matches(a, b, node_num1, node_num2)]


def traceroute_contains_segment(traceroute, node_num1, node_num2):
    """
    True if the two nodes are adjacent in the forward or the return path.

    A row whose stored hop data cannot be parsed never matches.
    """
    try:
        from_num = traceroute['from_node_num']
        to_num = traceroute['to_node_num']
        forward = _load_sequence(traceroute.get('route'))
        back = _load_sequence(traceroute.get('route_back'))
    except (MalformedPathError, KeyError, TypeError, AttributeError) as e:
        logger.debug(f"Skipping unreadable traceroute {traceroute!r}: {e}")
        return False

    sequences = []
    if forward is not None:
        sequences.append(build_sequence(from_num, forward, to_num))
    if back is not None:
        sequences.append(build_sequence(to_num, back, from_num))

    return any(find_segment_positions(seq, node_num1, node_num2) for seq in sequences)


def extract_segments(traceroute) -> List[Tuple[int, int]]:
    """Unordered adjacent pairs (low, high) from both directions of a traceroute"""
    pairs = set()
    for direction in (FORWARD, RETURN):
        path = decode_path(traceroute, direction)
        if not path.has_data:
            continue
        for a, b in adjacent_pairs(path.node_nums):
            if a != b:
                pairs.add((min(a, b), max(a, b)))
    return sorted(pairs)


# ============ Rendering ============

def format_node_name(node_num, nodes):
    """Display name: long name, short name, node id, then !hex fallback"""
    node = nodes.get(node_num) if nodes else None
    if node:
        name = node.get('long_name') or node.get('short_name') or node.get('node_id')
        if name:
            return name
    return f"!{node_num:08x}"


def _link_distance(nodes, node_num_a, node_num_b, distance_unit):
    pos_a = node_position(nodes.get(node_num_a))
    pos_b = node_position(nodes.get(node_num_b))
    if not pos_a or not pos_b:
        return None
    km = calculate_distance_km(*pos_a, *pos_b)
    if distance_unit == 'mi':
        return f"{km_to_miles(km):.1f} mi"
    return f"{km:.1f} km"


def format_route(path, nodes=None, highlight=None, distance_unit=None):
    """
    Render a decoded path as "A → B (6.2 dB) → C".

    Args:
        path: DecodedPath
        nodes: dict of node_num -> node row, for names and positions
        highlight: optional (node_num1, node_num2) pair to locate
        distance_unit: 'km' or 'mi' to annotate each link with its length

    Returns:
        RenderedRoute; each highlight holds the path index range and the
        character span of one adjacent occurrence of the pair.
    """
    if not path.has_data:
        return RenderedRoute(NO_DATA_TEXT, False)

    nodes = nodes or {}
    text = ''
    spans = []
    for idx, hop in enumerate(path.hops):
        if idx > 0:
            distance = None
            if distance_unit:
                distance = _link_distance(nodes, path.hops[idx - 1].node_num, hop.node_num, distance_unit)
            text += ROUTE_ARROW if distance is None else f" → [{distance}] "
        label = format_node_name(hop.node_num, nodes)
        if hop.snr is not None:
            label += f" ({hop.snr:.1f} dB)"
        start = len(text)
        text += label
        spans.append((start, len(text)))

    highlights = []
    if highlight:
        for idx in find_segment_positions(path.node_nums, highlight[0], highlight[1]):
            highlights.append({
                'start_index': idx,
                'end_index': idx + 1,
                'start_char': spans[idx][0],
                'end_char': spans[idx + 1][1]
            })

    return RenderedRoute(text, True, highlights)


def summarize_traceroute(traceroute, nodes=None, highlight=None, distance_unit=None):
    """
    JSON-ready view of one traceroute.

    Names and route order always follow the row's own from/to columns.
    """
    nodes = nodes or {}
    from_num = traceroute['from_node_num']
    to_num = traceroute['to_node_num']
    from_name = format_node_name(from_num, nodes)
    to_name = format_node_name(to_num, nodes)

    forward = decode_path(traceroute, FORWARD)
    back = decode_path(traceroute, RETURN)
    forward_text = format_route(forward, nodes, highlight, distance_unit)
    back_text = format_route(back, nodes, highlight, distance_unit)

    return {
        'id': traceroute.get('id'),
        'from_node_num': from_num,
        'to_node_num': to_num,
        'from_node_id': traceroute.get('from_node_id'),
        'to_node_id': traceroute.get('to_node_id'),
        'from_name': from_name,
        'to_name': to_name,
        'title': f"{from_name}{ROUTE_ARROW}{to_name}",
        'timestamp': traceroute.get('timestamp'),
        'forward_path': forward.node_nums,
        'return_path': back.node_nums,
        'forward_route': forward_text.text,
        'return_route': back_text.text,
        'forward_hop_count': forward.hop_count,
        'return_hop_count': back.hop_count,
        'forward_highlights': forward_text.highlights,
        'return_highlights': back_text.highlights,
        'has_data': forward.has_data or back.has_data,
        'is_failed': not (forward.has_data or back.has_data)
    }


def filter_failed(summaries):
    """Drop summaries with no data in either direction"""
    return [s for s in summaries if s['has_data']]


# ============ Queries ============

def get_traceroute_history(node_a, node_b, hide_failed=False, limit=None):
    """Traceroutes between two nodes (either argument order), newest first"""
    nodes = database.get_nodes_map()
    summaries = [
        summarize_traceroute(tr, nodes, distance_unit=config.DISTANCE_UNIT)
        for tr in database.get_traceroutes_between(node_a, node_b, limit=limit)
    ]
    if hide_failed:
        summaries = filter_failed(summaries)
    return summaries


def find_traceroutes_with_segment(traceroutes, node_num1, node_num2):
    """Subset of traceroutes whose paths contain the segment"""
    return [tr for tr in traceroutes if traceroute_contains_segment(tr, node_num1, node_num2)]


def get_segment_traceroutes(node_num1, node_num2, limit=None):
    """Summaries of stored traceroutes that contain a segment, with highlights"""
    nodes = database.get_nodes_map()
    matches = find_traceroutes_with_segment(database.get_all_traceroutes(), node_num1, node_num2)
    if limit:
        matches = matches[:limit]
    return [
        summarize_traceroute(tr, nodes, highlight=(node_num1, node_num2),
                             distance_unit=config.DISTANCE_UNIT)
        for tr in matches
    ]


def get_recent_traceroute(node_num, within_ms=DAY_MS, now=None):
    """Most recent traceroute involving a node within a time window"""
    if now is None:
        now = database.now_ms()
    rows = database.get_traceroutes_for_node(node_num, since=now - within_ms, limit=1)
    return rows[0] if rows else None
