#!/usr/bin/env python3
"""
Test helper functions and factories for creating test data
"""

from typing import Any, Dict, List, Optional

import database

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
SECOND_MS = 1000


def create_test_node(
    node_num: int,
    long_name: Optional[str] = None,
    short_name: Optional[str] = None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    last_heard: Optional[int] = None,
    last_traceroute_request: Optional[int] = None
) -> Dict[str, Any]:
    """Insert a node and return its row.

    Args:
        node_num: Node number
        long_name: Display name (default: none, so the !hex id is used)
        short_name: Short display name
        latitude: Latitude coordinate
        longitude: Longitude coordinate
        last_heard: Last heard timestamp in epoch ms
        last_traceroute_request: Last traceroute request in epoch ms

    Returns:
        Node row as a dict
    """
    database.upsert_node(
        node_num,
        long_name=long_name,
        short_name=short_name,
        latitude=latitude,
        longitude=longitude,
        last_heard=last_heard
    )
    if last_traceroute_request is not None:
        database.record_traceroute_request(node_num, timestamp=last_traceroute_request)
    return database.get_node(node_num)


def make_traceroute(
    from_node_num: int,
    to_node_num: int,
    route: Any = '[]',
    route_back: Any = '[]',
    snr_towards: Any = None,
    snr_back: Any = None,
    timestamp: int = 0,
    row_id: Optional[int] = None
) -> Dict[str, Any]:
    """Factory for an in-memory traceroute row shaped like the database row.

    Hop/SNR fields are passed through untouched so tests can use JSON text,
    'null', None or deliberately malformed values.
    """
    return {
        'id': row_id,
        'from_node_num': from_node_num,
        'to_node_num': to_node_num,
        'from_node_id': f"!{from_node_num:08x}",
        'to_node_id': f"!{to_node_num:08x}",
        'route': route,
        'route_back': route_back,
        'snr_towards': snr_towards,
        'snr_back': snr_back,
        'timestamp': timestamp
    }


def store_traceroute(
    from_node_num: int,
    to_node_num: int,
    route: Optional[List[int]] = None,
    route_back: Optional[List[int]] = None,
    snr_towards: Optional[List[float]] = None,
    snr_back: Optional[List[float]] = None,
    timestamp: Optional[int] = None
) -> Dict[str, Any]:
    """Upsert a traceroute and return the stored row."""
    database.upsert_traceroute(
        from_node_num, to_node_num,
        route=route, route_back=route_back,
        snr_towards=snr_towards, snr_back=snr_back,
        timestamp=timestamp
    )
    return database.get_traceroute(from_node_num, to_node_num)
