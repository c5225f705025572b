"""
Geodesic helpers for Mesh Traceroute Monitor
"""

import math

EARTH_RADIUS_KM = 6371.0
KM_PER_MILE = 1.609344


def calculate_distance_km(lat1, lon1, lat2, lon2):
    """Great-circle (haversine) distance between two positions in kilometers"""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (math.sin(dlat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2))
         * math.sin(dlon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def km_to_miles(km):
    return km / KM_PER_MILE


def node_position(node):
    """(latitude, longitude) of a node row, or None if it has no usable fix"""
    if not node:
        return None
    lat = node.get('latitude')
    lon = node.get('longitude')
    if lat is None or lon is None:
        return None
    # 0,0 is what radios report before they get a fix
    if lat == 0 and lon == 0:
        return None
    return lat, lon
