import math

EARTH_RADIUS_KM = 6371.0

def haversine(coord1, coord2):
    """Great-circle distance in km between two (lat, lng) pairs"""
    lat1, lon1 = coord1
    lat2, lon2 = coord2

    lon1, lat1, lon2, lat2 = map(math.radians, [lon1, lat1, lon2, lat2])

    # Haversine formula
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = math.sin(dlat / 2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2)**2
    c = 2 * math.asin(math.sqrt(a))
    return c * EARTH_RADIUS_KM

def route_key(origin_address: str, destination_address: str) -> tuple[str, str]:
    return origin_address.strip(), destination_address.strip()
