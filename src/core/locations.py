"""
Location reference data.

Country code/name normalization for the European markets partners serve,
and reference coordinates for major cities. The coordinate table is only
consulted while an administrator configures a service area; matching never
looks anything up here.
"""
from __future__ import annotations

from typing import Optional

from core.types import GeoPoint


COUNTRY_NAMES = {
    "DE": "Germany",
    "AT": "Austria",
    "CH": "Switzerland",
    "NL": "Netherlands",
    "BE": "Belgium",
    "FR": "France",
    "IT": "Italy",
    "ES": "Spain",
    "PT": "Portugal",
    "PL": "Poland",
    "CZ": "Czech Republic",
    "SK": "Slovakia",
    "HU": "Hungary",
    "RO": "Romania",
    "BG": "Bulgaria",
    "HR": "Croatia",
    "SI": "Slovenia",
    "GR": "Greece",
    "DK": "Denmark",
    "SE": "Sweden",
    "NO": "Norway",
    "FI": "Finland",
    "EE": "Estonia",
    "LV": "Latvia",
    "LT": "Lithuania",
    "IE": "Ireland",
    "GB": "United Kingdom",
    "LU": "Luxembourg",
}

# Lower-cased city name -> (lat, lng)
CITY_COORDINATES = {
    # Germany
    "berlin": (52.5200, 13.4050),
    "hamburg": (53.5511, 9.9937),
    "munich": (48.1351, 11.5820),
    "münchen": (48.1351, 11.5820),
    "cologne": (50.9375, 6.9603),
    "köln": (50.9375, 6.9603),
    "frankfurt": (50.1109, 8.6821),
    "stuttgart": (48.7758, 9.1829),
    "düsseldorf": (51.2277, 6.7735),
    "dortmund": (51.5136, 7.4653),
    "essen": (51.4556, 7.0116),
    "leipzig": (51.3397, 12.3731),
    "bremen": (53.0793, 8.8017),
    "dresden": (51.0504, 13.7373),
    "hannover": (52.3759, 9.7320),
    "nuremberg": (49.4521, 11.0767),
    "nürnberg": (49.4521, 11.0767),
    # Austria / Switzerland
    "vienna": (48.2082, 16.3738),
    "wien": (48.2082, 16.3738),
    "graz": (47.0707, 15.4395),
    "salzburg": (47.8095, 13.0550),
    "zurich": (47.3769, 8.5417),
    "zürich": (47.3769, 8.5417),
    "geneva": (46.2044, 6.1432),
    "basel": (47.5596, 7.5886),
    "bern": (46.9480, 7.4474),
    # Benelux / France
    "amsterdam": (52.3676, 4.9041),
    "rotterdam": (51.9244, 4.4777),
    "brussels": (50.8503, 4.3517),
    "antwerp": (51.2194, 4.4025),
    "luxembourg": (49.6116, 6.1319),
    "paris": (48.8566, 2.3522),
    "lyon": (45.7640, 4.8357),
    "marseille": (43.2965, 5.3698),
    # Southern Europe
    "rome": (41.9028, 12.4964),
    "milan": (45.4642, 9.1900),
    "madrid": (40.4168, -3.7038),
    "barcelona": (41.3874, 2.1686),
    "lisbon": (38.7223, -9.1393),
    "athens": (37.9838, 23.7275),
    # Central / Eastern Europe
    "warsaw": (52.2297, 21.0122),
    "krakow": (50.0647, 19.9450),
    "prague": (50.0755, 14.4378),
    "bratislava": (48.1486, 17.1077),
    "budapest": (47.4979, 19.0402),
    "bucharest": (44.4268, 26.1025),
    "sofia": (42.6977, 23.3219),
    "zagreb": (45.8150, 15.9819),
    "ljubljana": (46.0569, 14.5058),
    # Nordics / Baltics / Isles
    "copenhagen": (55.6761, 12.5683),
    "stockholm": (59.3293, 18.0686),
    "oslo": (59.9139, 10.7522),
    "helsinki": (60.1699, 24.9384),
    "tallinn": (59.4370, 24.7536),
    "riga": (56.9496, 24.1052),
    "vilnius": (54.6872, 25.2797),
    "dublin": (53.3498, -6.2603),
    "london": (51.5074, -0.1278),
}


def normalize_country(value: Optional[str]) -> Optional[str]:
    """Country name for a two-letter code; names pass through stripped."""
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    if len(value) == 2:
        return COUNTRY_NAMES.get(value.upper(), value)
    return value


def lookup_city_coordinates(name: Optional[str]) -> Optional[GeoPoint]:
    """Reference point for a city name (case-insensitive), or None if unknown."""
    if not name:
        return None
    coords = CITY_COORDINATES.get(name.strip().lower())
    if coords is None:
        return None
    return GeoPoint(lat=coords[0], lng=coords[1], name=name.strip())


__all__ = [
    "COUNTRY_NAMES",
    "CITY_COORDINATES",
    "normalize_country",
    "lookup_city_coordinates",
]
