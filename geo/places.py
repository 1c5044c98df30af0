from __future__ import annotations

import re

from normalize.alert import (
    DEFAULT_AREA_CITY,
    DEFAULT_AREA_STATE,
    Area,
    normalize_place_name,
)


CITY_STATES: dict[str, str] = {
    "mumbai": "Maharashtra",
    "thane": "Maharashtra",
    "pune": "Maharashtra",
    "nagpur": "Maharashtra",
    "new delhi": "Delhi",
    "delhi": "Delhi",
    "gurgaon": "Haryana",
    "gurugram": "Haryana",
    "faridabad": "Haryana",
    "noida": "Uttar Pradesh",
    "lucknow": "Uttar Pradesh",
    "chennai": "Tamil Nadu",
    "coimbatore": "Tamil Nadu",
    "madurai": "Tamil Nadu",
    "kolkata": "West Bengal",
    "howrah": "West Bengal",
    "durgapur": "West Bengal",
    "bangalore": "Karnataka",
    "bengaluru": "Karnataka",
    "mysore": "Karnataka",
    "hyderabad": "Telangana",
    "secunderabad": "Telangana",
    "ahmedabad": "Gujarat",
    "surat": "Gujarat",
    "jaipur": "Rajasthan",
    "jodhpur": "Rajasthan",
    "bhubaneswar": "Odisha",
    "puri": "Odisha",
    "chandigarh": "Punjab",
    "guwahati": "Assam",
    "patna": "Bihar",
    "shimla": "Himachal Pradesh",
    "dehradun": "Uttarakhand",
    "thiruvananthapuram": "Kerala",
    "kochi": "Kerala",
    "visakhapatnam": "Andhra Pradesh",
    "srinagar": "Jammu and Kashmir",
}

# Display names where the lookup key is an alias.
_CITY_DISPLAY: dict[str, str] = {
    "delhi": "New Delhi",
    "gurugram": "Gurgaon",
    "bengaluru": "Bangalore",
}

STATES: tuple[str, ...] = (
    "Andhra Pradesh",
    "Arunachal Pradesh",
    "Assam",
    "Bihar",
    "Chhattisgarh",
    "Delhi",
    "Goa",
    "Gujarat",
    "Haryana",
    "Himachal Pradesh",
    "Jammu and Kashmir",
    "Jharkhand",
    "Karnataka",
    "Kerala",
    "Madhya Pradesh",
    "Maharashtra",
    "Manipur",
    "Meghalaya",
    "Mizoram",
    "Nagaland",
    "Odisha",
    "Punjab",
    "Rajasthan",
    "Sikkim",
    "Tamil Nadu",
    "Telangana",
    "Tripura",
    "Uttar Pradesh",
    "Uttarakhand",
    "West Bengal",
)
_STATE_BY_NORM = {normalize_place_name(s): s for s in STATES}

_AREA_SUFFIX_RE = re.compile(r"\b(district|city|region|division|taluk|tehsil)\b")
_GENERIC_RE = re.compile(r"\b(india|multiple|all|unknown|various|areas)\b", re.IGNORECASE)


def default_area() -> Area:
    return Area(city=DEFAULT_AREA_CITY, state=DEFAULT_AREA_STATE)


def is_generic_area(area: Area) -> bool:
    return bool(_GENERIC_RE.search(area.state)) or bool(_GENERIC_RE.search(area.city))


def state_for_city(city: str) -> str | None:
    return CITY_STATES.get(normalize_place_name(city))


def _title_case(name: str) -> str:
    return " ".join(part.capitalize() if part != "and" else part for part in name.split())


def resolve_area(raw: str) -> Area | None:
    """Turn one provider area string into a (city, state) pair.

    Handles "City", "City, State", "City District", "State" and
    "City, District, State". Unknown single names are kept as the city with
    the state left as "Unknown".
    """
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    if not parts:
        return None

    if len(parts) >= 2:
        city_raw = parts[0]
        state_raw = parts[-1]
        district = parts[1] if len(parts) >= 3 else ""
        city_norm = normalize_place_name(_AREA_SUFFIX_RE.sub(" ", city_raw.casefold()))
        state = _STATE_BY_NORM.get(normalize_place_name(state_raw), state_raw.strip())
        city = _CITY_DISPLAY.get(city_norm) or _title_case(city_norm) or city_raw
        return Area(city=city, state=state, district=district)

    name_norm = normalize_place_name(_AREA_SUFFIX_RE.sub(" ", parts[0].casefold()))
    if not name_norm:
        return None
    if name_norm in CITY_STATES:
        return Area(
            city=_CITY_DISPLAY.get(name_norm) or _title_case(name_norm),
            state=CITY_STATES[name_norm],
        )
    if name_norm in _STATE_BY_NORM:
        state = _STATE_BY_NORM[name_norm]
        return Area(city=state, state=state)
    return Area(city=_title_case(name_norm), state="Unknown")


def extract_areas(text: str) -> list[Area]:
    """Find known city names mentioned in free text (word-boundary match)."""
    tokens = re.findall(r"[a-z]+", text.casefold())
    if not tokens:
        return []
    joined = f" {' '.join(tokens)} "

    areas: list[Area] = []
    seen: set[tuple[str, str]] = set()
    for name, state in CITY_STATES.items():
        if f" {name} " not in joined:
            continue
        area = Area(city=_CITY_DISPLAY.get(name) or _title_case(name), state=state)
        if area.key in seen:
            continue
        seen.add(area.key)
        areas.append(area)
    return areas


def area_matches(area: Area, query: str) -> bool:
    """Case-insensitive containment on city or state, like the alert list filter."""
    needle = normalize_place_name(query)
    if not needle:
        return False
    return needle in normalize_place_name(area.city) or needle in normalize_place_name(
        area.state
    )
