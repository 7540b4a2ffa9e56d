"""
Pickup point lookup through the Google Geocoding and Places (New) APIs.
"""
import unicodedata
from typing import Any, Dict, List, Optional

import requests
import structlog

from errors import NotFound, UpstreamError

logger = structlog.get_logger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
PLACES_SEARCH_URL = "https://places.googleapis.com/v1/places:searchText"
PLACES_FIELD_MASK = "places.displayName,places.formattedAddress,places.location"


def normalize_text(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(c for c in decomposed if unicodedata.category(c) != "Mn").lower()


class PlacesClient:
    def __init__(self, api_key: Optional[str], timeout: float = 10.0, country: str = "Argentina"):
        self.api_key = api_key
        self.timeout = timeout
        self.country = country
        self.session = requests.Session()

    def geocode_city(self, locality: str, province: str) -> Optional[str]:
        """Formatted address of the best match, or None when nothing matched."""
        params = {"address": f"{locality}, {province}, {self.country}", "key": self.api_key}
        try:
            response = self.session.get(GEOCODE_URL, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("geocode_failed", locality=locality, province=province, error=str(exc))
            return None
        results = response.json().get("results") or []
        if not results:
            return None
        return results[0].get("formatted_address")

    def search_pickup_points(self, city: str) -> List[Dict[str, Any]]:
        headers = {"X-Goog-Api-Key": self.api_key or "", "X-Goog-FieldMask": PLACES_FIELD_MASK}
        try:
            response = self.session.post(PLACES_SEARCH_URL, json={"textQuery": f"correo en {city}"},
                                         headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("places_search_failed", city=city, error=str(exc))
            raise UpstreamError("Error fetching pickup points") from exc
        places = response.json().get("places") or []
        return [
            {
                "name": (place.get("displayName") or {}).get("text"),
                "address": place.get("formattedAddress"),
                "lat": (place.get("location") or {}).get("latitude"),
                "lng": (place.get("location") or {}).get("longitude"),
            }
            for place in places
        ]

    def find_pickup_points(self, locality: str, province: str) -> List[Dict[str, Any]]:
        city = self.geocode_city(locality, province)
        if not city or normalize_text(locality) not in normalize_text(city):
            raise NotFound("Could not find the requested city")
        points = self.search_pickup_points(city)
        if not points:
            raise NotFound("No pickup points found in this city")
        return points
