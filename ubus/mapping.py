"""Single-marker map for a bus's latest location."""

from datetime import datetime
from typing import Optional, Tuple

import folium
from pydantic import BaseModel

from ubus.models import Location

DEFAULT_ZOOM = 16
TILES = "OpenStreetMap"
ATTRIBUTION = "&copy; OpenStreetMap contributors"


def format_timestamp(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%I:%M:%S %p")


class MapMarker(BaseModel):
    center: Tuple[float, float]
    zoom: int = DEFAULT_ZOOM
    label: str

    @classmethod
    def for_location(cls, location: Optional[Location]) -> Optional["MapMarker"]:
        if location is None:
            return None
        return cls(
            center=(location.lat, location.lng),
            label=f"Last update: {format_timestamp(location.timestamp)}",
        )


def build_map(location: Location, title: str = "Bus") -> folium.Map:
    marker = MapMarker.for_location(location)
    bus_map = folium.Map(location=list(marker.center), zoom_start=marker.zoom, tiles=TILES, attr=ATTRIBUTION)
    folium.Marker(
        location=list(marker.center),
        popup=folium.Popup(f"<b>{title}</b><br>{marker.label}", max_width=250),
        tooltip=title,
        icon=folium.Icon(color="blue", icon="bus", prefix="fa"),
    ).add_to(bus_map)
    return bus_map


def render_map_html(location: Location, title: str = "Bus") -> str:
    return build_map(location, title).get_root().render()
