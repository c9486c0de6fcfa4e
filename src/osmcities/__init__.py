"""
OSM for Cities - daily map-edit history extracts.

Keeps a full OpenStreetMap history file current with daily replication diffs
and fans each day out into per-municipality GeoJSON datasets committed to a
git repository, one commit per day.
"""

__version__ = "0.4.0"
