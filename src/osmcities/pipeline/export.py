"""
GeoJSON conversion of filtered OSM extracts.

osmium exports the scratch file to raw GeoJSON; features are loaded into a
GeoDataFrame to drop empty geometries and missing tag values, then written
as a pretty-printed FeatureCollection. Identifying properties of the last
editor are removed from every feature before anything touches the output
tree, without exception.
"""

import json
import logging
from pathlib import Path
from typing import Any

import geopandas as gpd
from shapely.validation import make_valid

from ..osmium import OsmiumTool
from ..utils import remove_file, write_json_atomic

logger = logging.getLogger(__name__)

IDENTIFYING_PROPERTIES = frozenset({"user", "uid", "@user", "@uid"})


def strip_identifying_properties(feature: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of a feature without user-identifying properties."""
    properties = {
        key: value
        for key, value in (feature.get("properties") or {}).items()
        if key not in IDENTIFYING_PROPERTIES
    }
    # osmtogeojson-style nested metadata
    if isinstance(properties.get("meta"), dict):
        properties["meta"] = {
            key: value for key, value in properties["meta"].items()
            if key not in IDENTIFYING_PROPERTIES
        }
    return {**feature, "properties": properties}


class GeoJSONExporter:
    """Converts OSM extracts to sanitized GeoJSON files."""

    def __init__(self, osmium: OsmiumTool):
        self.osmium = osmium

    def to_geodataframe(self, raw_geojson: Path) -> gpd.GeoDataFrame:
        """Load osmium's GeoJSON output, dropping features without geometry."""
        with open(raw_geojson, encoding='utf-8') as f:
            features = json.load(f).get("features", [])

        if not features:
            return gpd.GeoDataFrame(geometry=[], crs="EPSG:4326")

        gdf = gpd.GeoDataFrame.from_features(features, crs="EPSG:4326")
        gdf.index = [feature.get("id", i) for i, feature in enumerate(features)]
        gdf = gdf[gdf.geometry.notna() & ~gdf.geometry.is_empty].copy()

        invalid_mask = ~gdf.geometry.is_valid
        if invalid_mask.any():
            logger.warning(f"Repairing {invalid_mask.sum()} invalid geometries in {raw_geojson.name}")
            gdf.loc[invalid_mask, "geometry"] = gdf.loc[invalid_mask, "geometry"].apply(make_valid)
            gdf = gdf[~gdf.geometry.is_empty]

        return gdf

    def export(self, source: Path, output_path: Path) -> int:
        """
        Convert one OSM file and write it as sanitized GeoJSON.

        Args:
            source: Filtered OSM extract
            output_path: Destination .geojson file

        Returns:
            Number of features written; nothing is written when zero
        """
        raw_geojson = source.with_name(f"{source.name}.geojson")
        try:
            self.osmium.export_geojson(source, raw_geojson)
            gdf = self.to_geodataframe(raw_geojson)
        finally:
            remove_file(raw_geojson)

        if gdf.empty:
            logger.debug(f"No features with geometry in {source.name}")
            return 0

        features = json.loads(gdf.to_json(na="drop"))["features"]
        collection = {
            "type": "FeatureCollection",
            "features": [strip_identifying_properties(feature) for feature in features],
        }
        write_json_atomic(output_path, collection)
        return len(collection["features"])
