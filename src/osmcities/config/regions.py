"""
Administrative Region Registry

Resolves the three region levels of a context from its boundary configs and
municipalities table:

- Level 1 (states): a single ``level-1.conf`` extract config over the country
- Level 2 (microregions): one ``level-2/<stateId>.conf`` per state
- Level 3 (municipalities): one ``level-3/<microregionId>.conf`` per microregion,
  with names, slugs and parent ids taken from the municipalities CSV
"""

import logging
from pathlib import Path

import pandas as pd

from ..domain.enums import RegionLevel
from ..domain.models import AdminRegion, Context

logger = logging.getLogger(__name__)

MUNICIPALITY_COLUMNS = ["id", "slug", "name", "state_id", "microregion_id"]
EXTRACT_SUFFIX = ".osm.pbf"


class RegionRegistry:
    """Lookups over the regions of one context."""

    def __init__(self, context: Context):
        self.context = context
        self._municipalities: dict[str, AdminRegion] | None = None

    def microregion_configs(self) -> dict[str, Path]:
        """Level-2 boundary configs keyed by the state they split."""
        return self._configs_in(self.context.level_2_dir)

    def municipality_configs(self) -> dict[str, Path]:
        """Level-3 boundary configs keyed by the microregion they split."""
        return self._configs_in(self.context.level_3_dir)

    @staticmethod
    def _configs_in(directory: Path) -> dict[str, Path]:
        if not directory.is_dir():
            logger.warning(f"Boundary config directory not found: {directory}")
            return {}
        return {path.stem: path for path in sorted(directory.glob("*.conf"))}

    def municipalities(self) -> list[AdminRegion]:
        """All municipalities of the context, in CSV order."""
        return list(self._load_municipalities().values())

    def _load_municipalities(self) -> dict[str, AdminRegion]:
        if self._municipalities is not None:
            return self._municipalities

        csv_path = self.context.municipalities_file
        if not csv_path.exists():
            raise FileNotFoundError(f"Municipalities file not found: {csv_path}")

        df = pd.read_csv(csv_path, dtype=str, keep_default_na=False)
        missing = [column for column in MUNICIPALITY_COLUMNS if column not in df.columns]
        if missing:
            raise ValueError(f"Municipalities file {csv_path} is missing columns: {missing}")

        duplicated = df["id"][df["id"].duplicated()].tolist()
        if duplicated:
            raise ValueError(f"Duplicate municipality ids in {csv_path}: {duplicated[:5]}")

        level_3_dir = self.context.level_3_dir
        municipalities = {}
        for row in df[MUNICIPALITY_COLUMNS].itertuples(index=False):
            municipalities[row.id] = AdminRegion(
                id=row.id,
                level=RegionLevel.MUNICIPALITY,
                slug=row.slug,
                name=row.name,
                parent_id=row.microregion_id,
                state_id=row.state_id,
                boundary_config=level_3_dir / f"{row.microregion_id}.conf",
            )

        logger.debug(f"Loaded {len(municipalities)} municipalities from {csv_path}")
        self._municipalities = municipalities
        return municipalities
