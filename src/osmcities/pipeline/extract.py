"""
Per-municipality dataset extraction.

Each surviving municipality file is one unit of bounded-concurrency work; the
datasets of one municipality run sequentially inside that unit. Results land
in ``<output>/<stateId>/<municipalitySlug>/<datasetId>.geojson`` and empty
results leave no file behind.
"""

import logging
import shutil
from collections.abc import Callable, Iterable
from pathlib import Path

from ..cleanup import RunWorkspace
from ..config.regions import RegionRegistry
from ..domain.enums import FailurePolicy, RegionLevel
from ..domain.models import AdminRegion, Dataset
from ..osmium import OsmiumTool
from ..utils import ensure_directory, remove_file, reset_directory, run_bounded
from .export import GeoJSONExporter

logger = logging.getLogger(__name__)

GEOJSON_SUFFIX = ".geojson"


def reset_output_tree(output_dir: Path, keep: Iterable[str] = ()) -> None:
    """
    Remove previously extracted region directories from the output tree.

    Hidden entries (``.git``) and the names in ``keep`` survive.
    """
    ensure_directory(output_dir)
    keep = set(keep)
    for entry in output_dir.iterdir():
        if entry.name.startswith(".") or entry.name in keep:
            continue
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


class DatasetExtractor:
    """Filters municipality snapshots into per-dataset GeoJSON files."""

    def __init__(
        self,
        osmium: OsmiumTool,
        registry: RegionRegistry,
        workspace: RunWorkspace,
        datasets: list[Dataset],
        output_dir: Path,
        max_workers: int = 5,
        policy: FailurePolicy = FailurePolicy.STRICT,
    ):
        self.osmium = osmium
        self.exporter = GeoJSONExporter(osmium)
        self.registry = registry
        self.workspace = workspace
        self.datasets = datasets
        self.output_dir = output_dir
        self.max_workers = max_workers
        self.policy = policy

    def municipality_file(self, municipality: AdminRegion) -> Path:
        return self.workspace.level_dir(int(RegionLevel.MUNICIPALITY)) / municipality.file_name

    def output_path(self, municipality: AdminRegion, dataset: Dataset) -> Path:
        return self.output_dir / municipality.state_id / municipality.slug / f"{dataset.id}{GEOJSON_SUFFIX}"

    def extract_all(self) -> dict[str, list[Path]]:
        """
        Extract every dataset for every municipality with data.

        Returns:
            Written files keyed by municipality id (municipalities with no
            output are omitted)
        """
        reset_directory(self.workspace.datasets_dir)

        units: dict[str, Callable[[], list[Path]]] = {}
        for municipality in self.registry.municipalities():
            if self.municipality_file(municipality).exists():
                units[municipality.id] = self._unit(municipality)

        logger.info(f"Extracting {len(self.datasets)} datasets for {len(units)} municipalities...")
        results = run_bounded("datasets", units, self.max_workers, self.policy)

        written = {mid: paths for mid, paths in results.items() if paths}
        total = sum(len(paths) for paths in written.values())
        logger.info(f"Wrote {total} GeoJSON files for {len(written)} municipalities")
        return written

    def _unit(self, municipality: AdminRegion) -> Callable[[], list[Path]]:
        return lambda: self.extract_municipality(municipality)

    def extract_municipality(self, municipality: AdminRegion) -> list[Path]:
        """
        Run all datasets against one municipality file.

        A municipality without a file (pruned as empty, or never produced)
        yields no output and is not an error.
        """
        source = self.municipality_file(municipality)
        if not source.exists():
            logger.debug(f"No data for municipality {municipality.id}, skipping")
            return []

        written = []
        for dataset in self.datasets:
            scratch = self.workspace.datasets_dir / f"{municipality.id}-{dataset.id}.osm.pbf"
            try:
                self.osmium.tags_filter(source, dataset.filters, scratch)
                if self.osmium.is_empty(scratch):
                    continue

                target = self.output_path(municipality, dataset)
                if self.exporter.export(scratch, target) > 0:
                    written.append(target)
            finally:
                remove_file(scratch)

        return written
