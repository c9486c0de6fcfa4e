"""
Hierarchical region split of the daily country snapshot.

Three levels run strictly in order, each a complete fan-out with a barrier:

1. states: one osmium extract over the whole country using level-1.conf
2. microregions: one extract per state, reading that state's level-1 output
3. municipalities: one extract per microregion, reading its level-2 output

After each level every output with zero objects is deleted, so the next level
(and dataset extraction) only ever reads non-empty files. A missing parent
file is an expected-empty region and its children are skipped silently.
"""

import logging
from collections.abc import Callable
from contextlib import AbstractContextManager, nullcontext
from pathlib import Path

from ..cleanup import RunWorkspace
from ..config.regions import EXTRACT_SUFFIX, RegionRegistry
from ..domain.enums import FailurePolicy, RegionLevel
from ..osmium import OsmiumTool
from ..utils import remove_file, reset_directory, run_bounded

logger = logging.getLogger(__name__)


class RegionSplitter:
    """Fans a country snapshot out into state, microregion and municipality files."""

    def __init__(
        self,
        osmium: OsmiumTool,
        registry: RegionRegistry,
        workspace: RunWorkspace,
        max_workers: int = 5,
        policy: FailurePolicy = FailurePolicy.STRICT,
    ):
        self.osmium = osmium
        self.registry = registry
        self.workspace = workspace
        self.max_workers = max_workers
        self.policy = policy

    def output_dir(self, level: RegionLevel) -> Path:
        return self.workspace.level_dir(int(level))

    def split(
        self,
        source: Path,
        timed: Callable[[RegionLevel], AbstractContextManager] = lambda level: nullcontext(),
    ) -> list[Path]:
        """
        Run all three levels.

        Args:
            source: Country snapshot cut at the end of the day
            timed: Context manager factory wrapped around each level

        Returns:
            Surviving (non-empty) municipality files
        """
        with timed(RegionLevel.STATE):
            self.split_states(source)
        with timed(RegionLevel.MICROREGION):
            self.split_microregions()
        with timed(RegionLevel.MUNICIPALITY):
            return self.split_municipalities()

    def split_states(self, source: Path) -> list[Path]:
        """Level 1: single extract invocation producing one file per state."""
        output_dir = reset_directory(self.output_dir(RegionLevel.STATE))
        logger.info("Splitting states...")
        self.osmium.extract(self.registry.context.level_1_config, source, output_dir)
        return self.prune_empty(output_dir)

    def split_microregions(self) -> list[Path]:
        """Level 2: one extract per state config, bounded concurrency."""
        logger.info("Splitting microregions...")
        return self._split_level(
            RegionLevel.MICROREGION,
            self.registry.microregion_configs(),
            self.output_dir(RegionLevel.STATE),
        )

    def split_municipalities(self) -> list[Path]:
        """Level 3: one extract per microregion config, bounded concurrency."""
        logger.info("Splitting municipalities...")
        return self._split_level(
            RegionLevel.MUNICIPALITY,
            self.registry.municipality_configs(),
            self.output_dir(RegionLevel.MICROREGION),
        )

    def _split_level(self, level: RegionLevel, configs: dict[str, Path], parent_dir: Path) -> list[Path]:
        output_dir = reset_directory(self.output_dir(level))

        units: dict[str, Callable[[], None]] = {}
        skipped = 0
        for parent_id, config_path in configs.items():
            source = parent_dir / f"{parent_id}{EXTRACT_SUFFIX}"
            if not source.exists():
                skipped += 1
                continue
            units[parent_id] = self._extract_unit(config_path, source, output_dir)

        if skipped:
            logger.info(f"Skipping {skipped} empty parent regions at level {int(level) - 1}")

        run_bounded(f"split-{level.label}", units, self.max_workers, self.policy)
        return self.prune_empty(output_dir)

    def _extract_unit(self, config_path: Path, source: Path, output_dir: Path) -> Callable[[], None]:
        def unit() -> None:
            self.osmium.extract(config_path, source, output_dir)
        return unit

    def prune_empty(self, directory: Path) -> list[Path]:
        """
        Delete every extract in a directory that holds zero objects.

        Returns:
            Surviving files, sorted by name
        """
        files = sorted(directory.glob(f"*{EXTRACT_SUFFIX}"))
        counts = run_bounded(
            f"prune-{directory.name}",
            {path.name: self._count_unit(path) for path in files},
            self.max_workers,
            self.policy,
        )

        survivors = []
        for path in files:
            # Files that could not be counted are untrusted
            if counts.get(path.name, 0) == 0:
                remove_file(path)
            else:
                survivors.append(path)

        pruned = len(files) - len(survivors)
        logger.info(f"{directory.name}: {len(survivors)} regions with data, {pruned} empty pruned")
        return survivors

    def _count_unit(self, path: Path) -> Callable[[], int]:
        return lambda: self.osmium.count_objects(path)
