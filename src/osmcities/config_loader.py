"""
Reference data loading for the OSM for Cities pipeline.

Loads and validates:
- data/datasets.yml (feature categories and their osmium tag filters)
- data/contexts/<name>.yml (target country, boundary configs and output tree)

Returns domain objects for use in CLI commands and the pipeline driver.
"""

from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .config.settings import Config
from .domain.models import Context, Dataset
from .utils import load_yaml_file

DATASETS_FILE = Path(__file__).parent / "data" / "datasets.yml"


def load_datasets(datasets_file: Optional[Path] = None) -> list[Dataset]:
    """
    Load dataset definitions.

    Args:
        datasets_file: YAML mapping of dataset id to ``{name, filter}``
                       (defaults to the packaged data/datasets.yml)

    Returns:
        Datasets in file order

    Raises:
        FileNotFoundError: If the datasets file does not exist
        ValueError: If the file is malformed or defines no datasets
    """
    datasets_file = datasets_file or DATASETS_FILE
    raw = load_yaml_file(datasets_file)

    if not isinstance(raw, dict) or not raw:
        raise ValueError(f"No datasets defined in {datasets_file}")

    datasets = []
    for dataset_id, definition in raw.items():
        if not isinstance(definition, dict):
            raise ValueError(f"Dataset '{dataset_id}' must be a mapping with 'name' and 'filter'")
        try:
            datasets.append(Dataset(
                id=str(dataset_id),
                name=definition.get("name", str(dataset_id)),
                filters=definition.get("filter"),
            ))
        except ValidationError as e:
            raise ValueError(f"Invalid dataset '{dataset_id}': {e}") from e

    return datasets


def preset_filter_expressions(datasets: list[Dataset]) -> list[str]:
    """Union of all dataset filters, de-duplicated, in first-seen order."""
    expressions: list[str] = []
    for dataset in datasets:
        for expression in dataset.filters:
            if expression not in expressions:
                expressions.append(expression)
    return expressions


def list_contexts(config: Config) -> list[str]:
    """Names of the context files available in the contexts directory."""
    contexts_dir = config.paths.contexts_dir
    if not contexts_dir.is_dir():
        return []
    return sorted(path.stem for path in contexts_dir.glob("*.yml"))


def load_context(name: str, config: Config) -> Context:
    """
    Load a context definition by name.

    Relative paths in the context file are resolved against the data directory.

    Raises:
        ValueError: If the context is unknown or invalid
    """
    context_file = config.paths.contexts_dir / f"{name}.yml"
    if not context_file.exists():
        available = list_contexts(config)
        raise ValueError(f"Context '{name}' not found. Available: {available}")

    raw = load_yaml_file(context_file)
    country = raw.get("country") or {}
    data_dir = config.paths.data_dir

    def resolve(value: Optional[str]) -> Optional[Path]:
        if value is None:
            return None
        path = Path(value).expanduser()
        return path if path.is_absolute() else data_dir / path

    try:
        return Context(
            name=raw.get("name", name),
            country_name=country.get("name"),
            country_iso2=country.get("iso2"),
            boundaries_dir=resolve(raw.get("boundaries_dir")),
            municipalities_file=resolve(raw.get("municipalities_file")),
            output_dir=resolve(raw.get("output_dir")),
            git_remote_url=raw.get("git_remote_url"),
        )
    except ValidationError as e:
        raise ValueError(f"Invalid context '{name}' ({context_file}): {e}") from e
