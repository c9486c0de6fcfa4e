"""
Pipeline Domain Models

Pydantic models for the reference data (datasets, regions, contexts) and the
persisted state (replication cursor, stats records) of the pipeline.
"""

from datetime import date
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .enums import RegionLevel


class Dataset(BaseModel):
    """A named feature category defined by osmium tag-filter expressions."""
    id: str = Field(..., description="Dataset identifier, used as output file name")
    name: str = Field(..., description="Human-readable dataset name")
    filters: list[str] = Field(..., min_length=1, description="osmium tags-filter expressions")

    model_config = ConfigDict(frozen=True)

    @field_validator("filters", mode="before")
    @classmethod
    def _coerce_filters(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        if not value or "/" in value or value.startswith("."):
            raise ValueError(f"Invalid dataset id: {value!r}")
        return value


class AdminRegion(BaseModel):
    """A spatial partition at one of the three administrative levels."""
    id: str = Field(..., description="Region identifier, also the extract file stem")
    level: RegionLevel
    slug: Optional[str] = Field(None, description="URL-safe name (municipalities)")
    name: Optional[str] = None
    parent_id: Optional[str] = Field(None, description="Enclosing region at the previous level")
    state_id: Optional[str] = Field(None, description="Level-1 ancestor")
    boundary_config: Optional[Path] = Field(None, description="osmium extract config producing this region")

    model_config = ConfigDict(frozen=True)

    @property
    def file_name(self) -> str:
        return f"{self.id}.osm.pbf"


class Context(BaseModel):
    """Target country and locations of its boundary configs and output tree."""
    name: str
    country_name: str
    country_iso2: str = Field(..., min_length=2, max_length=2)
    boundaries_dir: Path = Field(..., description="Holds level-1.conf, level-2/ and level-3/")
    municipalities_file: Path
    output_dir: Path = Field(..., description="Git working tree receiving GeoJSON datasets")
    git_remote_url: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def level_1_config(self) -> Path:
        return self.boundaries_dir / "level-1.conf"

    @property
    def level_2_dir(self) -> Path:
        return self.boundaries_dir / "level-2"

    @property
    def level_3_dir(self) -> Path:
        return self.boundaries_dir / "level-3"


class CursorElements(BaseModel):
    """Embedded first/last object timestamps of a history snapshot."""
    first_timestamp: Optional[str] = None
    last_timestamp: str

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Cursor(BaseModel):
    """
    Persisted replication progress of the history snapshot.

    Serialized as ``{"elements": {"firstTimestamp", "lastTimestamp"}, ...extra}``.
    Unknown keys are kept and written back untouched.
    """
    elements: CursorElements
    last_applied_day: Optional[date] = Field(
        None, description="Last daily diff applied by the pipeline"
    )

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    @property
    def last_applied(self) -> date:
        """Day of the most recent edit covered by the snapshot."""
        if self.last_applied_day is not None:
            return self.last_applied_day
        return date.fromisoformat(self.elements.last_timestamp[:10])

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StatsRecord(BaseModel):
    """One processed day: stage durations and resulting output size."""
    updated_at: date
    output_size_kb: int = 0
    task_duration_ms: int = 0
    filtering_duration_ms: int = 0
    split_states_duration_ms: int = 0
    split_microregions_duration_ms: int = 0
    split_municipalities_duration_ms: int = 0
    datasets_duration_ms: int = 0

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class RunOptions(BaseModel):
    """Runtime flags for one pipeline invocation."""
    recursive: bool = Field(default=False, description="Keep going until up to date")
    extract: bool = Field(default=False, description="Split regions and extract datasets")
    prefilter: bool = Field(default=False, description="Reduce history to dataset tags after each diff")
    use_s3: bool = Field(default=False, description="Seed and persist snapshot via object storage")
    push: bool = Field(default=False, description="Push the output repository after each commit")
    max_days: Optional[int] = Field(None, ge=1, description="Stop after this many days")
