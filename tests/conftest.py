"""
Shared fixtures.

FakeOsmium stands in for the osmium executable: "pbf" files are small JSON
documents holding a list of objects, each tagged with the ids of the regions
it falls in, so extract configs can be honoured without geometry.
"""

import csv
import json
import threading
from datetime import date
from pathlib import Path

import pytest
import requests

from osmcities.config.settings import Config
from osmcities.domain.enums import RegionLevel
from osmcities.domain.models import Context, Dataset
from osmcities.osmium import OsmiumTool
from osmcities.types import ExtractionToolError

REPLICATION_URL = "https://replication.test/day"


def osm_object(obj_id, timestamp, tags=None, regions=(), obj_type="n", version=1, user="mapper", uid=42):
    return {
        "type": obj_type,
        "id": obj_id,
        "version": version,
        "timestamp": timestamp,
        "tags": tags or {},
        "regions": list(regions),
        "lon": -47.9 + obj_id / 1000,
        "lat": -15.8 + obj_id / 1000,
        "user": user,
        "uid": uid,
    }


def write_osm(path: Path, objects: list) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"objects": objects}), encoding="utf-8")
    return path


def read_osm(path: Path) -> list:
    return json.loads(path.read_text(encoding="utf-8"))["objects"]


def _matches(obj: dict, expression: str) -> bool:
    types, _, rule = expression.rpartition("/")
    if types and obj["type"] not in types:
        return False
    key, _, values = rule.partition("=")
    if key not in obj["tags"]:
        return False
    return not values or obj["tags"][key] in values.split(",")


class FakeOsmium(OsmiumTool):
    """JSON-backed stand-in for the osmium command-line tool."""

    def __init__(self, fail_on=(), fail_paths=()):
        super().__init__("osmium-fake")
        self.fail_on = set(fail_on)
        self.fail_paths = {str(p) for p in fail_paths}
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, operation, *paths):
        with self._lock:
            self.calls.append((operation, *[str(p) for p in paths]))
        if operation in self.fail_on or any(str(p) in self.fail_paths for p in paths):
            raise ExtractionToolError(["osmium", operation, *[str(p) for p in paths]], 1, "simulated failure")

    def calls_of(self, operation):
        return [call for call in self.calls if call[0] == operation]

    def file_timestamps(self, path):
        self._record("fileinfo", path)
        stamps = sorted(obj["timestamp"] for obj in read_osm(path))
        return (stamps[0], stamps[-1]) if stamps else (None, None)

    def count_objects(self, path):
        self._record("fileinfo", path)
        return len(read_osm(path))

    def apply_changes(self, source, changes, output):
        self._record("apply-changes", source, changes)
        write_osm(output, read_osm(source) + read_osm(changes))

    def time_filter(self, source, timestamp, output):
        self._record("time-filter", source)
        latest = {}
        for obj in read_osm(source):
            if obj["timestamp"] > timestamp:
                continue
            key = (obj["type"], obj["id"])
            if key not in latest or obj["version"] > latest[key]["version"]:
                latest[key] = obj
        write_osm(output, [obj for obj in latest.values() if obj.get("visible", True)])

    def extract(self, config, source, directory):
        self._record("extract", config, source)
        objects = read_osm(source)
        extracts = json.loads(Path(config).read_text(encoding="utf-8"))["extracts"]
        for extract in extracts:
            region_id = extract["output"][:-len(".osm.pbf")]
            write_osm(Path(directory) / extract["output"],
                      [obj for obj in objects if region_id in obj["regions"]])

    def tags_filter(self, source, expressions, output):
        self._record("tags-filter", source)
        write_osm(output, [obj for obj in read_osm(source)
                           if any(_matches(obj, e) for e in expressions)])

    def export_geojson(self, source, output):
        self._record("export", source)
        features = []
        for obj in read_osm(source):
            features.append({
                "type": "Feature",
                "id": f"{obj['type']}{obj['id']}",
                "geometry": {"type": "Point", "coordinates": [obj["lon"], obj["lat"]]},
                "properties": {
                    **obj["tags"],
                    "@type": {"n": "node", "w": "way", "r": "relation"}[obj["type"]],
                    "@id": obj["id"],
                    "@version": obj["version"],
                    "@timestamp": obj["timestamp"],
                    "@user": obj["user"],
                    "@uid": obj["uid"],
                },
            })
        Path(output).write_text(json.dumps({"type": "FeatureCollection", "features": features}),
                                encoding="utf-8")


class FakeResponse:
    def __init__(self, status_code=200, body=b""):
        self.status_code = status_code
        self.body = body
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        self.closed = True

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i:i + chunk_size]

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    """requests.Session double. Unknown URLs answer 404."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.requested = []

    def add_changes(self, url, objects):
        self.responses[url] = FakeResponse(200, json.dumps({"objects": objects}).encode())

    def get(self, url, stream=False, timeout=None):
        self.requested.append(url)
        response = self.responses.get(url, FakeResponse(404))
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeS3Client:
    """boto3 S3 client double backed by a dict."""

    def __init__(self, objects=None):
        self.objects = dict(objects or {})
        self.uploads = []

    def download_file(self, bucket, key, filename):
        from botocore.exceptions import ClientError
        if key not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        Path(filename).write_bytes(self.objects[key])

    def upload_file(self, filename, bucket, key):
        self.uploads.append(key)
        self.objects[key] = Path(filename).read_bytes()


# State 11 -> microregions 1101, 1102; state 12 -> microregion 1201 (no objects)
REGIONS = {
    RegionLevel.STATE: {"11": None, "12": None},
    RegionLevel.MICROREGION: {"1101": "11", "1102": "11", "1201": "12"},
    RegionLevel.MUNICIPALITY: {"1100015": "1101", "1100023": "1101", "1100031": "1102", "1200013": "1201"},
}

MUNICIPALITIES = [
    {"id": "1100015", "slug": "alta-floresta", "name": "Alta Floresta", "state_id": "11", "microregion_id": "1101"},
    {"id": "1100023", "slug": "ariquemes", "name": "Ariquemes", "state_id": "11", "microregion_id": "1101"},
    {"id": "1100031", "slug": "cabixi", "name": "Cabixi", "state_id": "11", "microregion_id": "1102"},
    {"id": "1200013", "slug": "acrelandia", "name": "Acrelândia", "state_id": "12", "microregion_id": "1201"},
]


def regions_of(municipality_id: str) -> list:
    microregion = REGIONS[RegionLevel.MUNICIPALITY][municipality_id]
    state = REGIONS[RegionLevel.MICROREGION][microregion]
    return [state, microregion, municipality_id]


def _extract_config(path: Path, region_ids) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({
        "extracts": [
            {"output": f"{rid}.osm.pbf", "polygon": {"file_name": f"{rid}.geojson", "file_type": "geojson"}}
            for rid in region_ids
        ]
    }), encoding="utf-8")


@pytest.fixture
def fake_osmium():
    return FakeOsmium()


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def datasets():
    return [
        Dataset(id="health", name="Health", filters=["nwr/amenity=hospital,clinic"]),
        Dataset(id="schools", name="Schools", filters="nwr/amenity=school"),
    ]


@pytest.fixture
def boundaries_dir(tmp_path):
    root = tmp_path / "data" / "contexts" / "test" / "osmium-config"
    _extract_config(root / "level-1.conf", REGIONS[RegionLevel.STATE])
    for state in REGIONS[RegionLevel.STATE]:
        children = [m for m, parent in REGIONS[RegionLevel.MICROREGION].items() if parent == state]
        _extract_config(root / "level-2" / f"{state}.conf", children)
    for microregion in REGIONS[RegionLevel.MICROREGION]:
        children = [m for m, parent in REGIONS[RegionLevel.MUNICIPALITY].items() if parent == microregion]
        _extract_config(root / "level-3" / f"{microregion}.conf", children)
    return root


@pytest.fixture
def municipalities_file(tmp_path):
    path = tmp_path / "data" / "contexts" / "test" / "municipalities.csv"
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=["id", "slug", "name", "state_id", "microregion_id"])
        writer.writeheader()
        writer.writerows(MUNICIPALITIES)
    return path


@pytest.fixture
def context(tmp_path, boundaries_dir, municipalities_file):
    return Context(
        name="test",
        country_name="Brazil",
        country_iso2="BR",
        boundaries_dir=boundaries_dir,
        municipalities_file=municipalities_file,
        output_dir=tmp_path / "data" / "contexts" / "test" / "git",
    )


@pytest.fixture
def contexts_dir(tmp_path):
    path = tmp_path / "contexts"
    path.mkdir()
    (path / "test.yml").write_text(
        "name: test\n"
        "country:\n  name: Brazil\n  iso2: BR\n"
        "boundaries_dir: contexts/test/osmium-config\n"
        "municipalities_file: contexts/test/municipalities.csv\n"
        "output_dir: contexts/test/git\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def env(tmp_path, contexts_dir, monkeypatch):
    """Point every configurable path into tmp_path."""
    data_dir = tmp_path / "data"
    data_dir.mkdir(exist_ok=True)
    values = {
        "OSMCITIES_DATA_DIR": str(data_dir),
        "HISTORY_FILE": str(data_dir / "history" / "presets-history.osh.pbf"),
        "OSMCITIES_TEMP_DIR": str(tmp_path / "temp"),
        "CONTEXTS_DIR": str(contexts_dir),
        "REPLICATION_BASE_URL": REPLICATION_URL,
        "REPLICATION_EPOCH": "2012-09-12",
        "MAX_WORKERS": "3",
    }
    for key in ("CURSOR_FILE", "S3_BUCKET", "FAILURE_POLICY", "ENVIRONMENT"):
        monkeypatch.delenv(key, raising=False)
    for key, value in values.items():
        monkeypatch.setenv(key, value)
    return values


@pytest.fixture
def config(env):
    return Config()


@pytest.fixture
def history_file(config):
    return write_osm(config.paths.history_file, [
        osm_object(1, "2019-12-30T08:00:00Z", {"amenity": "hospital"}, regions_of("1100015")),
        osm_object(2, "2020-01-01T12:00:00Z", {"amenity": "school"}, regions_of("1100031")),
    ])


def day(value: str) -> date:
    return date.fromisoformat(value)
