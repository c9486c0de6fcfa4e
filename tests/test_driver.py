import json
import shutil
import subprocess
from datetime import date

import pytest

from conftest import (
    REPLICATION_URL,
    FakeOsmium,
    FakeS3Client,
    FakeSession,
    osm_object,
    read_osm,
    regions_of,
    write_osm,
)
from osmcities.config.settings import StorageConfig
from osmcities.domain.enums import RunOutcome
from osmcities.domain.models import RunOptions
from osmcities.pipeline.driver import PipelineDriver
from osmcities.replication.clock import changefile_path, sequence_for_day
from osmcities.storage import ObjectStorage
from osmcities.types import CommitError, ExtractionToolError, FanOutError, PipelineError, SnapshotMissingError

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")


def diff_url(day: date) -> str:
    return f"{REPLICATION_URL}/{changefile_path(sequence_for_day(day))}"


def fixed_today(value: str):
    return lambda: date.fromisoformat(value)


def make_driver(config, session, today, osmium=None, **kwargs):
    options = RunOptions(**kwargs.pop("options", {}))
    return PipelineDriver(config, options, osmium=osmium or FakeOsmium(), session=session,
                          today=fixed_today(today), **kwargs)


class TestReplicationLoop:
    def test_up_to_date_does_nothing(self, config, history_file, fake_session):
        before = history_file.read_bytes()
        report = make_driver(config, fake_session, "2020-01-02").run()

        assert report.outcome == RunOutcome.UP_TO_DATE
        assert report.days_applied == []
        assert fake_session.requested == []
        assert history_file.read_bytes() == before

    def test_single_step_applies_one_day(self, config, history_file, fake_session, tmp_path):
        fake_session.add_changes(diff_url(date(2020, 1, 2)), [
            osm_object(3, "2020-01-02T09:00:00Z", {"amenity": "clinic"}),
        ])
        fake_session.add_changes(diff_url(date(2020, 1, 3)), [])

        report = make_driver(config, fake_session, "2020-01-10").run()

        assert report.outcome == RunOutcome.DONE
        assert report.days_applied == [date(2020, 1, 2)]
        assert fake_session.requested == [diff_url(date(2020, 1, 2))]
        assert [obj["id"] for obj in read_osm(history_file)] == [1, 2, 3]

        cursor = json.loads(config.paths.cursor_file.read_text())
        assert cursor["lastAppliedDay"] == "2020-01-02"
        assert cursor["elements"]["lastTimestamp"] == "2020-01-02T09:00:00Z"
        assert not list((tmp_path / "temp").glob("run_*"))

    def test_recursive_until_up_to_date(self, config, history_file, fake_session):
        fake_session.add_changes(diff_url(date(2020, 1, 2)), [osm_object(3, "2020-01-02T09:00:00Z")])
        fake_session.add_changes(diff_url(date(2020, 1, 3)), [osm_object(4, "2020-01-03T09:00:00Z")])

        report = make_driver(config, fake_session, "2020-01-04", options={"recursive": True}).run()

        assert report.outcome == RunOutcome.UP_TO_DATE
        assert report.days_applied == [date(2020, 1, 2), date(2020, 1, 3)]
        assert len(fake_session.requested) == 2

        # A second run is a no-op
        rerun = make_driver(config, fake_session, "2020-01-04", options={"recursive": True}).run()
        assert rerun.outcome == RunOutcome.UP_TO_DATE
        assert len(fake_session.requested) == 2

    def test_recursive_stops_when_diff_not_published(self, config, history_file, fake_session):
        fake_session.add_changes(diff_url(date(2020, 1, 2)), [osm_object(3, "2020-01-02T09:00:00Z")])

        report = make_driver(config, fake_session, "2020-01-05", options={"recursive": True}).run()

        assert report.outcome == RunOutcome.NOT_AVAILABLE
        assert report.days_applied == [date(2020, 1, 2)]
        assert report.stopped_at == date(2020, 1, 3)
        assert not report.suspected_gap

    def test_not_available_leaves_cursor_untouched(self, config, history_file, fake_session):
        config.paths.cursor_file.write_text(json.dumps(
            {"elements": {"lastTimestamp": "2020-01-01T12:00:00Z"}, "source": "seed"}
        ))
        before = config.paths.cursor_file.read_bytes()

        report = make_driver(config, fake_session, "2020-01-04").run()

        assert report.outcome == RunOutcome.NOT_AVAILABLE
        assert config.paths.cursor_file.read_bytes() == before

    def test_old_missing_diff_is_reported_as_gap(self, config, history_file, fake_session):
        report = make_driver(config, fake_session, "2020-03-01").run()

        assert report.outcome == RunOutcome.NOT_AVAILABLE
        assert report.suspected_gap

    def test_max_days(self, config, history_file, fake_session):
        for day in (2, 3, 4):
            fake_session.add_changes(diff_url(date(2020, 1, day)), [])

        report = make_driver(config, fake_session, "2020-02-01",
                             options={"recursive": True, "max_days": 2}).run()

        assert report.outcome == RunOutcome.DONE
        assert report.days_applied == [date(2020, 1, 2), date(2020, 1, 3)]

    def test_cursor_before_epoch_fetches_first_diff(self, config, fake_session):
        write_osm(config.paths.history_file, [osm_object(1, "2012-09-10T10:00:00Z")])

        report = make_driver(config, fake_session, "2020-01-01").run()

        assert report.outcome == RunOutcome.NOT_AVAILABLE
        assert fake_session.requested == [f"{REPLICATION_URL}/000/000/001.osc.gz"]

    def test_missing_snapshot_is_fatal(self, config, fake_session):
        with pytest.raises(SnapshotMissingError):
            make_driver(config, fake_session, "2020-01-04").run()
        assert fake_session.requested == []

    def test_apply_failure_keeps_state(self, config, history_file, fake_session):
        fake_session.add_changes(diff_url(date(2020, 1, 2)), [osm_object(3, "2020-01-02T09:00:00Z")])
        driver = make_driver(config, fake_session, "2020-01-04")
        driver.cursor_store.load_or_init(history_file)
        snapshot_before = history_file.read_bytes()
        cursor_before = config.paths.cursor_file.read_bytes()

        driver.osmium.fail_on.add("apply-changes")
        with pytest.raises(ExtractionToolError):
            driver.run()

        assert history_file.read_bytes() == snapshot_before
        assert config.paths.cursor_file.read_bytes() == cursor_before

    def test_prefilter_uses_dataset_filters(self, config, history_file, fake_session, datasets):
        fake_session.add_changes(diff_url(date(2020, 1, 2)), [
            osm_object(3, "2020-01-02T09:00:00Z", {"highway": "residential"}),
        ])

        make_driver(config, fake_session, "2020-01-04", datasets=datasets,
                    options={"prefilter": True}).run()

        assert [obj["id"] for obj in read_osm(history_file)] == [1, 2]

    def test_object_storage_download_once_upload_each_day(self, config, history_file, fake_session):
        client = FakeS3Client({
            "presets-history.osh.pbf": history_file.read_bytes(),
            "presets-history.osh.pbf.json": json.dumps(
                {"elements": {"lastTimestamp": "2020-01-01T12:00:00Z"}}).encode(),
        })
        storage = ObjectStorage(StorageConfig(bucket="osm-history"), client=client)
        fake_session.add_changes(diff_url(date(2020, 1, 2)), [])
        fake_session.add_changes(diff_url(date(2020, 1, 3)), [])

        report = make_driver(config, fake_session, "2020-01-04", storage=storage,
                             options={"recursive": True, "use_s3": True}).run()

        assert len(report.days_applied) == 2
        assert client.uploads == ["presets-history.osh.pbf", "presets-history.osh.pbf.json"] * 2
        stored_cursor = json.loads(client.objects["presets-history.osh.pbf.json"])
        assert stored_cursor["lastAppliedDay"] == "2020-01-03"

    def test_extraction_up_to_date_does_nothing(self, config, history_file, fake_session, context, datasets):
        config.paths.cursor_file.write_text(json.dumps(
            {"elements": {"lastTimestamp": "2020-01-01T12:00:00Z"}, "lastAppliedDay": "2020-01-01"}
        ))
        osmium = FakeOsmium()

        report = make_driver(config, fake_session, "2020-01-02", osmium=osmium, context=context,
                             datasets=datasets, options={"extract": True}).run()

        assert report.outcome == RunOutcome.UP_TO_DATE
        assert report.commits == []
        assert osmium.calls == []
        assert fake_session.requested == []
        assert not (context.output_dir / "git-stats.json").exists()
        assert not (context.output_dir / ".git").exists()

    def test_extract_requires_context(self, config, fake_session, datasets):
        with pytest.raises(PipelineError):
            make_driver(config, fake_session, "2020-01-04", datasets=datasets, options={"extract": True})


@requires_git
class TestDailyExtraction:
    @pytest.fixture
    def extraction_driver(self, config, history_file, fake_session, context, datasets):
        def build(today="2020-01-03", **options):
            return make_driver(config, fake_session, today, context=context, datasets=datasets,
                               options={"extract": True, **options})
        return build

    def git_log(self, repo):
        return subprocess.run(["git", "log", "--format=%s"], cwd=repo, capture_output=True,
                              text=True, check=True).stdout.strip().split("\n")

    def test_full_day(self, extraction_driver, fake_session, context):
        fake_session.add_changes(diff_url(date(2020, 1, 2)), [
            osm_object(5, "2020-01-02T10:00:00Z", {"amenity": "hospital"}, regions_of("1100031")),
            # Edited after the end of the day: not part of this day's state
            osm_object(6, "2020-01-03T01:00:00Z", {"amenity": "hospital"}, regions_of("1100023")),
        ])

        report = extraction_driver().run()

        out = context.output_dir
        assert report.outcome == RunOutcome.DONE
        assert len(report.commits) == 1
        assert (out / "11" / "alta-floresta" / "health.geojson").exists()
        assert (out / "11" / "cabixi" / "health.geojson").exists()
        assert (out / "11" / "cabixi" / "schools.geojson").exists()
        assert not (out / "11" / "ariquemes").exists()
        assert not (out / "12").exists()

        stats = json.loads((out / "git-stats.json").read_text())
        assert [record["updatedAt"] for record in stats] == ["2020-01-02"]
        assert self.git_log(out) == ["Status of 2020-01-02T00:00:00Z"]

    def test_recursive_commits_one_per_day(self, extraction_driver, fake_session, context):
        fake_session.add_changes(diff_url(date(2020, 1, 2)), [])
        fake_session.add_changes(diff_url(date(2020, 1, 3)), [
            osm_object(2, "2020-01-03T08:00:00Z", {"amenity": "school"}, regions_of("1100031"),
                       version=2, user="other"),
        ])

        report = extraction_driver(today="2020-01-04", recursive=True).run()

        assert report.outcome == RunOutcome.UP_TO_DATE
        assert len(report.commits) == 2
        assert self.git_log(context.output_dir) == [
            "Status of 2020-01-03T00:00:00Z",
            "Status of 2020-01-02T00:00:00Z",
        ]

    def test_failed_extraction_does_not_advance(self, extraction_driver, fake_session, context,
                                                config, history_file):
        fake_session.add_changes(diff_url(date(2020, 1, 2)), [osm_object(5, "2020-01-02T10:00:00Z")])
        driver = extraction_driver()
        driver.cursor_store.load_or_init(history_file)
        snapshot_before = history_file.read_bytes()
        cursor_before = config.paths.cursor_file.read_bytes()
        driver.osmium.fail_on.add("tags-filter")

        with pytest.raises(FanOutError):
            driver.run()

        assert history_file.read_bytes() == snapshot_before
        assert config.paths.cursor_file.read_bytes() == cursor_before
        assert not (context.output_dir / ".git").exists()
        assert not list(history_file.parent.glob(".*"))

    def test_processed_day_is_not_committed_twice(self, extraction_driver, fake_session, context):
        context.output_dir.mkdir(parents=True)
        (context.output_dir / "git-stats.json").write_text(json.dumps([{"updatedAt": "2020-01-02"}]))
        fake_session.add_changes(diff_url(date(2020, 1, 2)), [])

        driver = extraction_driver()
        report = driver.run()

        assert report.days_applied == [date(2020, 1, 2)]
        assert report.commits == []
        assert driver.osmium.calls_of("time-filter") == []

    def test_empty_day_still_commits(self, config, extraction_driver, fake_session, context):
        write_osm(config.paths.history_file, [osm_object(1, "2020-01-05T00:00:00Z", {"amenity": "school"})])
        config.paths.cursor_file.write_text(json.dumps(
            {"elements": {"lastTimestamp": "2020-01-05T00:00:00Z"}, "lastAppliedDay": "2020-01-01"}
        ))
        fake_session.add_changes(diff_url(date(2020, 1, 2)), [])

        driver = extraction_driver()
        report = driver.run()

        assert len(report.commits) == 1
        assert driver.osmium.calls_of("extract") == []
        stats = json.loads((context.output_dir / "git-stats.json").read_text())
        assert stats[0]["updatedAt"] == "2020-01-02"

    def test_failed_commit_is_retried_next_run(self, extraction_driver, fake_session, context,
                                               monkeypatch):
        fake_session.add_changes(diff_url(date(2020, 1, 2)), [
            osm_object(5, "2020-01-02T10:00:00Z", {"amenity": "hospital"}, regions_of("1100031")),
        ])
        driver = extraction_driver()

        def reject(day):
            raise CommitError(f"commit of {day.isoformat()} rejected")

        monkeypatch.setattr(driver.committer, "commit_day", reject)
        with pytest.raises(CommitError):
            driver.run()
        assert json.loads((context.output_dir / "git-stats.json").read_text()) == []

        report = extraction_driver().run()

        assert report.days_applied == [date(2020, 1, 2)]
        assert len(report.commits) == 1
        assert self.git_log(context.output_dir) == ["Status of 2020-01-02T00:00:00Z"]
        stats = json.loads((context.output_dir / "git-stats.json").read_text())
        assert [record["updatedAt"] for record in stats] == ["2020-01-02"]

    def test_failed_push_is_retried_without_new_commit(self, config, fake_session, context, datasets,
                                                       history_file, monkeypatch):
        context = context.model_copy(update={"git_remote_url": "https://git.test/output.git"})
        fake_session.add_changes(diff_url(date(2020, 1, 2)), [])

        def build():
            return make_driver(config, fake_session, "2020-01-03", context=context, datasets=datasets,
                               options={"extract": True, "push": True})

        driver = build()

        def unreachable(remote_url):
            raise CommitError(f"cannot reach {remote_url}")

        monkeypatch.setattr(driver.committer, "push", unreachable)
        with pytest.raises(CommitError):
            driver.run()
        assert self.git_log(context.output_dir) == ["Status of 2020-01-02T00:00:00Z"]

        driver = build()
        pushed = []
        monkeypatch.setattr(driver.committer, "push", pushed.append)
        report = driver.run()

        assert pushed == ["https://git.test/output.git"]
        assert report.days_applied == [date(2020, 1, 2)]
        assert report.commits == []
        assert self.git_log(context.output_dir) == ["Status of 2020-01-02T00:00:00Z"]
