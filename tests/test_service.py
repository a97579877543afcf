"""Tests for run orchestration and task recording."""

from __future__ import annotations

from pathlib import Path

import pytest

from strmsync.errors import GenerationError, MappingNotFoundError, RunCancelled
from strmsync.generator import Generator
from strmsync.models import ContentMode, MappingSpec
from strmsync.pool import CancelToken
from strmsync.service import SyncService
from strmsync.store import TaskRecorder

from conftest import FakeLister, FakeResolver


class StaticMappings:
    """Mapping source with a fixed list, standing in for MappingStore."""

    def __init__(self, *specs: MappingSpec) -> None:
        self.specs = list(specs)

    def list_enabled(self) -> list[MappingSpec]:
        return [s for s in self.specs if s.enabled]

    def get_by_name(self, name: str) -> MappingSpec | None:
        return next((s for s in self.specs if s.name == name), None)


class RoutingLister:
    """Fails for one source root, lists a single file for the others."""

    def __init__(self, failing_root: str = "") -> None:
        self.failing_root = failing_root

    def list_recursive(self, root: str, extensions: list[str]) -> list:
        if root == self.failing_root:
            raise ConnectionError("listing failed")
        return FakeLister([f"{root}/item.mp4"]).list_recursive(root, extensions)


def _spec(tmp_path: Path, name: str, **kw: object) -> MappingSpec:
    return MappingSpec(name=name, source=f"/{name}", target=str(tmp_path / "strm" / name), **kw)  # type: ignore[arg-type]


def _service(tmp_path: Path, lister: object, *specs: MappingSpec) -> SyncService:
    return SyncService(
        Generator(lister, FakeResolver()),  # type: ignore[arg-type]
        StaticMappings(*specs),  # type: ignore[arg-type]
        TaskRecorder(tmp_path / "tasks.json"),
    )


def test_run_mapping_records_completion(tmp_path: Path) -> None:
    spec = _spec(tmp_path, "movies")
    service = _service(tmp_path, RoutingLister(), spec)

    result = service.run_mapping(CancelToken(), spec)

    assert result.created == 1
    (record,) = service.recorder.recent(1)
    assert record.status == "completed"
    assert record.mapping_name == "movies"
    assert record.mode == "incremental"
    assert record.files_created == 1


def test_partial_errors_still_completed(tmp_path: Path) -> None:
    spec = _spec(tmp_path, "movies", content_mode=ContentMode.URL)
    service = SyncService(
        Generator(RoutingLister(), FakeResolver(fail_on=["/movies/item.mp4"])),
        StaticMappings(spec),  # type: ignore[arg-type]
        TaskRecorder(tmp_path / "tasks.json"),
    )

    result = service.run_mapping(CancelToken(), spec)

    assert result.has_errors
    (record,) = service.recorder.recent(1)
    assert record.status == "completed"
    assert "/movies/item.mp4" in record.errors


def test_fatal_error_recorded_and_reraised(tmp_path: Path) -> None:
    spec = _spec(tmp_path, "movies")
    service = _service(tmp_path, RoutingLister(failing_root="/movies"), spec)

    with pytest.raises(GenerationError):
        service.run_mapping(CancelToken(), spec)

    (record,) = service.recorder.recent(1)
    assert record.status == "failed"
    assert "listing failed" in record.errors


def test_cancellation_recorded_separately(tmp_path: Path) -> None:
    spec = _spec(tmp_path, "movies")
    service = _service(tmp_path, RoutingLister(), spec)
    token = CancelToken()
    token.cancel()

    with pytest.raises(RunCancelled):
        service.run_mapping(token, spec)

    (record,) = service.recorder.recent(1)
    assert record.status == "cancelled"


def test_unexpected_error_marks_task_failed(tmp_path: Path) -> None:
    spec = _spec(tmp_path, "movies")
    service = _service(tmp_path, RoutingLister(), spec)

    def broken_display(item: object, outcome: str) -> None:
        raise RuntimeError("progress display gone")

    with pytest.raises(RuntimeError, match="progress display gone"):
        service.run_mapping(CancelToken(), spec, on_item=broken_display)

    (record,) = service.recorder.recent(1)
    assert record.status == "failed"
    assert record.errors == "progress display gone"
    assert record.completed_at


def test_interrupt_marks_task_failed(tmp_path: Path) -> None:
    class InterruptedLister:
        def list_recursive(self, root: str, extensions: list[str]) -> list:
            raise KeyboardInterrupt

    spec = _spec(tmp_path, "movies")
    service = _service(tmp_path, InterruptedLister(), spec)

    with pytest.raises(KeyboardInterrupt):
        service.run_mapping(CancelToken(), spec)

    (record,) = service.recorder.recent(1)
    assert record.status == "failed"
    assert record.errors == "KeyboardInterrupt"


def test_run_by_name(tmp_path: Path) -> None:
    spec = _spec(tmp_path, "movies")
    service = _service(tmp_path, RoutingLister(), spec)
    assert service.run_by_name(CancelToken(), "movies").created == 1


def test_run_by_name_unknown(tmp_path: Path) -> None:
    service = _service(tmp_path, RoutingLister())
    with pytest.raises(MappingNotFoundError):
        service.run_by_name(CancelToken(), "ghost")
    assert service.recorder.recent() == []


def test_run_all_isolates_failures(tmp_path: Path) -> None:
    good = _spec(tmp_path, "good")
    bad = _spec(tmp_path, "bad")
    off = _spec(tmp_path, "off", enabled=False)
    service = _service(tmp_path, RoutingLister(failing_root="/bad"), good, bad, off)

    service.run_all(CancelToken())

    assert (tmp_path / "strm" / "good" / "item.strm").exists()
    assert not (tmp_path / "strm" / "off").exists()
    statuses = {r.mapping_name: r.status for r in service.recorder.recent()}
    assert statuses == {"good": "completed", "bad": "failed"}


def test_run_scheduled_looks_up_current_mapping(tmp_path: Path) -> None:
    mappings = StaticMappings(_spec(tmp_path, "movies"))
    service = SyncService(
        Generator(RoutingLister(), FakeResolver()),
        mappings,  # type: ignore[arg-type]
        TaskRecorder(tmp_path / "tasks.json"),
    )
    # Edit the mapping after the service was built; the run must see it.
    mappings.specs = [MappingSpec(name="movies", source="/movies", target=str(tmp_path / "moved"))]

    service.run_scheduled("movies")
    assert (tmp_path / "moved" / "item.strm").exists()


def test_started_at_is_per_instance(tmp_path: Path) -> None:
    a = _service(tmp_path, RoutingLister())
    b = _service(tmp_path, RoutingLister())
    assert a.started_at <= b.started_at
    assert a.started_at.tzinfo is not None


def test_shutdown_stops_scheduled_run(tmp_path: Path) -> None:
    spec = _spec(tmp_path, "movies")
    service = _service(tmp_path, RoutingLister(), spec)

    class ShutdownDuringListing:
        def list_recursive(self, root: str, extensions: list[str]) -> list:
            service.shutdown_token.cancel()
            return FakeLister([f"{root}/a.mp4", f"{root}/b.mp4"]).list_recursive(root, extensions)

    service.generator.lister = ShutdownDuringListing()

    service.run_scheduled("movies")  # cancellation is logged, not raised

    assert not (tmp_path / "strm" / "movies" / "a.strm").exists()
    assert not (tmp_path / "strm" / "movies" / "b.strm").exists()
    (record,) = service.recorder.recent(1)
    assert record.status == "cancelled"


def test_scheduled_runs_share_shutdown_token(tmp_path: Path) -> None:
    spec = _spec(tmp_path, "movies")
    service = _service(tmp_path, RoutingLister(), spec)
    service.shutdown_token.cancel()

    service.run_scheduled("movies")
    service.run_scheduled("movies")

    assert [r.status for r in service.recorder.recent()] == ["cancelled", "cancelled"]
    assert not (tmp_path / "strm" / "movies" / "item.strm").exists()
