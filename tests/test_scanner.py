"""Tests for the batch/background scanner."""
import asyncio

import numpy as np
import pytest

from evidence_guard.errors import ScanInProgressError
from evidence_guard.results import EvidenceFile, ScanStatus
from evidence_guard.scanner import BackgroundScanner, DirectoryFileSource, StaticFileSource

from conftest import png_bytes


def image_file(i):
    return EvidenceFile(f"img-{i}", kind="image", data=np.full((32, 32, 3), i, dtype=np.uint8))


def text_file(i, text):
    return EvidenceFile(f"txt-{i}", kind="text", data=text)


class RecordingSink:
    def __init__(self):
        self.records = []

    async def record(self, decision, file):
        self.records.append((decision, file))


class FailingSource:
    async def list_files(self):
        raise PermissionError("gallery access denied")


@pytest.fixture
def files():
    return [
        image_file(1),
        text_file(2, "see you at dinner"),
        text_file(3, "so horny, send nudes"),
        image_file(4),
        EvidenceFile("broken", kind="image", data=b"not an image"),
    ]


@pytest.mark.asyncio
async def test_scan_completes_and_sorts_results(make_filter, files):
    sink = RecordingSink()
    scanner = BackgroundScanner(make_filter(), sink=sink)
    events = []
    scanner.subscribe(lambda event, session: events.append((event, session.processed_files)))

    session = await scanner.start(StaticFileSource(files), batch_size=2)

    assert session.status is ScanStatus.COMPLETED
    assert session.total_files == 5
    assert session.processed_files == 5
    assert session.progress_percent == 100.0
    assert {e.file.file_id for e in session.approved} == {"img-1", "txt-2", "img-4"}
    assert {e.file.file_id for e in session.rejected} == {"txt-3", "broken"}
    assert [f.file_id for _, f in sink.records] == [e.file.file_id for e in session.approved]
    assert [e for e, _ in events] == [
        "scanStarted",
        "scanProgress",
        "scanProgress",
        "scanProgress",
        "scanCompleted",
    ]
    assert [n for e, n in events if e == "scanProgress"] == [2, 4, 5]


@pytest.mark.asyncio
async def test_hard_failure_only_rejects_that_file(make_filter, files):
    scanner = BackgroundScanner(make_filter())
    session = await scanner.start(StaticFileSource(files), batch_size=5)
    broken = [e for e in session.rejected if e.file.file_id == "broken"][0]
    assert broken.decision.approved is False
    assert broken.decision.reasoning.startswith("Error: ")
    assert session.status is ScanStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancel_between_batches(make_filter, files):
    scanner = BackgroundScanner(make_filter())
    events = []

    def on_event(event, session):
        events.append(event)
        if event == "scanProgress":
            scanner.cancel()

    scanner.subscribe(on_event)
    session = await scanner.start(StaticFileSource(files), batch_size=2)

    assert session.status is ScanStatus.CANCELLED
    assert session.processed_files == 2
    assert len(session.approved) + len(session.rejected) == 2
    assert session.total_files - session.processed_files == 3
    assert events[-1] == "scanCancelled"


@pytest.mark.asyncio
async def test_pause_and_resume(make_filter, files):
    scanner = BackgroundScanner(make_filter())

    def pause_once(event, session):
        if event == "scanProgress" and session.processed_files == 2:
            scanner.pause()

    scanner.subscribe(pause_once)
    task = scanner.launch(StaticFileSource(files), batch_size=2)
    for _ in range(100):
        if scanner.session.paused:
            break
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.05)
    assert scanner.get_session().processed_files == 2
    assert scanner.resume() is True
    session = await task
    assert session.status is ScanStatus.COMPLETED
    assert session.processed_files == 5


@pytest.mark.asyncio
async def test_second_start_while_scanning(make_filter, files):
    scanner = BackgroundScanner(make_filter())
    task = scanner.launch(StaticFileSource(files), batch_size=1)
    with pytest.raises(ScanInProgressError):
        await scanner.start(StaticFileSource(files))
    await task


@pytest.mark.asyncio
async def test_source_failure_sets_error(make_filter):
    scanner = BackgroundScanner(make_filter())
    events = []
    scanner.subscribe(lambda event, session: events.append(event))
    session = await scanner.start(FailingSource())
    assert session.status is ScanStatus.ERROR
    assert "gallery access denied" in session.error
    assert events == ["scanStarted", "scanError"]


@pytest.mark.asyncio
async def test_empty_source_completes(make_filter):
    scanner = BackgroundScanner(make_filter())
    session = await scanner.start(StaticFileSource([]))
    assert session.status is ScanStatus.COMPLETED
    assert session.progress_percent == 100.0


@pytest.mark.asyncio
async def test_observer_errors_do_not_stop_scan(make_filter, files):
    scanner = BackgroundScanner(make_filter())

    def broken(event, session):
        raise RuntimeError("ui went away")

    scanner.subscribe(broken)
    session = await scanner.start(StaticFileSource(files))
    assert session.status is ScanStatus.COMPLETED
    scanner.unsubscribe(broken)
    assert scanner._observers == []


@pytest.mark.asyncio
async def test_background_rescan(make_filter, files):
    scanner = BackgroundScanner(
        make_filter({"background_scanning": True, "scan_interval_ms": 10})
    )
    started = []

    async def on_event(event, session):
        if event == "scanStarted":
            started.append(event)

    scanner.subscribe(on_event)
    await scanner.start(StaticFileSource(files[:2]))
    for _ in range(100):
        if len(started) >= 2:
            break
        await asyncio.sleep(0.01)
    scanner.stop_auto_scan()
    await scanner.close()
    assert len(started) >= 2


@pytest.mark.asyncio
async def test_directory_source(tmp_path):
    (tmp_path / "a" / "b" / "c" / "d").mkdir(parents=True)
    (tmp_path / "top.png").write_bytes(png_bytes())
    (tmp_path / "notes.txt").write_text("hello", encoding="utf-8")
    (tmp_path / "ignored.pdf").write_bytes(b"%PDF")
    (tmp_path / "a" / "b" / "c" / "deep.jpg").write_bytes(png_bytes())
    (tmp_path / "a" / "b" / "c" / "d" / "too_deep.png").write_bytes(png_bytes())

    found = await DirectoryFileSource(str(tmp_path), max_depth=3).list_files()
    ids = sorted(f.file_id.replace("\\", "/") for f in found)
    assert ids == ["a/b/c/deep.jpg", "notes.txt", "top.png"]
    kinds = {f.file_id: f.kind for f in found}
    assert kinds["notes.txt"] == "text"


@pytest.mark.asyncio
async def test_directory_source_caps_files(tmp_path):
    for i in range(5):
        (tmp_path / f"{i}.png").write_bytes(png_bytes())
    found = await DirectoryFileSource(str(tmp_path), max_files=3).list_files()
    assert len(found) == 3


@pytest.mark.asyncio
async def test_missing_directory_is_a_scan_error(make_filter, tmp_path):
    scanner = BackgroundScanner(make_filter())
    session = await scanner.start(DirectoryFileSource(str(tmp_path / "nope")))
    assert session.status is ScanStatus.ERROR
