"""Batch and background scanning of evidence files.

The scanner pulls the candidate list from a ``FileSource`` once, filters the
files in batches of ``batch_size`` (all files of a batch concurrently) and
publishes a ``ScanSession`` snapshot to its subscribers after every batch.
Cancellation and pausing are cooperative: they take effect between batches,
so files of the batch in flight always finish.

Events: ``scanStarted``, ``scanProgress``, ``scanCompleted``,
``scanCancelled`` and ``scanError``.
"""

from __future__ import annotations
import asyncio
import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from .config import DEFAULT_CONFIG
from .errors import ScanInProgressError
from .metrics import record_scanned_file
from .pipeline import EvidenceFilter
from .results import EvidenceFile, FilterDecision, ScanEntry, ScanSession, ScanStatus

SCAN_STARTED = "scanStarted"
SCAN_PROGRESS = "scanProgress"
SCAN_COMPLETED = "scanCompleted"
SCAN_CANCELLED = "scanCancelled"
SCAN_ERROR = "scanError"

Observer = Callable[[str, ScanSession], Any]


class FileSource(Protocol):
    async def list_files(self) -> List[EvidenceFile]:
        ...


class EvidenceSink(Protocol):
    """Downstream store receiving every approved decision."""

    async def record(self, decision: FilterDecision, file: EvidenceFile) -> None:
        ...


class StaticFileSource:
    """A ``FileSource`` over a fixed list of files."""

    def __init__(self, files: Sequence[EvidenceFile]):
        self.files = list(files)

    async def list_files(self) -> List[EvidenceFile]:
        return list(self.files)


class DirectoryFileSource:
    """Lists image and text files below a local directory.

    Descends at most ``max_depth`` directory levels below ``root``, in sorted
    order, and stops after ``max_files`` matches.
    """

    def __init__(
        self,
        root: str,
        image_extensions: Sequence[str] = tuple(DEFAULT_CONFIG["scan_extensions"]),
        text_extensions: Sequence[str] = tuple(DEFAULT_CONFIG["text_extensions"]),
        max_depth: int = DEFAULT_CONFIG["scan_max_depth"],
        max_files: int = DEFAULT_CONFIG["max_scan_files"],
    ):
        self.root = root
        self.image_extensions = {e.lower() for e in image_extensions}
        self.text_extensions = {e.lower() for e in text_extensions}
        self.max_depth = max_depth
        self.max_files = max_files

    async def list_files(self) -> List[EvidenceFile]:
        return await asyncio.to_thread(self._walk)

    def _kind(self, name: str) -> Optional[str]:
        ext = os.path.splitext(name)[1].lower()
        if ext in self.image_extensions:
            return "image"
        if ext in self.text_extensions:
            return "text"
        return None

    def _walk(self) -> List[EvidenceFile]:
        if not os.path.isdir(self.root):
            raise FileNotFoundError(f"Scan directory not found: {self.root}")
        found: List[EvidenceFile] = []
        root_depth = self.root.rstrip(os.sep).count(os.sep)
        for dirpath, dirnames, filenames in os.walk(self.root):
            depth = dirpath.rstrip(os.sep).count(os.sep) - root_depth
            dirnames.sort()
            if depth >= self.max_depth:
                dirnames[:] = []
            for name in sorted(filenames):
                kind = self._kind(name)
                if kind is None:
                    continue
                path = os.path.join(dirpath, name)
                found.append(
                    EvidenceFile(
                        file_id=os.path.relpath(path, self.root),
                        path=path,
                        kind=kind,
                        modified=os.path.getmtime(path),
                    )
                )
                if len(found) >= self.max_files:
                    return found
        return found


class BackgroundScanner:
    """Drives the evidence filter across many files with progress tracking."""

    def __init__(
        self,
        evidence_filter: EvidenceFilter,
        sink: Optional[EvidenceSink] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.evidence_filter = evidence_filter
        self.sink = sink
        self._config = config
        self.session = ScanSession()
        self._observers: List[Observer] = []
        self._cancel_requested = False
        self._resume = asyncio.Event()
        self._resume.set()
        self._task: Optional[asyncio.Task] = None
        self._rescan_task: Optional[asyncio.Task] = None
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def config(self) -> Dict[str, Any]:
        return self._config if self._config is not None else self.evidence_filter.config

    @property
    def is_scanning(self) -> bool:
        return self.session.status is ScanStatus.SCANNING

    def subscribe(self, observer: Observer) -> Observer:
        """Registers ``observer(event, session)``; returns it for unsubscribing."""
        self._observers.append(observer)
        return observer

    def unsubscribe(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def _emit(self, event: str) -> None:
        snapshot = self.session.snapshot()
        for observer in list(self._observers):
            try:
                result = observer(event, snapshot)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self.logger.warning(f"Scan observer failed on {event}: {e}")

    def _begin(self) -> None:
        if self.is_scanning:
            raise ScanInProgressError("A scan is already running")
        self._cancel_requested = False
        self._resume.set()
        self.session = ScanSession(status=ScanStatus.SCANNING, started_at=time.time())

    async def start(self, source: FileSource, batch_size: Optional[int] = None) -> ScanSession:
        """Runs one scan to the end and returns the final session snapshot.

        Raises:
            ScanInProgressError: When another scan is still running.
        """
        self._begin()
        return await self._run(source, batch_size)

    def launch(self, source: FileSource, batch_size: Optional[int] = None) -> asyncio.Task:
        """Starts a scan as a background task.

        Raises:
            ScanInProgressError: When another scan is still running.
        """
        self._begin()
        self._task = asyncio.create_task(self._run(source, batch_size))
        return self._task

    async def _run(self, source: FileSource, batch_size: Optional[int]) -> ScanSession:
        batch_size = int(batch_size or self.config["batch_size"])
        if batch_size < 1:
            batch_size = 1
        await self._emit(SCAN_STARTED)
        try:
            files = list(await source.list_files())
        except Exception as e:
            self.logger.error(f"Scan aborted, cannot enumerate files: {e}")
            self.session.status = ScanStatus.ERROR
            self.session.error = str(e)
            self.session.completed_at = time.time()
            await self._emit(SCAN_ERROR)
            return self.session.snapshot()

        self.session.total_files = len(files)
        self.logger.info(f"Scanning {len(files)} files in batches of {batch_size}")
        for offset in range(0, len(files), batch_size):
            await self._resume.wait()
            if self._cancel_requested:
                break
            await self._process_batch(files[offset : offset + batch_size])
            self.session.progress_percent = (
                self.session.processed_files / self.session.total_files * 100
            )
            await self._emit(SCAN_PROGRESS)

        self.session.completed_at = time.time()
        self.session.paused = False
        if self._cancel_requested:
            self.session.status = ScanStatus.CANCELLED
            self.logger.info(
                f"Scan cancelled after {self.session.processed_files}/"
                f"{self.session.total_files} files"
            )
            await self._emit(SCAN_CANCELLED)
            return self.session.snapshot()

        self.session.status = ScanStatus.COMPLETED
        self.session.progress_percent = 100.0
        self.logger.info(f"Scan completed: {self.session.summary()}")
        await self._emit(SCAN_COMPLETED)
        if self.config.get("background_scanning"):
            self._schedule_rescan(source, batch_size)
        return self.session.snapshot()

    async def _process_batch(self, batch: List[EvidenceFile]) -> None:
        results = await asyncio.gather(
            *(self.evidence_filter.filter_file(f) for f in batch), return_exceptions=True
        )
        approved: List[ScanEntry] = []
        for file, result in zip(batch, results):
            if isinstance(result, BaseException):
                self.logger.error(f"Failed to process {file.file_id}: {result}")
                record_scanned_file("error")
                decision = FilterDecision(
                    approved=False,
                    reasoning=f"Error: {result}",
                    kind=file.kind,
                    metadata={"file_id": file.file_id},
                )
                self.session.rejected.append(ScanEntry(file, decision))
            elif result.approved:
                record_scanned_file("approved")
                entry = ScanEntry(file, result)
                self.session.approved.append(entry)
                approved.append(entry)
            else:
                record_scanned_file("rejected")
                self.session.rejected.append(ScanEntry(file, result))
            self.session.processed_files += 1
        if self.sink is not None:
            for entry in approved:
                try:
                    await self.sink.record(entry.decision, entry.file)
                except Exception as e:
                    self.logger.error(f"Evidence sink failed for {entry.file.file_id}: {e}")

    def _schedule_rescan(self, source: FileSource, batch_size: int) -> None:
        delay = self.config["scan_interval_ms"] / 1000.0
        self._rescan_task = asyncio.create_task(self._rescan_after(delay, source, batch_size))

    async def _rescan_after(self, delay: float, source: FileSource, batch_size: int) -> None:
        await asyncio.sleep(delay)
        self._rescan_task = None
        if self.is_scanning:
            return
        self.logger.info("Starting scheduled rescan")
        self.launch(source, batch_size)

    def cancel(self) -> bool:
        """Requests cancellation; the current batch still completes."""
        if not self.is_scanning:
            return False
        self._cancel_requested = True
        self._resume.set()
        return True

    def pause(self) -> bool:
        """Holds the scan before its next batch."""
        if not self.is_scanning:
            return False
        self.session.paused = True
        self._resume.clear()
        return True

    def resume(self) -> bool:
        if not self.session.paused:
            return False
        self.session.paused = False
        self._resume.set()
        return True

    def stop_auto_scan(self) -> None:
        """Cancels the pending rescan and any scan in progress."""
        if self._rescan_task is not None:
            self._rescan_task.cancel()
            self._rescan_task = None
        self.cancel()

    def get_session(self) -> ScanSession:
        return self.session.snapshot()

    async def close(self) -> None:
        self.stop_auto_scan()
        if self._task is not None and not self._task.done():
            await asyncio.gather(self._task, return_exceptions=True)
