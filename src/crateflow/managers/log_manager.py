"""Per-container log storage with rotation, retention and file watching."""

import asyncio
import json
import re
import shutil
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import aiofiles
import aiofiles.os

from crateflow.config import get_settings
from crateflow.models.base import as_utc, utcnow
from crateflow.models.database import DatabaseManager, get_db_manager
from crateflow.repositories.containers import ContainerRepository
from crateflow.repositories.logs import ContainerLogRepository
from crateflow.utils import get_logger
from crateflow.utils.exceptions import InvalidLogTargetError
from crateflow.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

CONTAINER_DIR_PREFIX = "container-"
LOG_SUFFIX = ".log"

_LINE_PATTERN = re.compile(r"^\[([^\]]+)\] ?(.*)$")
_UNESCAPE_PATTERN = re.compile(r"\\([\\nr])")
_UNESCAPES = {"\\": "\\", "n": "\n", "r": "\r"}


class LogCategory(str, Enum):
    """Category of a container log entry; one file per category."""

    APPLICATION = "application"
    STARTUP = "startup"
    ERROR = "error"
    INFO = "info"


@dataclass(frozen=True)
class LogEntry:
    """One timestamped line of a container log."""

    container_id: str
    category: LogCategory
    timestamp: datetime
    content: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "container_id": self.container_id,
            "category": self.category.value,
            "timestamp": format_timestamp(self.timestamp),
            "content": self.content,
        }


LogListener = Callable[[LogEntry], Awaitable[None]]


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC timestamp with microseconds and a Z suffix."""
    return as_utc(value).astimezone(timezone.utc).isoformat(timespec="microseconds").replace(
        "+00:00", "Z"
    )


def escape_content(content: str) -> str:
    """Escape backslashes and line breaks so an entry always fits on one line."""
    return content.replace("\\", "\\\\").replace("\n", "\\n").replace("\r", "\\r")


def unescape_content(content: str) -> str:
    """Reverse escape_content."""
    return _UNESCAPE_PATTERN.sub(lambda m: _UNESCAPES[m.group(1)], content)


def format_line(entry: LogEntry) -> str:
    """Render an entry as one log file line, newline included."""
    return f"[{format_timestamp(entry.timestamp)}] {escape_content(entry.content)}\n"


def parse_line(line: str) -> tuple[datetime | None, str]:
    """
    Split a log file line into timestamp and content.

    Lines written by other processes may lack the timestamp prefix; those
    are returned whole with no timestamp.

    Args:
        line: One line without its trailing newline

    Returns:
        Tuple of (timestamp or None, content)
    """
    match = _LINE_PATTERN.match(line)
    if match:
        try:
            timestamp = as_utc(datetime.fromisoformat(match.group(1)))
        except ValueError:
            return None, line
        return timestamp, unescape_content(match.group(2))
    return None, line


class LogManager:
    """Manager for isolated per-container log files."""

    def __init__(
        self,
        log_dir: str | Path | None = None,
        db_manager: DatabaseManager | None = None,
    ) -> None:
        """
        Initialize log manager.

        Args:
            log_dir: Root log directory overriding the configured one
            db_manager: Database manager used to mirror entries
        """
        self.settings = get_settings()
        self.log_dir = Path(log_dir if log_dir is not None else self.settings.log_dir)
        self.db_manager = db_manager or get_db_manager()
        self.metrics = get_metrics_collector()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._offsets: Dict[Path, int] = {}
        self._listeners: List[LogListener] = []
        self._primed = False
        self._running = False
        self._task: Optional[asyncio.Task] = None

    # Paths and validation

    @staticmethod
    def coerce_category(category: LogCategory | str) -> LogCategory:
        """
        Convert a category name into a LogCategory.

        Raises:
            InvalidLogTargetError: If the name is not a known category
        """
        if isinstance(category, LogCategory):
            return category
        try:
            return LogCategory(category)
        except ValueError:
            raise InvalidLogTargetError(str(category), "unknown log category") from None

    @staticmethod
    def _validate_container_id(container_id: str) -> None:
        if not container_id or container_id in (".", "..") or any(
            sep in container_id for sep in ("/", "\\", "\x00")
        ):
            raise InvalidLogTargetError(container_id, "not a safe path segment")

    def container_dir(self, container_id: str) -> Path:
        """Directory holding the log files of a container."""
        self._validate_container_id(container_id)
        return self.log_dir / f"{CONTAINER_DIR_PREFIX}{container_id}"

    def log_path(self, container_id: str, category: LogCategory | str) -> Path:
        """Path of the active log file of a category."""
        category = self.coerce_category(category)
        return self.container_dir(container_id) / f"{category.value}{LOG_SUFFIX}"

    def lock_for(self, container_id: str) -> asyncio.Lock:
        """Lock serializing writes, rotation and notifications of one container."""
        lock = self._locks.get(container_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[container_id] = lock
        return lock

    async def _container_ids(self) -> List[str]:
        try:
            names = await aiofiles.os.listdir(self.log_dir)
        except FileNotFoundError:
            return []
        container_ids = []
        for name in sorted(names):
            if not name.startswith(CONTAINER_DIR_PREFIX):
                continue
            if await aiofiles.os.path.isdir(self.log_dir / name):
                container_ids.append(name[len(CONTAINER_DIR_PREFIX) :])
        return container_ids

    # Listeners

    def add_listener(self, listener: LogListener) -> None:
        """Register an async callable invoked for every new entry."""
        self._listeners.append(listener)

    def remove_listener(self, listener: LogListener) -> None:
        """Unregister a listener."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self, entry: LogEntry) -> None:
        for listener in list(self._listeners):
            try:
                await listener(entry)
            except Exception as e:
                logger.error(
                    "Log listener failed",
                    extra={"container_id": entry.container_id, "error": str(e)},
                )

    # Out-of-process growth

    async def _drain_file(self, container_id: str, category: LogCategory) -> List[LogEntry]:
        """Notify lines appended to a file since its tracked offset. Caller holds the lock."""
        path = self.log_path(container_id, category)
        try:
            size = (await aiofiles.os.stat(path)).st_size
        except FileNotFoundError:
            self._offsets.pop(path, None)
            return []

        offset = self._offsets.get(path)
        if offset is None:
            # Before priming, existing content is history rather than new output
            offset = 0 if self._primed else size
        if size < offset:
            offset = 0
        if size == offset:
            self._offsets[path] = offset
            return []

        async with aiofiles.open(path, "rb") as f:
            await f.seek(offset)
            data = await f.read(size - offset)

        end = data.rfind(b"\n")
        if end == -1:
            self._offsets[path] = offset
            return []
        complete = data[: end + 1]
        self._offsets[path] = offset + len(complete)

        entries = []
        fallback = utcnow()
        for raw in complete.decode("utf-8", "replace").split("\n"):
            if not raw:
                continue
            timestamp, content = parse_line(raw)
            entries.append(LogEntry(container_id, category, timestamp or fallback, content))

        for entry in entries:
            await self._notify(entry)
        return entries

    async def _drain_container(self, container_id: str) -> List[LogEntry]:
        entries: List[LogEntry] = []
        for category in LogCategory:
            entries.extend(await self._drain_file(container_id, category))
        return entries

    @asynccontextmanager
    async def exclusive(self, container_id: str) -> AsyncIterator[None]:
        """
        Hold a container's log lock with all pending external lines delivered.

        While inside, no entry of the container is written or notified, so a
        caller can register a listener and replay recent() without gaps or
        duplicates.
        """
        async with self.lock_for(container_id):
            await self._drain_container(container_id)
            yield

    async def prime(self) -> None:
        """Record current file sizes so only later growth is reported."""
        for container_id in await self._container_ids():
            for category in LogCategory:
                path = self.log_path(container_id, category)
                try:
                    self._offsets[path] = (await aiofiles.os.stat(path)).st_size
                except FileNotFoundError:
                    continue
        self._primed = True

    async def scan_once(self) -> int:
        """
        Report out-of-process growth of every container log once.

        Returns:
            Number of entries delivered to listeners
        """
        delivered = 0
        for container_id in await self._container_ids():
            async with self.lock_for(container_id):
                delivered += len(await self._drain_container(container_id))
        return delivered

    async def start_watching(self) -> None:
        """Start the background file watcher."""
        if self._running:
            logger.warning("Log watcher already running")
            return

        await self.prime()
        self._running = True
        self._task = asyncio.create_task(self._watch_loop())
        logger.info(
            "Log watcher started",
            extra={"log_dir": str(self.log_dir), "interval_s": self.settings.log_watch_interval_s},
        )

    async def stop_watching(self) -> None:
        """Stop the background file watcher."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Log watcher stopped")

    async def _watch_loop(self) -> None:
        interval = self.settings.log_watch_interval_s
        while self._running:
            try:
                await self.scan_once()
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Log watch scan failed", extra={"error": str(e)})
                await asyncio.sleep(interval)

    # Writing

    async def _write_line(self, path: Path, line: str) -> None:
        data = line.encode("utf-8")
        try:
            async with aiofiles.open(path, "ab") as f:
                await f.write(data)
                position = await f.tell()
        except FileNotFoundError:
            # Directory is created on first write or was removed underneath us
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(path, "ab") as f:
                await f.write(data)
                position = await f.tell()
        self._offsets[path] = position

    async def _persist(self, entry: LogEntry) -> None:
        async with self.db_manager.get_session() as session:
            if await ContainerRepository(session).get(entry.container_id) is None:
                return
            await ContainerLogRepository(session).add(
                entry.container_id, entry.content, entry.category.value, entry.timestamp
            )

    async def append(
        self,
        container_id: str,
        content: str,
        category: LogCategory | str = LogCategory.INFO,
    ) -> LogEntry:
        """
        Append one entry to a container log.

        The line is written in a single write, mirrored to the database when
        the container is registered, then handed to listeners, all under the
        container's lock so listeners observe entries in append order.

        Args:
            container_id: Container ID
            content: Entry text, may contain newlines
            category: Log category

        Returns:
            The appended entry

        Raises:
            InvalidLogTargetError: If the category or container id is invalid
            OSError: If the file cannot be written
        """
        category = self.coerce_category(category)
        path = self.log_path(container_id, category)

        async with self.lock_for(container_id):
            await self._drain_container(container_id)
            entry = LogEntry(container_id, category, utcnow(), content)
            await self._write_line(path, format_line(entry))
            await self._persist(entry)
            await self._notify(entry)

        self.metrics.record_log_entry(category.value)
        return entry

    # Reading

    async def _read_entries(
        self, path: Path, container_id: str, category: LogCategory
    ) -> List[LogEntry]:
        try:
            async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
                text = await f.read()
            stat = await aiofiles.os.stat(path)
        except FileNotFoundError:
            return []
        modified = datetime.fromtimestamp(stat.st_mtime, timezone.utc)

        entries: List[LogEntry] = []
        for raw in text.split("\n"):
            if not raw:
                continue
            timestamp, content = parse_line(raw)
            if timestamp is None:
                timestamp = entries[-1].timestamp if entries else modified
            entries.append(LogEntry(container_id, category, timestamp, content))
        return entries

    async def tail(
        self,
        container_id: str,
        category: LogCategory | str = LogCategory.APPLICATION,
        limit: int | None = 100,
        since: datetime | None = None,
    ) -> List[LogEntry]:
        """
        Read the last entries of a category log.

        Args:
            container_id: Container ID
            category: Log category
            limit: Maximum number of entries (all when None)
            since: Only entries at or after this time

        Returns:
            Entries in chronological order, empty when the file does not exist
        """
        category = self.coerce_category(category)
        if limit is not None and limit <= 0:
            return []

        entries = await self._read_entries(
            self.log_path(container_id, category), container_id, category
        )
        if since is not None:
            cutoff = as_utc(since)
            entries = [e for e in entries if e.timestamp >= cutoff]
        if limit is not None:
            entries = entries[-limit:]
        return entries

    async def recent(self, container_id: str, limit: int | None = None) -> List[LogEntry]:
        """
        Read the newest entries across all categories.

        Args:
            container_id: Container ID
            limit: Maximum number of entries (configured replay size when None)

        Returns:
            Entries merged by timestamp, oldest first
        """
        limit = limit if limit is not None else self.settings.log_replay_lines
        merged: List[LogEntry] = []
        for category in LogCategory:
            merged.extend(await self.tail(container_id, category, limit=limit))
        merged.sort(key=lambda e: e.timestamp)
        return merged[-limit:] if limit > 0 else []

    # Maintenance

    async def clear(self, container_id: str, category: LogCategory | str) -> LogEntry:
        """
        Empty one category log and drop its mirrored rows.

        Args:
            container_id: Container ID
            category: Log category to clear

        Returns:
            The info entry recording the clear
        """
        category = self.coerce_category(category)
        path = self.log_path(container_id, category)

        async with self.lock_for(container_id):
            await self._drain_container(container_id)
            if await aiofiles.os.path.exists(path):
                async with aiofiles.open(path, "w"):
                    pass
                self._offsets[path] = 0
            async with self.db_manager.get_session() as session:
                await ContainerLogRepository(session).delete_for_container(
                    container_id, category.value
                )

        logger.info(
            "Container log cleared",
            extra={"container_id": container_id, "category": category.value},
        )
        return await self.append(container_id, f"{category.value} logs cleared", LogCategory.INFO)

    async def rotate(self, container_id: str, max_bytes: int | None = None) -> List[str]:
        """
        Rotate category logs larger than max_bytes.

        Each oversized file is renamed to a timestamp-suffixed sibling and a
        fresh empty file takes its place.

        Args:
            container_id: Container ID
            max_bytes: Size threshold (configured one when None)

        Returns:
            Names of the files that were rotated
        """
        threshold = max_bytes if max_bytes is not None else self.settings.log_rotate_max_bytes
        rotated: List[str] = []

        async with self.lock_for(container_id):
            await self._drain_container(container_id)
            for category in LogCategory:
                path = self.log_path(container_id, category)
                try:
                    size = (await aiofiles.os.stat(path)).st_size
                except FileNotFoundError:
                    continue
                if size <= threshold:
                    continue

                stamp = utcnow().strftime("%Y-%m-%dT%H-%M-%S-%fZ")
                await aiofiles.os.rename(path, path.with_name(f"{path.name}.{stamp}"))
                async with aiofiles.open(path, "w"):
                    pass
                self._offsets[path] = 0
                rotated.append(path.name)

        for name in rotated:
            logger.info(
                "Log file rotated",
                extra={"container_id": container_id, "file": name},
            )
            await self.append(container_id, f"Log file rotated: {name}", LogCategory.INFO)

        if rotated:
            self.metrics.record_log_rotation(len(rotated))
        return rotated

    async def rotate_all(self, max_bytes: int | None = None) -> int:
        """
        Rotate oversized logs of every container.

        Returns:
            Number of files rotated
        """
        total = 0
        for container_id in await self._container_ids():
            total += len(await self.rotate(container_id, max_bytes))
        return total

    async def cleanup_older_than(self, days: int | None = None) -> int:
        """
        Delete rotated log files older than a number of days.

        Persisted rows older than the same cutoff are purged as well.

        Args:
            days: Retention in days (configured one when None)

        Returns:
            Number of rotated files deleted
        """
        retention = days if days is not None else self.settings.log_retention_days
        cutoff = time.time() - retention * 86400
        deleted = 0

        for container_id in await self._container_ids():
            directory = self.container_dir(container_id)
            try:
                names = await aiofiles.os.listdir(directory)
            except FileNotFoundError:
                continue
            for name in names:
                if f"{LOG_SUFFIX}." not in name:
                    continue
                path = directory / name
                try:
                    if (await aiofiles.os.stat(path)).st_mtime >= cutoff:
                        continue
                    await aiofiles.os.remove(path)
                except FileNotFoundError:
                    continue
                deleted += 1
                logger.info(
                    "Deleted expired log file",
                    extra={"container_id": container_id, "file": name},
                )

        async with self.db_manager.get_session() as session:
            purged = await ContainerLogRepository(session).delete_older_than(
                utcnow() - timedelta(days=retention)
            )

        logger.info(
            "Log retention completed",
            extra={"deleted_files": deleted, "purged_rows": purged, "retention_days": retention},
        )
        if deleted:
            self.metrics.record_log_expiry(deleted)
        return deleted

    async def purge(self, container_id: str) -> None:
        """Delete every log file and mirrored row of a container."""
        directory = self.container_dir(container_id)
        async with self.lock_for(container_id):
            await asyncio.to_thread(shutil.rmtree, directory, True)
            for category in LogCategory:
                self._offsets.pop(self.log_path(container_id, category), None)
            async with self.db_manager.get_session() as session:
                await ContainerLogRepository(session).delete_for_container(container_id)
        self._locks.pop(container_id, None)

    async def stats(self, container_id: str) -> Dict[str, Any]:
        """
        Describe the log files of a container.

        Returns:
            Per-category size and modification time plus the total size
        """
        categories: Dict[str, Any] = {}
        total = 0
        for category in LogCategory:
            path = self.log_path(container_id, category)
            try:
                stat = await aiofiles.os.stat(path)
            except FileNotFoundError:
                categories[category.value] = {"exists": False, "size": 0, "modified": None}
                continue
            total += stat.st_size
            categories[category.value] = {
                "exists": True,
                "size": stat.st_size,
                "modified": format_timestamp(
                    datetime.fromtimestamp(stat.st_mtime, timezone.utc)
                ),
            }
        return {"container_id": container_id, "categories": categories, "total_size": total}

    async def export(self, container_id: str, fmt: str = "json") -> str:
        """
        Export every category of a container log as one document.

        Args:
            container_id: Container ID
            fmt: "json" or "text"

        Returns:
            Serialized log, entries merged by timestamp

        Raises:
            ValueError: If the format is unknown
        """
        if fmt not in ("json", "text"):
            raise ValueError(f"Unsupported export format: {fmt}")

        entries: List[LogEntry] = []
        for category in LogCategory:
            entries.extend(await self.tail(container_id, category, limit=None))
        entries.sort(key=lambda e: e.timestamp)

        if fmt == "json":
            return json.dumps([e.to_dict() for e in entries], indent=2)
        return "".join(
            f"[{format_timestamp(e.timestamp)}] [{e.category.value.upper()}] {e.content}\n"
            for e in entries
        )
