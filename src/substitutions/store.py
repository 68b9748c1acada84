"""Date-indexed on-disk cache of scraped substitution records.

Layout of the cache directory:
  index.json                 actual date -> live record file
  temp_<YYYY-MM-DD>.json     live tier, rewritten by every refresh
  data_<YYYY-MM-DD>.json     backup tier, written by the daily backup pass

Records are keyed by the date the monitor actually displayed, never by the
date that was requested. Every file is written to a .tmp sibling first and
moved into place with os.replace, so a crash leaves either the old or the new
file. A missing or unreadable index is rebuilt from the live files.

All methods except get() are synchronous and never yield to the event loop,
so readers on the loop see an index change and its file change together.
"""

import json
import os
import re
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

from pydantic import ValidationError

from src.substitutions.errors import StorageError
from src.substitutions.logging import get_logger
from src.substitutions.models import CacheIndex, CacheIndexEntry, ScrapedRecord

logger = get_logger(__name__)

LIVE_PREFIX = "temp_"
BACKUP_PREFIX = "data_"
INDEX_FILENAME = "index.json"

_RECORD_NAME = re.compile(r"^(temp|data)_(\d{4}-\d{2}-\d{2})\.json$")


def live_filename(day: date) -> str:
    return f"{LIVE_PREFIX}{day.isoformat()}.json"


def backup_filename(day: date) -> str:
    return f"{BACKUP_PREFIX}{day.isoformat()}.json"


def _record_date(filename: str, prefix: str) -> date | None:
    match = _RECORD_NAME.match(filename)
    if match is None or f"{match.group(1)}_" != prefix:
        return None
    try:
        return date.fromisoformat(match.group(2))
    except ValueError:
        return None


class CacheStore:
    """Live/backup record files plus the date index that points at them."""

    def __init__(
        self,
        cache_dir: str | Path = "data/cache",
        on_miss: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        """Initialize the store, loading or rebuilding the index.

        Args:
            cache_dir: Directory for record files and index.json.
            on_miss: Awaited once by get() when a date has no record at all,
                typically the single-flight refresh trigger.
        """
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.index_file = self.cache_dir / INDEX_FILENAME
        self.on_miss = on_miss
        self._index = self._load_index()

        logger.info(
            "cache_store_initialized",
            cache_dir=str(self.cache_dir),
            entries=len(self._index.entries),
        )

    # -- file primitives -------------------------------------------------

    def _write_json(self, path: Path, payload: dict[str, Any]) -> None:
        tmp = path.with_name(path.name + ".tmp")
        try:
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False)
            os.replace(tmp, path)
        except OSError as e:
            raise StorageError(f"Failed to write {path.name}: {e}") from e

    def _read_json(self, path: Path) -> dict[str, Any]:
        try:
            with path.open("r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read {path.name}: {e}") from e
        if not isinstance(payload, dict):
            raise StorageError(f"{path.name} does not contain a JSON object")
        return payload

    # -- index -----------------------------------------------------------

    def _load_index(self) -> CacheIndex:
        if not self.index_file.exists():
            return self._rebuild_index()
        try:
            return CacheIndex.model_validate(self._read_json(self.index_file))
        except (StorageError, ValidationError) as e:
            logger.warning("cache_index_unreadable", error=str(e))
            return self._rebuild_index()

    def _rebuild_index(self) -> CacheIndex:
        """Recreate the index from the live record files on disk."""
        index = CacheIndex()
        for path in sorted(self.cache_dir.glob(f"{LIVE_PREFIX}*.json")):
            day = _record_date(path.name, LIVE_PREFIX)
            if day is None:
                continue
            try:
                record = ScrapedRecord.from_file_payload(self._read_json(path))
            except (StorageError, ValidationError) as e:
                logger.warning("cache_record_skipped", file=path.name, error=str(e))
                continue
            index.entries[day.isoformat()] = CacheIndexEntry(
                actual_date=day,
                date_text=record.date_text,
                filename=path.name,
                scraped_at=record.scraped_at,
            )
        if index.entries:
            try:
                self._save_index(index)
            except StorageError as e:
                # Served from memory; the next write or start retries the save
                logger.warning("cache_index_not_saved", error=str(e))
        logger.info("cache_index_rebuilt", entries=len(index.entries))
        return index

    def _save_index(self, index: CacheIndex) -> None:
        """Write ``index`` to index.json. The caller swaps it in afterwards.

        Raises:
            StorageError: index.json could not be written.
        """
        index.last_updated = datetime.now(timezone.utc)
        self._write_json(self.index_file, index.model_dump(mode="json", by_alias=True))

    def entry(self, day: date) -> CacheIndexEntry | None:
        return self._index.entries.get(day.isoformat())

    def indexed_dates(self) -> list[date]:
        return sorted(entry.actual_date for entry in self._index.entries.values())

    def retained_dates(self, today: date, size: int) -> list[date]:
        """Indexed dates on or after ``today``, earliest ``size`` of them."""
        return [day for day in self.indexed_dates() if day >= today][:size]

    # -- records ---------------------------------------------------------

    def put(self, actual_date: date, record: ScrapedRecord) -> CacheIndexEntry:
        """Write the live record for ``actual_date`` and point the index at it.

        Supersedes any earlier live record for the same date.

        Raises:
            StorageError: The record or the index could not be written.
        """
        scraped_at = record.scraped_at or datetime.now(timezone.utc)
        record = record.model_copy(update={"scraped_at": scraped_at})
        filename = live_filename(actual_date)
        self._write_json(self.cache_dir / filename, record.to_file_payload())

        entry = CacheIndexEntry(
            actual_date=actual_date,
            date_text=record.date_text,
            filename=filename,
            scraped_at=scraped_at,
        )
        index = self._index.model_copy(deep=True)
        index.entries[actual_date.isoformat()] = entry
        self._save_index(index)
        self._index = index

        logger.info(
            "record_stored",
            actual_date=actual_date.isoformat(),
            rows=len(record.rows),
            courses=len(record.courses),
        )
        return entry

    def _candidate_paths(self, day: date) -> list[Path]:
        entry = self.entry(day)
        live = entry.filename if entry else live_filename(day)
        return [self.cache_dir / live, self.cache_dir / backup_filename(day)]

    def read_record(self, day: date) -> ScrapedRecord | None:
        """Return the stored record for ``day``, live tier before backup tier.

        Dates missing from the index are looked up by file name, which keeps
        records written before the index existed readable. Unreadable files
        are logged and skipped.
        """
        for path in self._candidate_paths(day):
            if not path.exists():
                continue
            try:
                return ScrapedRecord.from_file_payload(self._read_json(path))
            except (StorageError, ValidationError) as e:
                logger.warning("cache_record_unreadable", file=path.name, error=str(e))
        return None

    async def get(self, day: date) -> ScrapedRecord:
        """Return the record for ``day``, refreshing once on a miss.

        Never raises: when nothing can be found an empty record is returned.
        """
        record = self.read_record(day)
        if record is not None:
            return record

        if self.on_miss is None:
            logger.info("cache_miss", date=day.isoformat(), refresh=False)
            return ScrapedRecord.empty()

        logger.info("cache_miss", date=day.isoformat(), refresh=True)
        try:
            await self.on_miss()
        except Exception as e:
            logger.error("miss_refresh_failed", date=day.isoformat(), error=str(e))

        record = self.read_record(day)
        if record is None:
            logger.info("cache_miss_after_refresh", date=day.isoformat())
            return ScrapedRecord.empty()
        return record

    def promote_to_backup(self, actual_date: date) -> bool:
        """Copy the live record for ``actual_date`` into the backup tier.

        Returns:
            True if a backup was written, False if there was no live record.

        Raises:
            StorageError: The live record could not be read or the backup written.
        """
        entry = self.entry(actual_date)
        live = self.cache_dir / (entry.filename if entry else live_filename(actual_date))
        if not live.exists():
            logger.warning("backup_skipped", actual_date=actual_date.isoformat())
            return False

        backup = self.cache_dir / backup_filename(actual_date)
        self._write_json(backup, self._read_json(live))
        logger.info("record_backed_up", actual_date=actual_date.isoformat(), file=backup.name)
        return True

    def evict_outside_window(self, retained: Iterable[date]) -> list[date]:
        """Drop index entries and live files for dates not in ``retained``.

        The index is saved before any file is removed, so the index never
        points at a deleted file. Live files without an index entry and
        leftover .tmp files are removed as well. Backup files are kept.

        Returns:
            The evicted dates, sorted.

        Raises:
            StorageError: The pruned index could not be saved. The index and
                every record file are then left as they were.
        """
        keep = set(retained)
        evicted: set[date] = set()

        stale = [
            key for key, entry in self._index.entries.items() if entry.actual_date not in keep
        ]
        if stale:
            index = self._index.model_copy(deep=True)
            for key in stale:
                evicted.add(index.entries.pop(key).actual_date)
            # Nothing is removed from memory or disk unless the pruned index is saved
            self._save_index(index)
            self._index = index

        for path in self.cache_dir.glob(f"{LIVE_PREFIX}*.json"):
            day = _record_date(path.name, LIVE_PREFIX)
            if day is None or day in keep:
                continue
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                # Left for the next eviction pass
                logger.warning("cache_file_not_removed", file=path.name, error=str(e))
                continue
            evicted.add(day)

        for tmp in self.cache_dir.glob("*.json.tmp"):
            try:
                tmp.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("cache_file_not_removed", file=tmp.name, error=str(e))

        if evicted:
            logger.info(
                "cache_evicted",
                dates=[day.isoformat() for day in sorted(evicted)],
                retained=[day.isoformat() for day in sorted(keep)],
            )
        return sorted(evicted)
