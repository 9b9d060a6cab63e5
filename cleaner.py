import logging
import os
import threading
import time
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor, as_completed

import nbtlib
from tqdm import tqdm

from anvil import (
    CHUNKS_PER_REGION,
    RegionFormatError,
    RegionReader,
    RegionWriter,
    list_region_positions,
    region_filename,
    slot_position,
)
from level_data import process_level_data

logger = logging.getLogger(__name__)

ABSENT = "absent"
INVALID = "invalid"
PRUNE = "prune"
RETAIN = "retain"

LOCK_TIMEOUT = 60.0


class WorldCleanError(RuntimeError):
    pass


Classification = namedtuple("Classification", ["outcome", "reason", "chunk"])


def _invalid(reason):
    return Classification(INVALID, reason, None)


def _is_compound_list(value):
    return isinstance(value, nbtlib.List) and all(
        isinstance(item, nbtlib.Compound) for item in value
    )


def classify_chunk(chunk):
    """Decide what happens to the chunk stored in one slot.

    Returns a :class:`Classification`.  ``absent`` means there is no chunk at
    all, ``invalid`` carries the name of the first missing or mistyped field,
    ``prune`` marks a chunk with no light, no terrain, no entities and no tile
    entities, and ``retain`` carries a fresh root holding the original
    ``Level`` compound.
    """
    if chunk is None:
        return Classification(ABSENT, None, None)

    level = chunk.get("Level")
    if not isinstance(level, nbtlib.Compound):
        return _invalid("no Level tag")

    light_populated = level.get("LightPopulated")
    if not isinstance(light_populated, nbtlib.Byte):
        return _invalid("LightPopulated")
    terrain_populated = level.get("TerrainPopulated")
    if not isinstance(terrain_populated, nbtlib.Byte):
        return _invalid("TerrainPopulated")

    entities = level.get("Entities")
    if not _is_compound_list(entities):
        return _invalid("Entities")
    tile_entities = level.get("TileEntities")
    if not _is_compound_list(tile_entities):
        return _invalid("TileEntities")

    if (
        not light_populated
        and not terrain_populated
        and not entities
        and not tile_entities
    ):
        return Classification(PRUNE, None, None)

    return Classification(RETAIN, None, nbtlib.Compound({"Level": level}))


def _acquire(lock, what):
    if not lock.acquire(timeout=LOCK_TIMEOUT):
        raise WorldCleanError(f"Unable to lock {what}!")


class PruneStats:
    """Run-wide counters and region progress shared by every worker."""

    def __init__(self, total_regions, show_progress=True):
        self.total_regions = total_regions
        self.processed = 0
        self.empty = 0
        self.invalid = 0
        self.retained = 0
        self.completed = 0
        self.finished = False
        self._counter_lock = threading.Lock()
        self._progress_lock = threading.Lock()
        self._progress = tqdm(
            total=total_regions,
            desc="⏣ Processing Regions",
            unit="region",
            disable=not show_progress,
        )
        if total_regions == 0:
            self._finish()

    def _add(self, name, amount):
        _acquire(self._counter_lock, "prune stats")
        try:
            setattr(self, name, getattr(self, name) + amount)
        finally:
            self._counter_lock.release()

    def increment_empty(self):
        self._add("empty", 1)

    def increment_invalid(self):
        self._add("invalid", 1)

    def increment_retained(self):
        self._add("retained", 1)

    def add_processed(self, count):
        self._add("processed", count)

    def tick(self):
        _acquire(self._progress_lock, "progress bar")
        try:
            self.completed += 1
            self._progress.update(1)
            if self.completed >= self.total_regions and not self.finished:
                self._finish()
        finally:
            self._progress_lock.release()

    def _finish(self):
        self.finished = True
        self._progress.set_description("✔ Processing Regions")
        self._progress.close()

    def close(self):
        with self._progress_lock:
            self._progress.close()

    def summary(self):
        return (
            f"Regions: {self.total_regions}, Processed: {self.processed}, "
            f"Empty: {self.empty}, Invalid: {self.invalid}, "
            f"Retained: {self.retained}"
        )

    def __str__(self):
        return self.summary()


class LazyRegionWriter:
    """Target region handle that creates its file on first write."""

    def __init__(self, path):
        self.path = path
        self._writer = None
        self._lock = threading.Lock()

    @property
    def created(self):
        return self._writer is not None

    def _get(self):
        if self._writer is None:
            try:
                self._writer = RegionWriter.create(self.path)
            except OSError as exc:
                raise WorldCleanError(
                    f"Unable to create target region {self.path}"
                ) from exc
        return self._writer

    def write_chunk(self, index, chunk, timestamp=None):
        _acquire(self._lock, f"target region {self.path}")
        try:
            writer = self._get()
            try:
                writer.write_chunk(index, chunk, timestamp)
            except (OSError, RegionFormatError) as exc:
                x, z = slot_position(index)
                raise WorldCleanError(
                    f"Error in writing chunk ({x}, {z}) to {self.path}"
                ) from exc
        finally:
            self._lock.release()

    def close(self):
        if self._writer is not None:
            self._writer.close()


def process_region(region_path, target_region_dir, position, stats, cancel_event=None):
    region_x, region_z = position
    target = LazyRegionWriter(
        os.path.join(target_region_dir, region_filename(region_x, region_z))
    )
    try:
        region = RegionReader(region_path)
    except (OSError, RegionFormatError) as exc:
        raise WorldCleanError(
            f"Error in reading region {region_x}, {region_z}"
        ) from exc

    present = 0
    try:
        with region:
            for index in range(CHUNKS_PER_REGION):
                if cancel_event is not None and cancel_event.is_set():
                    return
                try:
                    result = classify_chunk(region.read_chunk(index))
                except RegionFormatError as exc:
                    result = _invalid(str(exc))
                except OSError as exc:
                    raise WorldCleanError(
                        f"Error in reading region {region_x}, {region_z}"
                    ) from exc

                if result.outcome == ABSENT:
                    continue
                present += 1
                if result.outcome == INVALID:
                    x, z = slot_position(index)
                    logger.warning(
                        "Skipping invalid chunk in region r:(%d, %d) p:(%d, %d): %s",
                        region_x,
                        region_z,
                        x,
                        z,
                        result.reason,
                    )
                    stats.increment_invalid()
                elif result.outcome == PRUNE:
                    stats.increment_empty()
                else:
                    target.write_chunk(index, result.chunk, region.timestamp(index))
                    stats.increment_retained()
    finally:
        target.close()

    stats.add_processed(present)
    stats.tick()


def format_duration(seconds):
    if seconds < 0:
        seconds = 0
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = seconds / 60
    if minutes < 60:
        return f"{minutes:.1f}m"
    hours = minutes / 60
    return f"{hours:.1f}h"


def process_level_regions(world, target_dir, workers=None, show_progress=True):
    start = time.monotonic()
    region_dir = os.path.join(world, "region")
    target_region_dir = os.path.join(target_dir, "region")
    positions = list_region_positions(region_dir)
    os.makedirs(target_region_dir, exist_ok=True)

    stats = PruneStats(len(positions), show_progress=show_progress)
    logger.info("Beginning to process %d regions", len(positions))

    max_workers = workers or (os.cpu_count() or 1)
    cancel_event = threading.Event()
    try:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {}
            for position in positions:
                region_path = os.path.join(region_dir, region_filename(*position))
                future = executor.submit(
                    process_region,
                    region_path,
                    target_region_dir,
                    position,
                    stats,
                    cancel_event,
                )
                futures[future] = position
            try:
                for future in as_completed(futures):
                    future.result()
            except BaseException:
                cancel_event.set()
                for future in futures:
                    future.cancel()
                raise
    finally:
        stats.close()

    logger.info("Prune stats:")
    logger.info("%s", stats)
    logger.info("Finished in %s", format_duration(time.monotonic() - start))
    return stats


def resolve_target(world, output=None):
    if output:
        return output
    world = os.path.abspath(world)
    parent_dir = os.path.dirname(world)
    world_name = os.path.basename(world)
    if not world_name:
        raise WorldCleanError("The world does not have a name")
    return os.path.join(parent_dir, f"{world_name}-clean")


def ensure_target(world, output=None):
    target_dir = resolve_target(world, output)
    if os.path.exists(target_dir):
        raise WorldCleanError(f"Target world already exists: {target_dir}")
    try:
        os.makedirs(target_dir)
    except OSError as exc:
        raise WorldCleanError(
            f"Could not create target directory {target_dir}"
        ) from exc
    return target_dir


def clean_world(world, output=None, workers=None, show_progress=True):
    if not os.path.isdir(world):
        raise WorldCleanError(f"The specified world is not a directory: {world}")
    target_dir = ensure_target(world, output)
    logger.info("Outputting world at %s", target_dir)

    if os.path.exists(os.path.join(world, "level.dat")):
        process_level_data(world, target_dir)
    else:
        logger.warning("No level.dat found in %s; skipping level data", world)

    return process_level_regions(
        world, target_dir, workers=workers, show_progress=show_progress
    )
