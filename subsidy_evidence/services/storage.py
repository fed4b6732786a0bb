"""
Storage optimisation – dedup, compression, utilisation monitoring, cleanup.

Artifacts are content-addressed: ``{sha256}{ext}`` under the local object
store.  A checksum already in the cache short-circuits to the stored URL
(``method="deduplication"``, ratio 1.0) without re-encoding anything.

Images are downscaled to ``image_max_dimension`` and re-encoded (PNG when
the source carries transparency, WebP for WebP sources, JPEG otherwise).
Text and JSON artifacts are gzip-compressed; everything else is stored
as-is.
"""

from __future__ import annotations

import asyncio
import gzip
import hashlib
import io
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path, PurePosixPath
from typing import Callable

from PIL import Image
from pydantic import BaseModel

from subsidy_evidence.config import settings
from subsidy_evidence.exceptions import ValidationError

logger = logging.getLogger(__name__)

_GZIP_MIME_TYPES = {"text/plain", "text/csv", "application/json", "text/html"}


class OptimizationResult(BaseModel):
    original_size: int
    optimized_size: int
    compression_ratio: float  # optimized / original
    storage_url: str
    checksum: str
    method: str  # deduplication | image | gzip | passthrough


class StorageStats(BaseModel):
    total_files: int
    total_size: int
    original_size: int
    savings_percent: float
    average_compression_ratio: float
    limit_bytes: int
    utilization: float


class CleanupResult(BaseModel):
    deleted_files: int
    freed_bytes: int


@dataclass
class StoredObject:
    name: str
    checksum: str
    size: int
    original_size: int
    mime_type: str
    created_at: datetime
    last_accessed: datetime


# ═══════════════════════════════════════════════════════════════════════════
# Object store
# ═══════════════════════════════════════════════════════════════════════════

class LocalObjectStore:
    """Flat directory of artifacts, addressed as ``{base_url}/{name}``."""

    def __init__(self, root: Path | None = None, base_url: str | None = None) -> None:
        self.root = Path(root or settings.storage_dir)
        self.base_url = (base_url or settings.storage_base_url).rstrip("/")

    def url_for(self, name: str) -> str:
        return f"{self.base_url}/{name}"

    async def put(self, name: str, data: bytes) -> str:
        await asyncio.to_thread(self._write, name, data)
        return self.url_for(name)

    def _write(self, name: str, data: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / name).write_bytes(data)

    async def delete(self, name: str) -> None:
        await asyncio.to_thread((self.root / name).unlink, missing_ok=True)

    def exists(self, name: str) -> bool:
        return (self.root / name).exists()


# ═══════════════════════════════════════════════════════════════════════════
# Image helpers
# ═══════════════════════════════════════════════════════════════════════════

def has_transparency(img: Image.Image) -> bool:
    if img.mode in ("RGBA", "LA", "PA"):
        return True
    return img.mode == "P" and "transparency" in img.info


def encode_image(
    data: bytes,
    max_dimension: int,
    quality: int,
) -> tuple[bytes, str]:
    """Downscale and re-encode; returns ``(bytes, extension)``."""
    with Image.open(io.BytesIO(data)) as src:
        src.load()
        source_format = (src.format or "").upper()
        img = src.copy()

    if max(img.size) > max_dimension:
        img.thumbnail((max_dimension, max_dimension))

    buf = io.BytesIO()
    if has_transparency(img):
        img.save(buf, format="PNG", optimize=True)
        ext = ".png"
    elif source_format == "WEBP":
        img.save(buf, format="WEBP", quality=quality)
        ext = ".webp"
    else:
        if img.mode != "RGB":
            img = img.convert("RGB")
        img.save(buf, format="JPEG", quality=quality, optimize=True)
        ext = ".jpg"
    return buf.getvalue(), ext


# ═══════════════════════════════════════════════════════════════════════════
# Optimizer
# ═══════════════════════════════════════════════════════════════════════════

class StorageOptimizer:
    def __init__(
        self,
        object_store: LocalObjectStore | None = None,
        *,
        quality: int | None = None,
        max_dimension: int | None = None,
        limit_bytes: int | None = None,
        max_file_bytes: int | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.object_store = object_store or LocalObjectStore()
        self.quality = quality or settings.compression_quality
        self.max_dimension = max_dimension or settings.image_max_dimension
        self.limit_bytes = limit_bytes or int(settings.storage_limit_gb * 1024 ** 3)
        self.max_file_bytes = max_file_bytes or int(settings.storage_max_file_mb * 1024 * 1024)
        self._now = clock
        self._objects: dict[str, StoredObject] = {}  # checksum → object
        self._monitor: asyncio.Task | None = None

    # ── Optimisation ────────────────────────────────────────────────────

    def _dedup_hit(self, checksum: str, size: int) -> OptimizationResult | None:
        obj = self._objects.get(checksum)
        if obj is None:
            return None
        obj.last_accessed = self._now()
        logger.info("Dedup hit for %s…", checksum[:12])
        return OptimizationResult(
            original_size=size,
            optimized_size=size,
            compression_ratio=1.0,
            storage_url=self.object_store.url_for(obj.name),
            checksum=checksum,
            method="deduplication",
        )

    def _check_size(self, data: bytes, filename: str) -> None:
        if len(data) > self.max_file_bytes:
            raise ValidationError(
                f"File too large to store: {filename}",
                [f"{len(data)} > {self.max_file_bytes} bytes"],
            )

    async def _persist(
        self,
        checksum: str,
        payload: bytes,
        ext: str,
        original_size: int,
        mime_type: str,
        method: str,
    ) -> OptimizationResult:
        name = f"{checksum}{ext}"
        url = await self.object_store.put(name, payload)
        now = self._now()
        self._objects[checksum] = StoredObject(
            name=name,
            checksum=checksum,
            size=len(payload),
            original_size=original_size,
            mime_type=mime_type,
            created_at=now,
            last_accessed=now,
        )
        ratio = len(payload) / original_size if original_size else 1.0
        logger.info(
            "Stored %s (%s): %d → %d bytes (%.1f%%).",
            name, method, original_size, len(payload), ratio * 100,
        )
        return OptimizationResult(
            original_size=original_size,
            optimized_size=len(payload),
            compression_ratio=round(ratio, 4),
            storage_url=url,
            checksum=checksum,
            method=method,
        )

    async def optimize_image(self, data: bytes, filename: str, mime_type: str) -> OptimizationResult:
        self._check_size(data, filename)
        checksum = hashlib.sha256(data).hexdigest()
        hit = self._dedup_hit(checksum, len(data))
        if hit is not None:
            return hit

        encoded, ext = await asyncio.to_thread(
            encode_image, data, self.max_dimension, self.quality
        )
        if len(encoded) >= len(data):
            # re-encoding did not help; keep the original bytes
            ext = PurePosixPath(filename.lower()).suffix or ext
            return await self._persist(checksum, data, ext, len(data), mime_type, "passthrough")
        return await self._persist(checksum, encoded, ext, len(data), mime_type, "image")

    async def optimize_file(self, data: bytes, filename: str, mime_type: str) -> OptimizationResult:
        mime = (mime_type or "").lower()
        if mime.startswith("image/"):
            return await self.optimize_image(data, filename, mime)

        self._check_size(data, filename)
        checksum = hashlib.sha256(data).hexdigest()
        hit = self._dedup_hit(checksum, len(data))
        if hit is not None:
            return hit

        ext = PurePosixPath(filename.lower()).suffix
        if mime in _GZIP_MIME_TYPES:
            compressed = await asyncio.to_thread(gzip.compress, data)
            return await self._persist(checksum, compressed, ext + ".gz", len(data), mime, "gzip")
        return await self._persist(checksum, data, ext, len(data), mime, "passthrough")

    async def store(self, data: bytes, filename: str, mime_type: str) -> OptimizationResult:
        """Persist bytes unchanged (still deduplicated)."""
        self._check_size(data, filename)
        checksum = hashlib.sha256(data).hexdigest()
        hit = self._dedup_hit(checksum, len(data))
        if hit is not None:
            return hit
        ext = PurePosixPath(filename.lower()).suffix
        return await self._persist(checksum, data, ext, len(data), mime_type, "passthrough")

    async def batch_optimize(
        self,
        files: list[tuple[bytes, str, str]],
        max_concurrent: int = 3,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> list[OptimizationResult | None]:
        """Optimise ``(data, filename, mime)`` triples; failures yield ``None``."""
        sem = asyncio.Semaphore(max_concurrent)
        done = 0

        async def _one(item: tuple[bytes, str, str]) -> OptimizationResult | None:
            nonlocal done
            async with sem:
                try:
                    return await self.optimize_file(*item)
                except Exception as exc:
                    logger.warning("Optimisation failed for %s: %s", item[1], exc)
                    return None
                finally:
                    done += 1
                    if on_progress is not None:
                        on_progress(done, len(files))

        return list(await asyncio.gather(*(_one(f) for f in files)))

    # ── Stats / cleanup ─────────────────────────────────────────────────

    def lookup(self, checksum: str) -> StoredObject | None:
        obj = self._objects.get(checksum)
        if obj is not None:
            obj.last_accessed = self._now()
        return obj

    def get_storage_stats(self) -> StorageStats:
        objects = list(self._objects.values())
        total = sum(o.size for o in objects)
        original = sum(o.original_size for o in objects)
        ratios = [o.size / o.original_size for o in objects if o.original_size]
        return StorageStats(
            total_files=len(objects),
            total_size=total,
            original_size=original,
            savings_percent=round((1 - total / original) * 100, 2) if original else 0.0,
            average_compression_ratio=round(sum(ratios) / len(ratios), 4) if ratios else 1.0,
            limit_bytes=self.limit_bytes,
            utilization=round(total / self.limit_bytes, 6) if self.limit_bytes else 0.0,
        )

    async def cleanup_storage(
        self,
        older_than_days: int | None = None,
        unused_only: bool = True,
    ) -> CleanupResult:
        """Delete artifacts created before the cutoff (and unused since, if asked)."""
        days = settings.cleanup_older_than_days if older_than_days is None else older_than_days
        cutoff = self._now() - timedelta(days=days)
        victims = [
            o for o in self._objects.values()
            if o.created_at < cutoff and (not unused_only or o.last_accessed < cutoff)
        ]
        freed = 0
        for obj in victims:
            await self.object_store.delete(obj.name)
            del self._objects[obj.checksum]
            freed += obj.size
        logger.info("Storage cleanup: %d file(s), %d bytes freed.", len(victims), freed)
        return CleanupResult(deleted_files=len(victims), freed_bytes=freed)

    async def check_storage(self) -> float:
        """Log high utilisation and trigger automatic cleanup above the limit."""
        utilization = self.get_storage_stats().utilization
        if utilization > settings.storage_warn_ratio:
            logger.warning("Storage utilisation high: %.1f%%.", utilization * 100)
        if utilization > settings.storage_cleanup_ratio:
            logger.warning("Storage utilisation critical – running automatic cleanup.")
            await self.cleanup_storage(settings.auto_cleanup_older_than_days, unused_only=True)
            utilization = self.get_storage_stats().utilization
        return utilization

    # ── Monitoring ──────────────────────────────────────────────────────

    def start_monitor(self, interval: float | None = None) -> None:
        if self._monitor is not None and not self._monitor.done():
            return
        self._monitor = asyncio.create_task(
            self._monitor_loop(interval or settings.storage_monitor_interval_seconds),
            name="storage-monitor",
        )

    async def _monitor_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_storage()
            except Exception:
                logger.exception("Storage check failed.")

    async def stop_monitor(self) -> None:
        if self._monitor is None:
            return
        self._monitor.cancel()
        try:
            await self._monitor
        except asyncio.CancelledError:
            pass
        self._monitor = None
