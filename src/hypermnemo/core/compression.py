"""
Memory Compression
==================
Reduces the stored footprint of old or crowded memories.

Supported codecs (standard library):
  - zlib: fast, moderate ratio
  - gzip: zlib stream with gzip framing (mtime pinned for reproducible bytes)
  - lzma: slowest, best ratio

Levels 0-9 map onto each codec's native level/preset. Text payloads
compressed at or above ``lossy_level`` are whitespace-collapsed first,
trading exact formatting for size. Embeddings are never touched, so a
compressed entry keeps its place in the index.
"""

from __future__ import annotations

import asyncio
import gzip
import lzma
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from .config import COMPRESSION_ALGORITHMS, CompressionConfig, HyperMnemoConfig
from .exceptions import CompressionError, DataCorruptionError
from .memory_model import CompressionInfo, EntryState, MemoryEntry, MemoryTier, content_text, utcnow
from .metrics import COMPRESSION_ENTRIES

ELIGIBLE_STATES = (EntryState.ACTIVE, EntryState.CONSOLIDATED)


def compress_bytes(data: bytes, algorithm: str, level: int) -> bytes:
    if algorithm == "zlib":
        return zlib.compress(data, level)
    if algorithm == "gzip":
        return gzip.compress(data, compresslevel=level, mtime=0)
    if algorithm == "lzma":
        return lzma.compress(data, preset=level)
    raise CompressionError(None, f"unknown algorithm '{algorithm}'")


def decompress_bytes(data: bytes, algorithm: str) -> bytes:
    if algorithm == "zlib":
        return zlib.decompress(data)
    if algorithm == "gzip":
        return gzip.decompress(data)
    if algorithm == "lzma":
        return lzma.decompress(data)
    raise CompressionError(None, f"unknown algorithm '{algorithm}'")


def collapse_whitespace(text: str) -> str:
    return " ".join(text.split())


def encode_content(content: Any, algorithm: str, level: int, lossy_level: int) -> Tuple[bytes, CompressionInfo]:
    """Compress a payload; returns the bytes and their CompressionInfo."""
    if isinstance(content, str):
        kind = "text"
        text = content
    else:
        kind = "json"
        text = content_text(content)
    original = text.encode("utf-8")
    lossy = kind == "text" and level >= lossy_level
    if lossy:
        text = collapse_whitespace(text)
    payload = compress_bytes(text.encode("utf-8"), algorithm, level)
    info = CompressionInfo(
        algorithm=algorithm,
        level=level,
        original_size=len(original),
        compressed_size=len(payload),
        content_kind=kind,
        lossy=lossy,
    )
    return payload, info


def decompress_payload(payload: bytes, info: Optional[CompressionInfo]) -> Any:
    """Inverse of :func:`encode_content` (lossy text comes back collapsed)."""
    if info is None:
        raise DataCorruptionError("compressed_payload", "missing compression info")
    try:
        text = decompress_bytes(payload, info.algorithm).decode("utf-8")
    except (zlib.error, OSError, lzma.LZMAError, EOFError, UnicodeDecodeError) as exc:
        raise DataCorruptionError("compressed_payload", f"cannot decode: {exc}")
    if info.content_kind == "json":
        from hypermnemo.utils.json_compat import loads
        return loads(text)
    return text


@dataclass
class CompressionReport:
    compressed: int = 0
    ratio: float = 1.0
    algorithm: Optional[str] = None
    level: Optional[int] = None
    tiers: List[str] = field(default_factory=list)
    entry_ids: List[str] = field(default_factory=list)
    skipped: int = 0
    original_bytes: int = 0
    compressed_bytes: int = 0
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "compressed": self.compressed,
            "ratio": self.ratio,
            "algorithm": self.algorithm,
            "level": self.level,
            "tiers": list(self.tiers),
            "entry_ids": list(self.entry_ids),
            "skipped": self.skipped,
            "original_bytes": self.original_bytes,
            "compressed_bytes": self.compressed_bytes,
            "error": self.error,
        }


class CompressionEngine:
    """Selects eligible entries per tier policy and compresses them."""

    def __init__(self, config: HyperMnemoConfig):
        self.config = config

    @property
    def settings(self) -> CompressionConfig:
        return self.config.compression

    def validate(self, algorithm: str, level: Any, tier: Optional[str] = None) -> None:
        if algorithm not in COMPRESSION_ALGORITHMS:
            raise CompressionError(
                tier, f"unknown algorithm '{algorithm}'",
                {"supported": list(COMPRESSION_ALGORITHMS)},
            )
        if isinstance(level, bool) or not isinstance(level, int) or not 0 <= level <= 9:
            raise CompressionError(tier, f"level must be an integer within 0-9, got {level!r}")

    def eligible(self, entries: List[MemoryEntry], tier: MemoryTier, now: datetime) -> List[MemoryEntry]:
        policy = self.config.tier_policy(tier.value)
        crowded = (
            policy.compression_threshold is not None
            and len(entries) > policy.compression_threshold
        )
        result = []
        for entry in entries:
            if entry.state not in ELIGIBLE_STATES:
                continue
            old = (
                policy.compression_age_seconds is not None
                and entry.age_seconds(now) > policy.compression_age_seconds
            )
            if old or crowded:
                result.append(entry)
        return result

    async def compress(
        self,
        store,
        tier: Optional[MemoryTier] = None,
        algorithm: Optional[str] = None,
        level: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> CompressionReport:
        """
        Compress every eligible entry of ``tier`` (or all tiers).

        Entries whose compressed form is not smaller stay untouched.

        Raises:
            CompressionError: unknown algorithm or level outside 0-9.
        """
        algorithm = algorithm or self.settings.algorithm
        level = self.settings.level if level is None else level
        self.validate(algorithm, level, tier.value if tier else None)
        now = now or utcnow()

        report = CompressionReport(algorithm=algorithm, level=level)
        for current in ([tier] if tier is not None else list(MemoryTier)):
            candidates = self.eligible(store.live_entries(current), current, now)
            if not candidates:
                continue
            report.tiers.append(current.value)
            for entry in candidates:
                payload, info = encode_content(
                    entry.read_content(), algorithm, level, self.settings.lossy_level
                )
                if info.compressed_size >= info.original_size:
                    report.skipped += 1
                    continue
                store.commit_compression(entry.id, payload, info)
                report.compressed += 1
                report.entry_ids.append(entry.id)
                report.original_bytes += info.original_size
                report.compressed_bytes += info.compressed_size
                COMPRESSION_ENTRIES.labels(tier=current.value, algorithm=algorithm).inc()
                await asyncio.sleep(0)

        if report.compressed:
            report.ratio = report.original_bytes / report.compressed_bytes
        logger.info(
            f"Compression ({algorithm}@{level}) compressed {report.compressed} entries, "
            f"skipped {report.skipped}, ratio={report.ratio:.2f}"
        )
        return report
