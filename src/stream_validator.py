"""
Concurrent reachability validation.

A fixed pool of worker tasks drains one queue of work units. In flat mode a
unit is a single target; in grouped mode a unit is one channel's candidate
list, probed in priority order by a single worker.
"""

import asyncio
import inspect
import json
import logging
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from config import settings
from models import ValidationResult, ValidationTarget
from stream_prober import StreamProber

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Any]
PlayableCallback = Callable[[str], Any]
Targets = Union[Sequence[ValidationTarget], Mapping[str, Sequence[ValidationTarget]]]


@dataclass
class ValidationOptions:
    concurrency: Optional[int] = None
    timeout_ms: Optional[int] = None
    progress: Optional[ProgressCallback] = None
    on_channel_playable: Optional[PlayableCallback] = None
    grouped: bool = False
    # Grouped mode only: keep probing the remaining candidates after a success
    exhaustive: bool = False


def _name_key(name: Optional[str]) -> Tuple[str, str]:
    name = name or ""
    return (unicodedata.normalize("NFKD", name).casefold(), name)


def sort_results(results: List[ValidationResult]) -> List[ValidationResult]:
    """Successes first, then everything else; each block by channel name, case-insensitive."""
    return sorted(results, key=lambda r: (not r.is_success, _name_key(r.channel_name)))


def fold_channel_results(results: Sequence[ValidationResult]) -> Optional[ValidationResult]:
    """One result per channel: a success beats anything, otherwise the first seen wins."""
    chosen: Optional[ValidationResult] = None
    for result in results:
        if chosen is None or (result.is_success and not chosen.is_success):
            chosen = result
    return chosen


def export_validation_results(
    results: Sequence[ValidationResult],
    tested_at: Optional[datetime] = None
) -> str:
    tested_at = tested_at or datetime.now(timezone.utc)
    success_count = sum(1 for r in results if r.is_success)
    document = {
        "testedAt": tested_at.isoformat(),
        "total": len(results),
        "successCount": success_count,
        "failedCount": len(results) - success_count,
        "results": [r.to_export_dict() for r in results],
    }
    return json.dumps(document, ensure_ascii=False, indent=2)


async def _call(callback: Optional[Callable], *args):
    if callback is None:
        return
    value = callback(*args)
    if inspect.isawaitable(value):
        await value


class StreamValidator:
    """Runs a prober over many targets under a concurrency bound."""

    def __init__(self, prober: Optional[StreamProber] = None):
        self.prober = prober or StreamProber()

    async def validate(
        self,
        targets: Targets,
        options: Optional[ValidationOptions] = None
    ) -> List[ValidationResult]:
        options = options or ValidationOptions()
        concurrency = max(1, options.concurrency or settings.VALIDATION_CONCURRENCY)
        timeout_ms = options.timeout_ms or settings.VALIDATION_TIMEOUT_MS

        if options.grouped:
            if not isinstance(targets, Mapping):
                raise TypeError("Grouped validation expects a mapping of channel id to targets")
            units: List[Any] = [(cid, list(items)) for cid, items in targets.items() if items]
        else:
            if isinstance(targets, Mapping):
                raise TypeError("Flat validation expects a sequence of targets")
            units = list(targets)

        total = len(units)
        if total == 0:
            return []

        logger.info(
            f"Validating {total} {'channels' if options.grouped else 'sources'} "
            f"(concurrency={concurrency}, timeout={timeout_ms}ms)")

        queue: asyncio.Queue = asyncio.Queue()
        for unit in units:
            queue.put_nowait(unit)

        results: List[ValidationResult] = []
        notified: Set[str] = set()
        report_lock = asyncio.Lock()
        completed = 0

        async def notify_playable(channel_id: str):
            # Caller holds report_lock
            if channel_id in notified:
                return
            notified.add(channel_id)
            try:
                await _call(options.on_channel_playable, channel_id)
            except Exception as e:
                logger.error(f"Playable callback failed for {channel_id}: {e}")

        async def finish_unit(unit_results: List[ValidationResult]):
            nonlocal completed
            async with report_lock:
                results.extend(unit_results)
                for result in unit_results:
                    if result.is_success:
                        await notify_playable(result.channel_id)
                completed += 1
                try:
                    await _call(options.progress, completed, total)
                except Exception as e:
                    logger.error(f"Progress callback failed: {e}")

        async def probe_channel(channel_id: str, candidates: List[ValidationTarget]) -> List[ValidationResult]:
            attempts: List[ValidationResult] = []
            for target in candidates:
                result = await self.prober.probe(target, timeout_ms)
                attempts.append(result)
                if result.is_success:
                    # Fire as soon as the channel is known playable
                    async with report_lock:
                        await notify_playable(channel_id)
                    if not options.exhaustive:
                        break
                else:
                    logger.debug(f"Candidate failed for {channel_id}: {target.url} ({result.status.value})")
            folded = fold_channel_results(attempts)
            return [folded] if folded else []

        async def worker():
            while True:
                try:
                    unit = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if options.grouped:
                    channel_id, candidates = unit
                    unit_results = await probe_channel(channel_id, candidates)
                else:
                    unit_results = [await self.prober.probe(unit, timeout_ms)]
                await finish_unit(unit_results)

        workers = [asyncio.create_task(worker()) for _ in range(min(concurrency, total))]
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        ordered = sort_results(results)
        success_count = sum(1 for r in ordered if r.is_success)
        logger.info(f"Validation finished: {success_count}/{len(ordered)} playable")
        return ordered


async def validate_streams(
    targets: Targets,
    options: Optional[ValidationOptions] = None,
    prober: Optional[StreamProber] = None
) -> List[ValidationResult]:
    """Convenience wrapper owning a prober for the duration of one run."""
    owns_prober = prober is None
    prober = prober or StreamProber()
    try:
        return await StreamValidator(prober).validate(targets, options)
    finally:
        if owns_prober:
            await prober.close()
