"""
Tests for the concurrent validator: boundedness, progress totality,
playable callbacks, grouped mode and result ordering.
"""
from stream_validator import (
    StreamValidator, ValidationOptions, export_validation_results,
    fold_channel_results, sort_results, validate_streams
)
from models import ValidationResult, ValidationStatus, ValidationTarget
from datetime import datetime, timezone
import asyncio
import json
import time
import pytest


class FakeProber:
    """Answers probes from a url -> (status, delay) table and records concurrency."""

    def __init__(self, outcomes=None, default=(ValidationStatus.FAILED, 0.0)):
        self.outcomes = outcomes or {}
        self.default = default
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def probe(self, target, timeout_ms):
        self.calls.append(target.url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            status, delay = self.outcomes.get(target.url, self.default)
            await asyncio.sleep(delay)
            return ValidationResult(
                url=target.url,
                channel_id=target.channel_id,
                channel_name=target.channel_name,
                status=status,
                error_detail=None if status == ValidationStatus.SUCCESS else "failed",
                elapsed_ms=int(delay * 1000),
            )
        finally:
            self.in_flight -= 1

    async def close(self):
        pass


def make_target(channel_id, name, url):
    return ValidationTarget(channel_id=channel_id, channel_name=name, url=url)


def flat_targets(count):
    return [make_target(f"ch_{i}", f"Channel {i}", f"http://x/{i}.ts") for i in range(count)]


class TestFlatMode:

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        prober = FakeProber(default=(ValidationStatus.FAILED, 0.02))
        results = await StreamValidator(prober).validate(
            flat_targets(20), ValidationOptions(concurrency=3))
        assert len(results) == 20
        assert prober.max_in_flight <= 3

    @pytest.mark.asyncio
    async def test_five_targets_two_workers_finish_in_about_three_rounds(self):
        targets = flat_targets(5)
        outcomes = {t.url: (ValidationStatus.FAILED, 0.1) for t in targets}
        outcomes[targets[1].url] = (ValidationStatus.SUCCESS, 0.1)
        outcomes[targets[3].url] = (ValidationStatus.SUCCESS, 0.1)
        prober = FakeProber(outcomes)
        progress = []

        started = time.monotonic()
        results = await StreamValidator(prober).validate(
            targets, ValidationOptions(concurrency=2, progress=lambda c, t: progress.append((c, t))))
        elapsed = time.monotonic() - started

        assert prober.max_in_flight == 2
        # ceil(5 / 2) rounds of 0.1s
        assert 0.25 <= elapsed < 1.0
        assert progress == [(1, 5), (2, 5), (3, 5), (4, 5), (5, 5)]
        assert [r.channel_name for r in results] == [
            "Channel 1", "Channel 3", "Channel 0", "Channel 2", "Channel 4"]

    @pytest.mark.asyncio
    async def test_instant_successes_and_timeouts(self):
        targets = flat_targets(5)
        outcomes = {t.url: (ValidationStatus.TIMEOUT, 0.1) for t in targets}
        outcomes[targets[1].url] = (ValidationStatus.SUCCESS, 0.0)
        outcomes[targets[3].url] = (ValidationStatus.SUCCESS, 0.0)

        started = time.monotonic()
        results = await StreamValidator(FakeProber(outcomes)).validate(
            targets, ValidationOptions(concurrency=2))
        elapsed = time.monotonic() - started

        assert [r.status for r in results] == [ValidationStatus.SUCCESS] * 2 + [ValidationStatus.TIMEOUT] * 3
        assert [r.channel_name for r in results[:2]] == ["Channel 1", "Channel 3"]
        assert elapsed < 0.45

    @pytest.mark.asyncio
    async def test_playable_callback_once_per_channel(self):
        targets = [
            make_target("ch_a", "A", "http://a/1"),
            make_target("ch_a", "A", "http://a/2"),
            make_target("ch_b", "B", "http://b/1"),
        ]
        prober = FakeProber(default=(ValidationStatus.SUCCESS, 0.0))
        notified = []
        await StreamValidator(prober).validate(
            targets, ValidationOptions(on_channel_playable=notified.append))
        assert sorted(notified) == ["ch_a", "ch_b"]

    @pytest.mark.asyncio
    async def test_async_callbacks(self):
        seen = []

        async def on_progress(completed, total):
            seen.append(("progress", completed, total))

        async def on_playable(channel_id):
            seen.append(("playable", channel_id))

        prober = FakeProber(default=(ValidationStatus.SUCCESS, 0.0))
        await StreamValidator(prober).validate(
            flat_targets(2), ValidationOptions(progress=on_progress, on_channel_playable=on_playable))
        assert ("progress", 2, 2) in seen
        assert ("playable", "ch_0", ) in seen

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_abort_run(self):
        def broken(*args):
            raise ValueError("listener bug")

        prober = FakeProber(default=(ValidationStatus.SUCCESS, 0.0))
        results = await StreamValidator(prober).validate(
            flat_targets(3), ValidationOptions(progress=broken, on_channel_playable=broken))
        assert len(results) == 3

    @pytest.mark.asyncio
    async def test_empty_targets(self):
        progress = []
        results = await StreamValidator(FakeProber()).validate(
            [], ValidationOptions(progress=lambda c, t: progress.append(c)))
        assert results == []
        assert progress == []

    @pytest.mark.asyncio
    async def test_defaults_from_settings(self, monkeypatch):
        monkeypatch.setattr('config.settings.VALIDATION_CONCURRENCY', 2)
        prober = FakeProber(default=(ValidationStatus.FAILED, 0.01))
        await StreamValidator(prober).validate(flat_targets(6))
        assert prober.max_in_flight <= 2

    @pytest.mark.asyncio
    async def test_mapping_rejected_in_flat_mode(self):
        with pytest.raises(TypeError):
            await StreamValidator(FakeProber()).validate({"ch": flat_targets(1)})

    @pytest.mark.asyncio
    async def test_cancellation_stops_workers(self):
        prober = FakeProber(default=(ValidationStatus.FAILED, 10.0))
        task = asyncio.create_task(StreamValidator(prober).validate(
            flat_targets(4), ValidationOptions(concurrency=2)))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0)
        assert prober.in_flight == 0
        assert len(prober.calls) == 2


class TestGroupedMode:

    @pytest.mark.asyncio
    async def test_second_candidate_succeeds(self):
        grouped = {
            "ch_x": [
                make_target("ch_x", "X", "http://x/1"),
                make_target("ch_x", "X", "http://x/2"),
                make_target("ch_x", "X", "http://x/3"),
            ]
        }
        prober = FakeProber({"http://x/2": (ValidationStatus.SUCCESS, 0.0)})
        notified = []
        progress = []

        results = await StreamValidator(prober).validate(grouped, ValidationOptions(
            grouped=True,
            on_channel_playable=notified.append,
            progress=lambda c, t: progress.append((c, t)),
        ))

        assert prober.calls == ["http://x/1", "http://x/2"]
        assert notified == ["ch_x"]
        assert progress == [(1, 1)]
        assert len(results) == 1
        assert results[0].is_success
        assert results[0].url == "http://x/2"

    @pytest.mark.asyncio
    async def test_exhaustive_keeps_probing(self):
        grouped = {
            "ch_x": [
                make_target("ch_x", "X", "http://x/1"),
                make_target("ch_x", "X", "http://x/2"),
                make_target("ch_x", "X", "http://x/3"),
            ]
        }
        prober = FakeProber({
            "http://x/1": (ValidationStatus.SUCCESS, 0.0),
            "http://x/3": (ValidationStatus.SUCCESS, 0.0),
        })
        notified = []
        results = await StreamValidator(prober).validate(grouped, ValidationOptions(
            grouped=True, exhaustive=True, on_channel_playable=notified.append))

        assert prober.calls == ["http://x/1", "http://x/2", "http://x/3"]
        assert notified == ["ch_x"]
        assert results[0].url == "http://x/1"

    @pytest.mark.asyncio
    async def test_all_candidates_fail_reports_first(self):
        grouped = {
            "ch_x": [
                make_target("ch_x", "X", "http://x/1"),
                make_target("ch_x", "X", "http://x/2"),
            ]
        }
        prober = FakeProber({"http://x/1": (ValidationStatus.TIMEOUT, 0.0)})
        results = await StreamValidator(prober).validate(grouped, ValidationOptions(grouped=True))
        assert len(results) == 1
        assert results[0].status == ValidationStatus.TIMEOUT
        assert results[0].url == "http://x/1"

    @pytest.mark.asyncio
    async def test_candidates_probed_in_order_by_one_worker(self):
        grouped = {
            f"ch_{c}": [make_target(f"ch_{c}", c, f"http://{c}/{i}") for i in range(3)]
            for c in "abcd"
        }
        prober = FakeProber(default=(ValidationStatus.FAILED, 0.01))
        results = await StreamValidator(prober).validate(
            grouped, ValidationOptions(grouped=True, concurrency=2))

        assert prober.max_in_flight <= 2
        assert len(results) == 4
        for c in "abcd":
            urls = [u for u in prober.calls if u.startswith(f"http://{c}/")]
            assert urls == [f"http://{c}/{i}" for i in range(3)]

    @pytest.mark.asyncio
    async def test_channels_without_candidates_skipped(self):
        grouped = {"ch_a": [make_target("ch_a", "A", "http://a/1")], "ch_b": []}
        progress = []
        results = await StreamValidator(FakeProber()).validate(grouped, ValidationOptions(
            grouped=True, progress=lambda c, t: progress.append((c, t))))
        assert len(results) == 1
        assert progress == [(1, 1)]

    @pytest.mark.asyncio
    async def test_sequence_rejected_in_grouped_mode(self):
        with pytest.raises(TypeError):
            await StreamValidator(FakeProber()).validate(flat_targets(1), ValidationOptions(grouped=True))


class TestAggregation:

    def _result(self, name, status, url="http://x"):
        return ValidationResult(url=url, channel_id=name, channel_name=name, status=status)

    def test_sort_success_first_then_by_name(self):
        results = [
            self._result("Delta", ValidationStatus.FAILED),
            self._result("Bravo", ValidationStatus.SUCCESS),
            self._result("Alpha", ValidationStatus.TIMEOUT),
            self._result("Charlie", ValidationStatus.SUCCESS),
        ]
        ordered = sort_results(results)
        assert [r.channel_name for r in ordered] == ["Bravo", "Charlie", "Alpha", "Delta"]

    def test_sort_is_stable(self):
        first = self._result("Same", ValidationStatus.FAILED, "http://1")
        second = self._result("Same", ValidationStatus.FAILED, "http://2")
        assert sort_results([first, second]) == [first, second]

    def test_sort_ignores_case(self):
        results = [
            self._result("Zeta", ValidationStatus.FAILED),
            self._result("alpha", ValidationStatus.FAILED),
            self._result("Beta", ValidationStatus.FAILED),
        ]
        assert [r.channel_name for r in sort_results(results)] == ["alpha", "Beta", "Zeta"]

    def test_sort_accented_names_next_to_base_letter(self):
        results = [
            self._result("Fox", ValidationStatus.SUCCESS),
            self._result("Écran", ValidationStatus.SUCCESS),
            self._result("Dazn", ValidationStatus.SUCCESS),
        ]
        assert [r.channel_name for r in sort_results(results)] == ["Dazn", "Écran", "Fox"]

    def test_sort_tolerates_control_characters(self):
        results = [
            self._result("c", ValidationStatus.FAILED),
            self._result("a\x00b", ValidationStatus.FAILED),
            self._result(None, ValidationStatus.SUCCESS),
        ]
        assert [r.channel_name for r in sort_results(results)] == [None, "a\x00b", "c"]

    def test_fold_success_beats_anything(self):
        results = [
            self._result("X", ValidationStatus.FAILED, "http://1"),
            self._result("X", ValidationStatus.SUCCESS, "http://2"),
            self._result("X", ValidationStatus.SUCCESS, "http://3"),
        ]
        assert fold_channel_results(results).url == "http://2"

    def test_fold_first_failure_wins(self):
        results = [
            self._result("X", ValidationStatus.ERROR, "http://1"),
            self._result("X", ValidationStatus.FAILED, "http://2"),
        ]
        assert fold_channel_results(results).url == "http://1"
        assert fold_channel_results([]) is None


class TestExport:

    def test_export_document(self):
        tested_at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        results = [
            ValidationResult(url="http://a", channel_id="a", channel_name="A",
                             status=ValidationStatus.SUCCESS, elapsed_ms=120, tested_at=tested_at),
            ValidationResult(url="http://b", channel_id="b", channel_name="B",
                             status=ValidationStatus.TIMEOUT, error_detail="Timed out after 12000ms",
                             tested_at=tested_at),
        ]
        document = json.loads(export_validation_results(results, tested_at=tested_at))

        assert document["testedAt"] == tested_at.isoformat()
        assert document["total"] == 2
        assert document["successCount"] == 1
        assert document["failedCount"] == 1
        assert document["results"][0] == {
            "channelId": "a",
            "channelName": "A",
            "url": "http://a",
            "status": "success",
            "errorDetail": None,
            "elapsedMillis": 120,
            "testedAt": tested_at.isoformat(),
        }
        assert document["results"][1]["status"] == "timeout"

    def test_export_keeps_unicode(self):
        results = [ValidationResult(url="http://a", channel_id="a", channel_name="中央一台",
                                    status=ValidationStatus.SUCCESS)]
        assert "中央一台" in export_validation_results(results)


class TestValidateStreams:

    @pytest.mark.asyncio
    async def test_module_level_helper(self):
        prober = FakeProber(default=(ValidationStatus.SUCCESS, 0.0))
        results = await validate_streams(flat_targets(3), ValidationOptions(concurrency=1), prober=prober)
        assert len(results) == 3
        assert prober.max_in_flight == 1

    @pytest.mark.asyncio
    async def test_null_byte_in_channel_name_does_not_abort_run(self):
        prober = FakeProber(default=(ValidationStatus.SUCCESS, 0.0))
        targets = [
            make_target("ch_0", "bad\x00name", "http://x/0.ts"),
            make_target("ch_1", "Good", "http://x/1.ts"),
        ]
        results = await validate_streams(targets, ValidationOptions(concurrency=2), prober=prober)
        assert [r.channel_name for r in results] == ["bad\x00name", "Good"]
