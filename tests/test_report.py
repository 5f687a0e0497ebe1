"""
Tests for the end-to-end usage report.
"""

import json
import os
import random
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from ccmeter.config.loader import EngineConfig, Limits
from ccmeter.core.forecast import ForecastSeverity
from ccmeter.core.percentages import CriticalSource, UsageLevel
from ccmeter.core.pricing import CostMode
from ccmeter.core.report import build_usage_report, recent_blocks, run_pipeline
from ccmeter.core.token_counter import TokenCounts
from ccmeter.storage.models import UsageEvent

T0 = datetime(2025, 1, 15, 8, 0, tzinfo=timezone.utc)
CONFIG = EngineConfig(cost_mode=CostMode.CALCULATE, timezone="UTC")


def _event(hours, input_tokens=1000, output_tokens=500, session_id="s1",
           model="claude-sonnet-4-20250514", request_id=None) -> UsageEvent:
    return UsageEvent(
        timestamp=T0 + timedelta(hours=hours),
        session_id=session_id,
        project="proj",
        tokens=TokenCounts(input_tokens=input_tokens, output_tokens=output_tokens),
        request_id=request_id or f"req-{hours}",
        model=model,
    )


class TestBuildUsageReport:
    """Test a report over an active block."""

    def setup_method(self):
        self.events = [_event(0), _event(1, input_tokens=2000, output_tokens=1000)]
        self.now = T0 + timedelta(hours=2)

    def test_active_block_metrics(self):
        report = build_usage_report(self.events, CONFIG, now=self.now)
        assert len(report.blocks) == 1
        assert report.active_block is report.blocks[0]
        assert report.active_block.cost_usd == pytest.approx(0.0105 + 0.021)
        assert report.burn_rate.tokens_per_hour == pytest.approx(4500 / 2)
        assert report.projection.remaining_minutes == 180
        assert report.active_session.key == "s1"
        assert report.session_burn_rate is not None

    def test_rollups(self):
        report = build_usage_report(self.events, CONFIG, now=self.now)
        assert [d.key for d in report.daily] == ["2025-01-15"]
        assert report.daily[0].token_counts.input_tokens == 3000
        assert report.current_month.key == "2025-01"
        assert [m.key for m in report.models] == ["claude-sonnet-4-20250514"]

    def test_critical_uses_block_baseline(self):
        report = build_usage_report(self.events, CONFIG, now=self.now)
        assert report.critical.source is CriticalSource.COST
        assert report.critical.value == pytest.approx(100 * 0.0315 / 140)
        assert report.usage_level is UsageLevel.NORMAL

    def test_forecast_present(self):
        report = build_usage_report(self.events, CONFIG, now=self.now)
        assert report.forecast.context.limit == 200_000
        assert report.forecast.cost.limit == 140.0

    @pytest.mark.parametrize("context_window", [0, None])
    def test_disabled_context_window_has_no_limit(self, context_window):
        """A context window configured as 0 or None is not replaced by a model default."""
        config = EngineConfig(cost_mode=CostMode.CALCULATE, timezone="UTC",
                              limits=Limits(context_window=context_window))
        report = build_usage_report(self.events, config, now=self.now)
        assert report.forecast.context.severity is ForecastSeverity.NO_LIMIT
        assert report.forecast.context.limit is None

    def test_identical_inputs_identical_reports(self):
        """Shuffled input and repeated runs give the same report."""
        events = self.events + [_event(0.5, session_id="s2"), _event(9), _event(30)]
        first = build_usage_report(events, CONFIG, now=self.now)
        shuffled = events[:]
        random.Random(7).shuffle(shuffled)
        second = build_usage_report(shuffled, CONFIG, now=self.now)
        assert first == second


class TestClockSkew:
    """Test events stamped slightly after the reference time."""

    def test_block_starting_after_now_is_active(self):
        """A user working through clock skew still gets live metrics."""
        now = T0 + timedelta(hours=8)
        events = [_event(0), _event(8 + 30 / 3600)]
        report = build_usage_report(events, CONFIG, now=now)
        assert report.active_block is report.blocks[-1]
        assert report.active_block.start_time > now
        assert report.burn_rate.elapsed_hours == pytest.approx(CONFIG.min_elapsed_hours)
        assert report.critical.source is CriticalSource.COST
        assert report.critical.limit_configured
        assert report.projection.remaining_minutes == 300


class TestInactiveReport:
    """Test a report once the last block has closed."""

    def test_no_active_block(self):
        events = [_event(0)]
        report = build_usage_report(events, CONFIG, now=T0 + timedelta(hours=10))
        assert report.active_block is None
        assert report.burn_rate is None
        assert report.forecast is None
        assert report.projection is None
        assert report.critical.source is CriticalSource.NONE

    def test_monthly_fallback(self):
        config = EngineConfig(
            cost_mode=CostMode.CALCULATE, timezone="UTC",
            limits=Limits(monthly_token_limit=3000),
        )
        report = build_usage_report([_event(0)], config, now=T0 + timedelta(hours=10))
        assert report.critical.source is CriticalSource.MONTHLY_TOKENS
        assert report.critical.value == pytest.approx(50.0)

    def test_max_token_limit(self):
        config = EngineConfig(cost_mode=CostMode.CALCULATE, timezone="UTC",
                              limits=Limits(token_limit="max"))
        events = [_event(0, input_tokens=8500), _event(6, input_tokens=500)]
        report = build_usage_report(events, config, now=T0 + timedelta(hours=7))
        assert report.token_limit == 9000
        assert report.critical.source is CriticalSource.TOKENS
        assert report.critical.value == pytest.approx(100 * 1000 / 9000)

    def test_empty_events(self):
        report = build_usage_report([], CONFIG, now=T0)
        assert report.blocks == ()
        assert report.daily == ()
        assert report.current_month is None
        assert report.usage_level is UsageLevel.IDLE

    def test_unpriced_models_reported(self):
        config = EngineConfig(cost_mode=CostMode.CALCULATE, timezone="UTC", default_model="unknown-default")
        report = build_usage_report([_event(0, model="mystery")], config, now=T0)
        assert report.unpriced_models == ("mystery",)
        assert report.daily[0].cost_usd == 0.0
        assert report.daily[0].unpriced_count == 1

    def test_recent_blocks(self):
        events = [_event(0), _event(24 * 5)]
        report = build_usage_report(events, CONFIG, now=T0 + timedelta(days=5, hours=1))
        assert [b.start_time for b in recent_blocks(report, 3)] == [T0 + timedelta(days=5)]


class TestRunPipeline:
    """Test loading plus reporting."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_report_from_files(self):
        path = os.path.join(self.temp_dir, "session.jsonl")
        with open(path, "w", encoding="utf-8") as f:
            f.write(json.dumps({
                "timestamp": "2025-01-15T08:00:00Z",
                "sessionId": "s1",
                "requestId": "r1",
                "costUSD": 0.42,
                "message": {"model": "claude-sonnet-4", "usage": {"input_tokens": 10, "output_tokens": 5}},
            }) + "\n")
        load_result, report = run_pipeline([path], EngineConfig(timezone="UTC"), now=T0 + timedelta(hours=1))
        assert load_result.ok
        assert report.daily[0].cost_usd == pytest.approx(0.42)

    def test_no_readable_sources(self):
        load_result, report = run_pipeline([os.path.join(self.temp_dir, "missing")], CONFIG)
        assert not load_result.ok
        assert report is None
