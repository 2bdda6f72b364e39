"""
Tests for the timing helpers.
"""
from kg_analytics.core_utilities import PerformanceMonitor, TimingStats


class TestTimingStats:

    def test_end_without_start(self):
        assert TimingStats().end("missing") is None

    def test_timed_block_is_recorded(self):
        timing = TimingStats()
        with timing.timed("load"):
            pass
        with timing.timed("load"):
            pass
        frame = timing.to_frame()
        assert list(frame['operation']) == ['load']
        assert frame.iloc[0]['count'] == 2
        assert timing.get_operation_total("load") >= 0.0


class TestPerformanceMonitor:

    def test_disabled_monitor_records_nothing(self):
        monitor = PerformanceMonitor(enabled=False)
        with monitor.timed_operation("layout"):
            pass
        frame, _ = monitor.summary_frame()
        assert frame.empty

    def test_summary(self, capsys):
        monitor = PerformanceMonitor()
        with monitor.timed_operation("layout"):
            pass
        frame, _ = monitor.summary_frame()
        assert frame.iloc[0]['calls'] == 1
        monitor.print_timing_summary()
        assert 'TIMING SUMMARY' in capsys.readouterr().out
