"""
Tests for the background layout worker and its tick mailbox.
"""
import pytest

from kg_analytics.errors import ValidationError
from kg_analytics.force_layout import ForceSimulation, LayoutSettings
from kg_analytics.layout_worker import (EndMessage, LatestTickMailbox, LayoutWorker, NodePosition, TickMessage,
                                        WorkerState)

TIMEOUT = 60.0


def make_tick(sequence):
    return TickMessage(sequence=sequence, alpha=1.0 / sequence,
                       positions=(NodePosition('a', float(sequence), 0.0),))


class TestLatestTickMailbox:

    def test_keeps_only_newest(self):
        mailbox = LatestTickMailbox()
        for sequence in (1, 2, 3):
            mailbox.publish(make_tick(sequence))
        assert mailbox.take().sequence == 3
        assert mailbox.take() is None
        assert mailbox.coalesced == 2

    def test_older_tick_never_replaces_newer(self):
        mailbox = LatestTickMailbox()
        mailbox.publish(make_tick(5))
        mailbox.publish(make_tick(4))
        assert mailbox.peek().sequence == 5

    def test_taken_tick_is_not_returned_again(self):
        mailbox = LatestTickMailbox()
        mailbox.publish(make_tick(1))
        assert mailbox.wait(timeout=1.0).sequence == 1
        assert mailbox.wait(timeout=0.01) is None

    def test_tick_as_dict(self):
        assert make_tick(2).as_dict() == {'type': 'tick', 'positions': [{'id': 'a', 'x': 2.0, 'y': 0.0}]}


class TestLayoutWorker:

    def test_send_rejects_foreign_objects(self):
        worker = LayoutWorker()
        with pytest.raises(ValidationError):
            worker.send({'type': 'start'})

    def test_init_runs_until_converged(self, chain):
        with LayoutWorker() as worker:
            worker.init_from_view(chain, settings=LayoutSettings(seed=1))
            end = worker.events.get(timeout=TIMEOUT)
            assert isinstance(end, EndMessage)
            assert end.reason == 'converged'
            assert worker.state is WorkerState.PAUSED
            tick = worker.mailbox.peek()
            assert tick.sequence == end.sequence
            assert {p.id for p in tick.positions} == {'a', 'b', 'c', 'd'}

    def test_init_without_autostart_waits(self, chain):
        with LayoutWorker() as worker:
            worker.init_from_view(chain, autostart=False)
            assert worker.wait_idle(TIMEOUT)
            assert worker.state is WorkerState.INITIALIZED
            assert worker.mailbox.peek() is None

    def test_commands_before_init_are_rejected(self):
        with LayoutWorker() as worker:
            worker.start()
            worker.update_settings(LayoutSettings())
            worker.stop()
            assert worker.wait_idle(TIMEOUT)
            assert worker.state is WorkerState.IDLE
            assert len(worker.errors) == 2

    def test_second_init_is_rejected(self, chain):
        with LayoutWorker() as worker:
            worker.init_from_view(chain, autostart=False)
            worker.init(['x'], [])
            assert worker.wait_idle(TIMEOUT)
            assert worker.errors and 'IDLE' in worker.errors[0]

    def test_stop_pauses_and_update_settings_resumes(self, chain):
        with LayoutWorker(tick_interval=0.01) as worker:
            worker.init_from_view(chain, settings=LayoutSettings(seed=1))
            assert worker.wait_for_state(WorkerState.RUNNING, timeout=TIMEOUT)
            worker.stop()
            assert worker.wait_for_state(WorkerState.PAUSED, timeout=TIMEOUT)

            worker.update_settings(LayoutSettings(link_distance=80.0))
            assert worker.wait_for_state(WorkerState.RUNNING, WorkerState.PAUSED, timeout=TIMEOUT)
            end = worker.events.get(timeout=TIMEOUT)
            assert end.reason == 'converged'

    def test_auto_stop_after_deadline(self, chain):
        times = iter([0.0])

        def clock():
            return next(times, 1000.0)

        with LayoutWorker(clock=clock) as worker:
            worker.init_from_view(chain)
            end = worker.events.get(timeout=TIMEOUT)
            assert end.reason == 'auto_stop'
            assert worker.state is WorkerState.PAUSED

    def test_apply_latest_writes_positions(self, chain):
        with LayoutWorker() as worker:
            worker.init_from_view(chain, settings=LayoutSettings(seed=2))
            worker.events.get(timeout=TIMEOUT)
            chain.drop_node('d')
            tick = worker.apply_latest(chain)
            assert tick is not None
            for node_id in ('a', 'b', 'c'):
                attrs = chain.node_attributes(node_id)
                assert 'x' in attrs and 'y' in attrs
            # Already consumed
            assert worker.apply_latest(chain) is None

    def test_shutdown_joins_thread(self, chain):
        worker = LayoutWorker()
        worker.init_from_view(chain, autostart=False)
        worker.wait_idle(TIMEOUT)
        worker.shutdown()
        assert not worker._thread.is_alive()


class FailingSimulation(ForceSimulation):
    """Simulation that breaks on its third tick."""

    def tick(self):
        if self.tick_count >= 2:
            raise FloatingPointError("positions diverged")
        return super().tick()


def failing_factory(*args, **kwargs):
    raise RuntimeError("no layout backend")


class TestLayoutWorkerMessages:

    def test_init_accepts_client_settings(self, chain):
        settings = {'linkDistance': 50, 'chargeStrength': -80, 'collideRadius': 10, 'seed': 3}
        with LayoutWorker() as worker:
            worker.init(chain.nodes(), [('a', 'b'), ('b', 'c'), ('c', 'd')], settings=settings)
            assert worker.wait_idle(TIMEOUT)
            assert worker.errors == []
            assert worker.settings.link_distance == 50.0
            assert worker.settings.charge_strength == -80.0
            assert worker.state in (WorkerState.RUNNING, WorkerState.PAUSED)
            worker.stop()
            assert worker.wait_idle(TIMEOUT)

    def test_update_settings_mapping_changes_only_named_keys(self, chain):
        with LayoutWorker() as worker:
            worker.init_from_view(chain, settings=LayoutSettings(charge_strength=-80.0, seed=1), autostart=False)
            worker.update_settings({'linkDistance': 90})
            assert worker.wait_idle(TIMEOUT)
            assert worker.settings.link_distance == 90.0
            assert worker.settings.charge_strength == -80.0

    def test_bad_settings_are_rejected_on_send(self):
        worker = LayoutWorker()
        with pytest.raises(ValidationError):
            worker.init(['a'], [], settings={'gravity': 1})
        with pytest.raises(ValidationError):
            worker.update_settings({'linkDistance': 'far'})
        with pytest.raises(ValidationError):
            worker.update_settings(42)

    def test_unexpected_init_failure_keeps_worker_alive(self, chain):
        with LayoutWorker(simulation_factory=failing_factory) as worker:
            worker.init_from_view(chain)
            worker.stop()
            assert worker.wait_idle(TIMEOUT)
            assert worker.state is WorkerState.IDLE
            assert worker.errors == ['RuntimeError: no layout backend']
            assert worker._thread.is_alive()

    def test_tick_failure_pauses_with_error_event(self, chain):
        with LayoutWorker(simulation_factory=FailingSimulation) as worker:
            worker.init_from_view(chain)
            end = worker.events.get(timeout=TIMEOUT)
            assert end.reason == 'error'
            assert worker.state is WorkerState.PAUSED
            assert worker.errors == ['FloatingPointError: positions diverged']
            worker.stop()
            assert worker.wait_idle(TIMEOUT)
