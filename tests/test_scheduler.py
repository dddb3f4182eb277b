from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler

from etcdbackup import scheduler
from etcdbackup.executor import CycleResult


class DummyExecutor:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def run_cycle(self, tick_time, retention):
        self.calls.append((tick_time, retention))
        if self.error:
            raise self.error
        return CycleResult(name='x', archive_path='/backup/x.zip')


def test_scheduled_cycle_runs_with_current_time():
    ex = DummyExecutor()
    result = scheduler.run_scheduled_cycle(ex, timedelta(hours=24))
    assert result.created
    tick, retention = ex.calls[0]
    assert tick.tzinfo is not None
    assert retention == timedelta(hours=24)


def test_scheduled_cycle_swallows_unexpected_errors():
    ex = DummyExecutor(error=RuntimeError('boom'))
    assert scheduler.run_scheduled_cycle(ex, timedelta(hours=1)) is None
    assert len(ex.calls) == 1


def test_build_scheduler_registers_single_non_overlapping_job():
    sched = BackgroundScheduler(timezone='UTC')
    scheduler.build_scheduler(DummyExecutor(), timedelta(minutes=5), timedelta(hours=24), scheduler=sched)

    jobs = sched.get_jobs()
    assert len(jobs) == 1
    job = jobs[0]
    assert job.id == scheduler.JOB_ID
    assert job.max_instances == 1
    assert job.coalesce is True
    assert job.trigger.interval == timedelta(minutes=5)
