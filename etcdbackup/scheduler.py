"""
Scheduler for recurring snapshots.

One interval job drives the whole cycle; `max_instances=1` keeps cycles from
overlapping when one runs longer than the creation period.
"""
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from etcdbackup import utils
from etcdbackup.utils import get_logger

logger = get_logger(__name__)

JOB_ID = 'etcd-recurring-snapshot'


def run_scheduled_cycle(executor, retention):
    """Scheduler job body: one cycle at the current time. Exceptions are logged, never raised."""
    tick_time = utils.now()
    logger.info("[Scheduler] Starting cycle: tick=%s", utils.to_iso_z(tick_time))
    try:
        result = executor.run_cycle(tick_time, retention)
    except Exception as e:
        logger.exception("[Scheduler] Cycle failed: tick=%s error=%s", utils.to_iso_z(tick_time), e)
        return None
    if result.created:
        logger.info("[Scheduler] Cycle finished: name=%s uploaded=%s", result.name, result.uploaded)
    else:
        logger.error("[Scheduler] Cycle finished without a snapshot: name=%s error=%s", result.name, result.error)
    return result


def build_scheduler(executor, creation, retention, scheduler=None):
    """Return a scheduler with the recurring snapshot job registered.

    Args:
        executor: SnapshotExecutor
        creation: timedelta between cycles
        retention: timedelta passed to every cycle
        scheduler: Scheduler instance to register on (defaults to a BlockingScheduler)
    """
    scheduler = scheduler or BlockingScheduler(timezone='UTC')
    scheduler.add_job(
        run_scheduled_cycle,
        trigger=IntervalTrigger(seconds=creation.total_seconds()),
        args=[executor, retention],
        id=JOB_ID,
        name='Recurring etcd snapshot',
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info("[Scheduler] Recurring snapshot scheduled: creation=%s retention=%s", creation, retention)
    return scheduler


def run_forever(executor, creation, retention):
    """Block, running one cycle per creation period until interrupted."""
    scheduler = build_scheduler(executor, creation, retention)
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("[Scheduler] Shutting down")
        if scheduler.running:
            scheduler.shutdown(wait=False)
