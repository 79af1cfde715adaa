# Gunicorn configuration for periodicbackup
# Only one worker runs the backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', 2))


def post_worker_init(worker):
    """
    Designate the first worker (worker.age == 0) as the scheduler owner.

    Backups are guarded per process, so a second scheduling worker would
    run duplicate backups.

    Args:
        worker: Gunicorn worker instance (uses 'age' attribute: 0, 1, 2, ...)
    """
    if worker.age == 0:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
