# pendq/core/scheduler/__init__.py
"""
Scheduler for recurring task types.

Example usage:
    from pendq.core.scheduler import Scheduler

    scheduler = Scheduler(broker, registry)
    await scheduler.run_forever()
"""

from pendq.core.scheduler.service import Scheduler

__all__ = [
    'Scheduler',
]
