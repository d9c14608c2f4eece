# nodeflow/core/dispatcher/__init__.py
"""
Background loop that resumes and retries executions.

Example usage:
    from nodeflow.core.dispatcher import Dispatcher

    dispatcher = app.dispatcher()
    await dispatcher.run_forever()
"""

from nodeflow.core.dispatcher.service import DispatchReport, Dispatcher

__all__ = [
    'DispatchReport',
    'Dispatcher',
]
