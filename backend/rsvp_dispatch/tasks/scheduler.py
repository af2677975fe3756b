"""In-process scheduler loops, used when no external cron drives /api/cron/*"""
import asyncio
import logging

from rsvp_dispatch.core.config import settings
from rsvp_dispatch.db.session import session_scope
from rsvp_dispatch.services.automation_service import evaluate_automation_flows
from rsvp_dispatch.services.dispatcher import process_pending_jobs

logger = logging.getLogger(__name__)
dispatch_logger = logging.getLogger("dispatch")
automation_logger = logging.getLogger("automation")


async def dispatch_scheduler_task():
    """Background task that advances pending bulk jobs one chunk at a time"""
    while True:
        await asyncio.sleep(settings.SCHEDULER_DISPATCH_INTERVAL)
        try:
            with session_scope() as db:
                summary = await process_pending_jobs(db)
            if summary["jobs_processed"]:
                dispatch_logger.info(f"Dispatch tick advanced {summary['jobs_processed']} jobs")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            dispatch_logger.error(f"Dispatch tick failed: {e}", exc_info=True)


async def automation_scheduler_task():
    """Background task that evaluates automation flows"""
    while True:
        await asyncio.sleep(settings.SCHEDULER_AUTOMATION_INTERVAL)
        try:
            # Evaluation is synchronous DB work, keep the event loop free
            await asyncio.to_thread(_evaluate_with_own_session)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            automation_logger.error(f"Automation tick failed: {e}", exc_info=True)


def _evaluate_with_own_session():
    with session_scope() as db:
        return evaluate_automation_flows(db)


def start_scheduler_tasks():
    """Start the scheduler loops; returns the created tasks"""
    logger.info(
        f"Starting scheduler tasks (dispatch every {settings.SCHEDULER_DISPATCH_INTERVAL}s, "
        f"automations every {settings.SCHEDULER_AUTOMATION_INTERVAL}s)"
    )
    return [
        asyncio.create_task(dispatch_scheduler_task(), name="dispatch-scheduler"),
        asyncio.create_task(automation_scheduler_task(), name="automation-scheduler"),
    ]
