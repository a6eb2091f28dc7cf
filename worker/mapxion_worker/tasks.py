from celery.utils.log import get_task_logger

from mapxion.work_queue import PROCESS_TASK, DispatchMessage, RetryPolicy
from mapxion_worker.celery_app import celery_app, settings
from mapxion_worker.client import ApiClient
from mapxion_worker.pipeline import JobRunner


logger = get_task_logger(__name__)


@celery_app.task(bind=True, name=PROCESS_TASK)
def process_job(self, payload: dict, retry_policy: dict | None = None):
    message = DispatchMessage.from_payload(payload)
    policy = RetryPolicy.from_dict(retry_policy)
    attempt = self.request.retries + 1
    logger.info("processing job %s (attempt %d/%d)", message.job_id, attempt, policy.max_attempts)

    try:
        with ApiClient(settings.api_base, timeout=settings.http_timeout) as client:
            runner = JobRunner(client, archive_prefix=settings.archive_prefix, stage_delay=settings.stage_delay_seconds)
            runner.run(message.job_id)
    except Exception as exc:
        delay = policy.next_delay(attempt)
        if delay is None:
            logger.error("job %s failed permanently after %d attempt(s)", message.job_id, attempt)
            raise
        logger.warning("job %s attempt %d failed, retrying in %.0fs", message.job_id, attempt, delay)
        raise self.retry(exc=exc, countdown=delay, max_retries=policy.max_attempts - 1)

    return {"ok": True, "job_id": message.job_id}
