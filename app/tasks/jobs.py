from app.tasks.celery_app import celery
from app.tasks import worker_jobs


@celery.task(
    name="app.tasks.jobs.process_refund",
    autoretry_for=(worker_jobs.TransientDatabaseError,),
    retry_backoff=True,
    max_retries=5,
)
def process_refund(refund_id: str):
    return worker_jobs.process_refund(refund_id)


@celery.task(name="app.tasks.jobs.resume_pending_refunds")
def resume_pending_refunds(older_than_minutes: int | None = None):
    return worker_jobs.resume_pending_refunds(older_than_minutes=older_than_minutes)


@celery.task(name="app.tasks.jobs.expire_pending_payments")
def expire_pending_payments():
    return worker_jobs.expire_pending_payments()
