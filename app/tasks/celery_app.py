from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

from celery import Celery
from celery.signals import worker_ready
from app.core.config import settings
from app.core.logging import configure_logging


def _redis_url_for_celery(url: str) -> str:
    """Celery requires ssl_cert_reqs for rediss:// (e.g. Upstash TLS)."""
    if not url or not url.strip().lower().startswith("rediss://"):
        return url
    parsed = urlparse(url)
    qs = parse_qs(parsed.query)
    if "ssl_cert_reqs" not in qs:
        qs["ssl_cert_reqs"] = ["CERT_NONE"]
        new_query = urlencode(qs, doseq=True)
        return urlunparse(parsed._replace(query=new_query))
    return url


_redis_url = _redis_url_for_celery(settings.REDIS_URL)

celery = Celery(
    "studio_payments",
    broker=_redis_url,
    backend=_redis_url,
    include=["app.tasks.jobs"],
)

celery.conf.timezone = "Asia/Ho_Chi_Minh"
celery.conf.task_acks_late = True
celery.conf.task_reject_on_worker_lost = True


# Pick up refunds left PENDING while no worker was running
@worker_ready.connect
def on_worker_ready(sender, **kwargs):
    configure_logging()
    from app.tasks.jobs import resume_pending_refunds
    resume_pending_refunds.delay()

celery.conf.beat_schedule = {
    "expire-pending-payments-every-minute": {
        "task": "app.tasks.jobs.expire_pending_payments",
        "schedule": 60.0,
    },
    "resume-pending-refunds-every-5-minutes": {
        "task": "app.tasks.jobs.resume_pending_refunds",
        "schedule": 300.0,
    },
}
