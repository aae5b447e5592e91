import logging

from celery import shared_task
from django.db import DatabaseError

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=10,   # 初始重试延迟（秒），指数退避会乘以 2^retry_count
    acks_late=True,
)
def sweep_overdue_invoices(self):
    """
    定时任务（CELERY_BEAT_SCHEDULE 每小时一次）：
    把过了到期日、一分未付的发票推到 overdue。

    重试策略：
      - 只对数据库错误重试，最多 3 次
      - 指数退避：10s → 20s → 40s
    """
    from labdesk.services import refresh_overdue_invoices

    logger.info("[Celery][sweep_overdue_invoices] start (attempt %d/%d)",
                self.request.retries + 1, self.max_retries + 1)

    try:
        changed = refresh_overdue_invoices()
    except DatabaseError as exc:
        if self.request.retries >= self.max_retries:
            logger.error("[Celery] overdue sweep failed after %d retries", self.max_retries)
            raise
        countdown = self.default_retry_delay * (2 ** self.request.retries)
        logger.warning("[Celery] overdue sweep failed (%s), retrying in %ds", exc, countdown)
        raise self.retry(exc=exc, countdown=countdown)

    logger.info("[Celery][sweep_overdue_invoices] %d invoice(s) moved to overdue", changed)
    return changed
