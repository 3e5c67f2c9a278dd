import logging

from celery import Celery, Task
from celery.signals import setup_logging as celery_setup_logging
from kombu import Queue

from wacrm.core.config import settings
from wacrm.core.logging import init_logging

logger = logging.getLogger(__name__)

broker_url = settings.CELERY_BROKER_URL or settings.REDIS_URL
result_backend = settings.CELERY_RESULT_BACKEND or settings.REDIS_URL

celery_app = Celery("wacrm", broker=broker_url, backend=result_backend, include=["wacrm.tasks.maintenance_tasks"])

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # ==================== 可靠性配置 ====================
    # 任务完成后才确认，防止 worker 崩溃导致任务丢失
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=86400,

    # ==================== 重试配置 ====================
    task_default_retry_delay=60,
    task_max_retries=3,
    broker_connection_retry_on_startup=True,

    worker_prefetch_multiplier=1,
    broker_pool_limit=10,

    # ==================== 队列配置 ====================
    task_queues=(
        Queue('default', routing_key='default'),
        Queue('media', routing_key='media'),
    ),
    task_default_queue='default',
    task_default_routing_key='default',
    task_routes={
        'wacrm.tasks.maintenance_tasks.materialize_pending_media': {'queue': 'media'},
    },

    # ==================== 定时任务 ====================
    beat_schedule={
        'materialize-pending-media': {
            'task': 'wacrm.tasks.maintenance_tasks.materialize_pending_media',
            'schedule': 300.0,
        },
        'backup-all-sessions': {
            'task': 'wacrm.tasks.maintenance_tasks.backup_all_sessions',
            'schedule': 3600.0,
        },
    },

    worker_send_task_events=True,
    task_track_started=True,
)


class BaseTask(Task):
    """自定义任务基类，统一记录失败 / 重试 / 成功"""

    autoretry_for = (ConnectionError, TimeoutError)
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(
            f"Task {self.name}[{task_id}] failed: {exc}\n"
            f"Args: {args}\nKwargs: {kwargs}\n"
            f"Exception info: {einfo}"
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        logger.warning(f"Task {self.name}[{task_id}] retrying due to: {exc}")
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):
        logger.info(f"Task {self.name}[{task_id}] completed: {retval}")
        super().on_success(retval, task_id, args, kwargs)


celery_app.Task = BaseTask


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    # worker 使用与 API 相同的处理器，不让 celery 改写根日志器
    init_logging()
