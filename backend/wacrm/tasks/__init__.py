"""
任务模块
按功能拆分 Celery 任务
"""
from wacrm.tasks.maintenance_tasks import (
    materialize_pending_media,
    backup_all_sessions,
)

__all__ = [
    "materialize_pending_media",
    "backup_all_sessions",
]
