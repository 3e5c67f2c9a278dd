from fastapi import APIRouter, Depends
from wacrm.api.v1.endpoints import (
    login, crm, activities, analytics, groups, chat, sessions, external_links, webhooks, ws,
)
from wacrm.api.deps import get_current_user
from wacrm.core.config import settings

router = APIRouter()


@router.get("/")
def read_root():
    return {"message": "Welcome to WhatsApp CRM API V1"}


# 根据安全模式配置认证依赖
def get_auth_dependencies():
    """根据配置返回认证依赖"""
    if settings.SECURITY_ENABLED:
        return [Depends(get_current_user)]
    return []


# 公开路由 (不需要认证)
router.include_router(login.router, tags=["login"])
# 网关回调使用共享密钥校验
router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
router.include_router(ws.router, tags=["websocket"])

# 受保护路由 (需要认证)
auth_deps = get_auth_dependencies()

router.include_router(crm.router, tags=["crm"], dependencies=auth_deps)
router.include_router(activities.router, tags=["activities"], dependencies=auth_deps)
router.include_router(
    analytics.router,
    prefix="/analytics",
    tags=["analytics"],
    dependencies=auth_deps
)
router.include_router(
    groups.router,
    prefix="/groups",
    tags=["groups"],
    dependencies=auth_deps
)
router.include_router(chat.router, tags=["chat"], dependencies=auth_deps)
router.include_router(sessions.router, tags=["sessions"], dependencies=auth_deps)
router.include_router(external_links.router, tags=["external-links"], dependencies=auth_deps)
