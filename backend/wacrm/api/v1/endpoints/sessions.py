from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlmodel import Session

from wacrm.api.deps import get_runtime
from wacrm.core.db import get_session
from wacrm.core.exceptions import InvalidInputException, InvalidPhoneNumberException, JobNotFoundException
from wacrm.core.security import create_log
from wacrm.services.broadcast_service import BroadcastConfig
from wacrm.services.message_service import MessageService
from wacrm.services.phone import normalize_phone, to_user_jid

router = APIRouter()


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class SessionCreateRequest(BaseModel):
    id: Optional[str] = None


class SendRequest(BaseModel):
    number: str
    message: str


class BroadcastRequest(BaseModel):
    numbers: List[str] = []
    message: str = ""
    delayMinMs: Optional[int] = None
    delayMaxMs: Optional[int] = None
    cooldownAfter: Optional[int] = None
    cooldownMinMs: Optional[int] = None
    cooldownMaxMs: Optional[int] = None

    def config(self) -> BroadcastConfig:
        return BroadcastConfig.from_dict(self.model_dump(exclude={"numbers", "message", "csvData", "messageTemplate"}))


class PersonalizedRecipient(BaseModel):
    phone: str
    name: Optional[str] = None


class PersonalizedBroadcastRequest(BroadcastRequest):
    csvData: List[PersonalizedRecipient] = Field(default_factory=list)
    messageTemplate: str = ""


def _to_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@router.get("/sessions")
def list_sessions(runtime=Depends(get_runtime)):
    return {"sessions": runtime.sessions.list()}


@router.post("/sessions")
async def create_session(
    request: SessionCreateRequest,
    session: Session = Depends(get_session),
    runtime=Depends(get_runtime),
):
    wa_session = await runtime.sessions.create_session(request.id)
    create_log(session, "session_create", "system", session_id=wa_session.id)
    return {"status": "created", "sessionId": wa_session.id}


@router.get("/sessions/{session_id}/status")
def get_session_status(session_id: str, runtime=Depends(get_runtime)):
    return runtime.sessions.require(session_id).status_payload()


@router.post("/sessions/{session_id}/send")
async def send_message(
    session_id: str,
    request: SendRequest,
    session: Session = Depends(get_session),
    runtime=Depends(get_runtime),
):
    """发送单条消息：号码需规范化且已注册 WhatsApp"""
    runtime.sessions.require_ready(session_id)
    normalized = normalize_phone(request.number)
    if not normalized:
        raise InvalidPhoneNumberException(request.number)
    if not await runtime.gateway.on_whatsapp(session_id, to_user_jid(normalized)):
        raise InvalidInputException("Number is not on WhatsApp", details={"number": normalized})

    message = await MessageService(session, runtime).send_message(session_id, normalized, request.message)
    return {"status": "sent", "messageId": message.message_id}


@router.post("/sessions/{session_id}/logout")
async def logout_session(
    session_id: str,
    session: Session = Depends(get_session),
    runtime=Depends(get_runtime),
):
    """登出并清除认证材料，会话重新进入扫码流程"""
    await runtime.sessions.logout(session_id)
    create_log(session, "session_logout", "system", session_id=session_id)
    return {"status": "logged out"}


@router.post("/sessions/{session_id}/backup")
async def backup_session(
    session_id: str,
    session: Session = Depends(get_session),
    runtime=Depends(get_runtime),
):
    ok = await runtime.sessions.backup_now(session_id)
    create_log(session, "session_backup", "system", session_id=session_id, status="success" if ok else "failed")
    return {"success": ok}


# ---------------------------------------------------------------------------
# Broadcast jobs
# ---------------------------------------------------------------------------

@router.post("/sessions/{session_id}/broadcast")
async def start_broadcast(
    session_id: str,
    request: BroadcastRequest,
    session: Session = Depends(get_session),
    runtime=Depends(get_runtime),
):
    """创建群发任务并在后台执行，立即返回任务 ID"""
    runtime.sessions.require_ready(session_id)
    job = await runtime.broadcasts.start(session_id, request.numbers, request.message, request.config())
    create_log(session, "broadcast_start", "system", f"job={job.id} recipients={job.totals['total']}", session_id=session_id)
    return {"jobId": job.id, "totals": job.totals}


@router.post("/sessions/{session_id}/broadcast-personalized")
async def start_personalized_broadcast(
    session_id: str,
    request: PersonalizedBroadcastRequest,
    session: Session = Depends(get_session),
    runtime=Depends(get_runtime),
):
    """按 CSV 名单群发，消息模板中的 {name} 替换为联系人名字"""
    runtime.sessions.require_ready(session_id)
    if not request.messageTemplate.strip():
        raise InvalidInputException("messageTemplate is required")
    recipients = [r.model_dump() for r in request.csvData]
    job = await runtime.broadcasts.start(session_id, recipients, request.messageTemplate, request.config())
    create_log(session, "broadcast_start", "system", f"job={job.id} personalized recipients={job.totals['total']}", session_id=session_id)
    return {"jobId": job.id, "totals": job.totals}


@router.get("/sessions/{session_id}/broadcast/{job_id}")
def get_broadcast(session_id: str, job_id: str, runtime=Depends(get_runtime)) -> Dict[str, Any]:
    job = runtime.broadcasts.get(job_id)
    if job.session_id != session_id:
        raise JobNotFoundException(job_id)
    return {"job": job.to_dict()}


@router.post("/sessions/{session_id}/broadcast/{job_id}/cancel")
async def cancel_broadcast(
    session_id: str,
    job_id: str,
    session: Session = Depends(get_session),
    runtime=Depends(get_runtime),
):
    job = runtime.broadcasts.get(job_id)
    if job.session_id != session_id:
        raise JobNotFoundException(job_id)
    job = await runtime.broadcasts.cancel(job_id)
    create_log(session, "broadcast_cancel", "system", f"job={job_id}", session_id=session_id)
    return {"job": job.summary()}


@router.get("/jobs")
def list_jobs(
    session_id: Optional[str] = Query(None, alias="sessionId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    limit: int = Query(50, ge=1, le=500),
    runtime=Depends(get_runtime),
):
    jobs = runtime.broadcasts.list(session_id, _to_ms(start_date), _to_ms(end_date), limit)
    return {"jobs": [job.summary() for job in jobs]}
