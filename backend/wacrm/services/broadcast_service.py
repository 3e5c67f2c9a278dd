"""
群发任务
- 每条消息之间随机延迟，每发送 N 条后随机冷却，降低被限流风险
- 每个号码记录 sent / skipped / failed，单个失败不中断整批
- 进度以 JSON 快照写入 JOBS_DIR，进程重启后从最后确认的位置继续
"""
import asyncio
import json
import logging
import os
import random
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from wacrm.core.config import settings
from wacrm.core.exceptions import InvalidInputException, JobNotFoundException
from wacrm.core.logging import get_job_logger
from wacrm.services.phone import normalize_phone, to_user_jid

logger = logging.getLogger(__name__)

# 任务状态
STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"
ACTIVE_STATUSES = (STATUS_QUEUED, STATUS_RUNNING)

# 运行阶段
PHASE_QUEUED = "queued"
PHASE_SENDING = "sending"
PHASE_COOLDOWN = "cooldown"
PHASE_DONE = "done"

# 单个号码结果
RESULT_SENT = "sent"
RESULT_SKIPPED = "skipped"
RESULT_FAILED = "failed"

REASON_INVALID = "invalid number"
REASON_NOT_ON_WHATSAPP = "not on WhatsApp"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class BroadcastConfig:
    """群发节奏配置 (毫秒)"""
    delay_min_ms: int = 3000
    delay_max_ms: int = 8000
    cooldown_after: int = 30  # 每发送多少条进入冷却
    cooldown_min_ms: int = 120000
    cooldown_max_ms: int = 300000

    # 请求体 / 快照中的 camelCase 字段名
    _ALIASES = {
        "delayMinMs": "delay_min_ms",
        "delayMaxMs": "delay_max_ms",
        "cooldownAfter": "cooldown_after",
        "cooldownMinMs": "cooldown_min_ms",
        "cooldownMaxMs": "cooldown_max_ms",
    }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BroadcastConfig":
        config = cls()
        for key, value in (data or {}).items():
            attr = cls._ALIASES.get(key, key)
            if attr in cls.__dataclass_fields__ and value is not None:
                try:
                    setattr(config, attr, int(value))
                except (TypeError, ValueError):
                    raise InvalidInputException(f"Invalid value for {key}: {value!r}")
        config.validate()
        return config

    def validate(self) -> None:
        if min(self.delay_min_ms, self.delay_max_ms, self.cooldown_min_ms, self.cooldown_max_ms) < 0:
            raise InvalidInputException("Delays must not be negative")
        if self.delay_min_ms > self.delay_max_ms:
            raise InvalidInputException("delayMinMs must be <= delayMaxMs")
        if self.cooldown_min_ms > self.cooldown_max_ms:
            raise InvalidInputException("cooldownMinMs must be <= cooldownMaxMs")
        if self.cooldown_after < 1:
            raise InvalidInputException("cooldownAfter must be at least 1")

    def to_dict(self) -> Dict[str, int]:
        return {alias: getattr(self, attr) for alias, attr in self._ALIASES.items()}


@dataclass
class BroadcastJob:
    id: str
    session_id: str
    message: str
    recipients: List[Dict[str, Any]]  # [{"phone": "...", "name": "..."}]
    config: BroadcastConfig = field(default_factory=BroadcastConfig)
    status: str = STATUS_QUEUED
    phase: str = PHASE_QUEUED
    index: int = 0  # 下一个要处理的号码位置
    sent_since_cooldown: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, int] = field(default_factory=dict)
    requested_at: int = field(default_factory=now_ms)
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    next_resume_at: Optional[int] = None
    cancel_requested: bool = False
    error: Optional[str] = None

    def __post_init__(self):
        if not self.totals:
            self.totals = {"sent": 0, "skipped": 0, "failed": 0, "total": len(self.recipients)}

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def render_message(self, recipient: Dict[str, Any]) -> str:
        """{name} 个性化占位"""
        if "{name}" in self.message:
            return self.message.replace("{name}", recipient.get("name") or "")
        return self.message

    def to_dict(self, include_results: bool = True) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "sessionId": self.session_id,
            "message": self.message,
            "recipients": self.recipients,
            "config": self.config.to_dict(),
            "status": self.status,
            "phase": self.phase,
            "index": self.index,
            "sentSinceCooldown": self.sent_since_cooldown,
            "totals": dict(self.totals),
            "requestedAt": self.requested_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "nextResumeAt": self.next_resume_at,
            "cancelRequested": self.cancel_requested,
            "error": self.error,
        }
        if include_results:
            data["results"] = list(self.results)
        return data

    def summary(self) -> Dict[str, Any]:
        """列表 / 推送用，不带号码与结果明细"""
        data = self.to_dict(include_results=False)
        data.pop("recipients")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BroadcastJob":
        return cls(
            id=data["id"],
            session_id=data["sessionId"],
            message=data["message"],
            recipients=data.get("recipients") or [],
            config=BroadcastConfig.from_dict(data.get("config")),
            status=data.get("status", STATUS_QUEUED),
            phase=data.get("phase", PHASE_QUEUED),
            index=data.get("index", 0),
            sent_since_cooldown=data.get("sentSinceCooldown", 0),
            results=data.get("results") or [],
            totals=data.get("totals") or {},
            requested_at=data.get("requestedAt") or now_ms(),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
            next_resume_at=data.get("nextResumeAt"),
            cancel_requested=data.get("cancelRequested", False),
            error=data.get("error"),
        )


class JobStore:
    """每个任务一个 JSON 快照: JOBS_DIR/<job_id>.json"""

    def __init__(self, jobs_dir: Optional[str] = None):
        self.jobs_dir = Path(jobs_dir or settings.JOBS_DIR)

    def path_for(self, job_id: str) -> Path:
        return self.jobs_dir / f"{job_id}.json"

    def save(self, job: BroadcastJob) -> None:
        """先写临时文件再 rename，崩溃时不会留下半个快照"""
        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(job.id)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(job.to_dict(), f, ensure_ascii=False)
        os.replace(tmp_path, path)

    def load(self, job_id: str) -> Optional[BroadcastJob]:
        path = self.path_for(job_id)
        if not path.is_file():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return BroadcastJob.from_dict(json.load(f))

    def load_all(self) -> List[BroadcastJob]:
        if not self.jobs_dir.is_dir():
            return []
        jobs = []
        for path in sorted(self.jobs_dir.glob("*.json")):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    jobs.append(BroadcastJob.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError) as e:
                logger.error(f"Skipping unreadable job checkpoint {path.name}: {e}")
        return jobs


def parse_recipients(numbers: Optional[List[Any]]) -> List[Dict[str, Any]]:
    """号码列表或 [{phone, name}] 统一成 [{phone, name}]"""
    recipients = []
    for item in numbers or []:
        if isinstance(item, dict):
            phone = item.get("phone") or item.get("number")
            if phone is None:
                continue
            recipients.append({"phone": str(phone).strip(), "name": item.get("name")})
        elif item is not None and str(item).strip():
            recipients.append({"phone": str(item).strip(), "name": None})
    return recipients


class BroadcastManager:
    """
    群发任务调度 (进程内 asyncio 后台任务)

    Args:
        runtime: 提供 gateway / notifier / session_factory
        sleep: 可注入的 sleep (测试中替换为立即返回)
        rng: 随机数源
    """

    def __init__(self, runtime, jobs_dir: Optional[str] = None,
                 sleep: Optional[Callable] = None, rng: Optional[random.Random] = None,
                 checkpoint_every: Optional[int] = None):
        self.runtime = runtime
        self.store = JobStore(jobs_dir)
        self.sleep = sleep or asyncio.sleep
        self.rng = rng or random.Random()
        self.checkpoint_every = max(1, checkpoint_every or settings.BROADCAST_CHECKPOINT_EVERY)
        self.jobs: Dict[str, BroadcastJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ==================== 对外接口 ====================

    def create_job(self, session_id: str, numbers: List[Any], message: str,
                   config: Optional[BroadcastConfig] = None) -> BroadcastJob:
        if not message or not message.strip():
            raise InvalidInputException("Message is required")
        recipients = parse_recipients(numbers)
        if not recipients:
            raise InvalidInputException("At least one number is required")

        job = BroadcastJob(
            id=str(uuid.uuid4()),
            session_id=session_id,
            message=message,
            recipients=recipients,
            config=config or BroadcastConfig(),
        )
        self.jobs[job.id] = job
        self.store.save(job)
        logger.info(f"Broadcast job {job.id} created for session {session_id} ({len(recipients)} recipients)")
        return job

    async def start(self, session_id: str, numbers: List[Any], message: str,
                    config: Optional[BroadcastConfig] = None) -> BroadcastJob:
        job = self.create_job(session_id, numbers, message, config)
        await self._emit(job)
        self._launch(job)
        return job

    def get(self, job_id: str) -> BroadcastJob:
        job = self.jobs.get(job_id) or self.store.load(job_id)
        if job is None:
            raise JobNotFoundException(job_id)
        return job

    def list(self, session_id: Optional[str] = None, start_ms: Optional[int] = None,
             end_ms: Optional[int] = None, limit: int = 50) -> List[BroadcastJob]:
        jobs = {job.id: job for job in self.store.load_all()}
        jobs.update(self.jobs)
        result = []
        for job in jobs.values():
            if session_id and job.session_id != session_id:
                continue
            if start_ms and job.requested_at < start_ms:
                continue
            if end_ms and job.requested_at > end_ms:
                continue
            result.append(job)
        result.sort(key=lambda j: j.started_at or j.requested_at, reverse=True)
        return result[:limit]

    async def cancel(self, job_id: str) -> BroadcastJob:
        """请求取消；正在冷却/延迟中的任务立即中断"""
        job = self.get(job_id)
        if not job.is_active:
            return job
        job.cancel_requested = True
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
        else:
            self._finish(job, STATUS_CANCELLED)
            await self._emit(job)
        return job

    async def resume_incomplete(self) -> List[BroadcastJob]:
        """启动时恢复 queued/running 快照，从 index 继续"""
        resumed = []
        for job in self.store.load_all():
            if not job.is_active or job.id in self._tasks:
                continue
            if job.cancel_requested:
                self._finish(job, STATUS_CANCELLED)
                continue
            self.jobs[job.id] = job
            logger.info(f"Resuming broadcast job {job.id} at {job.index}/{job.totals['total']}")
            self._launch(job)
            resumed.append(job)
        return resumed

    async def wait(self, job_id: str) -> BroadcastJob:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.get(job_id)

    async def shutdown(self) -> None:
        """进程退出: 取消运行中的任务但保留 running 状态，下次启动继续"""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for job_id, task in list(self._tasks.items()):
            job = self.jobs.get(job_id)
            if job is not None and job.is_active:
                self.store.save(job)
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ==================== 执行 ====================

    def _launch(self, job: BroadcastJob) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self.run(job))
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))
        return task

    def _random_ms(self, low: int, high: int) -> int:
        return self.rng.randint(low, high) if high > low else low

    async def run(self, job: BroadcastJob) -> BroadcastJob:
        task_logger = get_job_logger("broadcast", job.id, session_id=job.session_id)
        job.status = STATUS_RUNNING
        job.phase = PHASE_SENDING
        job.started_at = job.started_at or now_ms()
        job.next_resume_at = None
        self.store.save(job)
        await self._emit(job)
        task_logger.info(f"Broadcast started for session {job.session_id} from index {job.index}")

        try:
            total = len(job.recipients)
            while job.index < total:
                if job.cancel_requested:
                    raise asyncio.CancelledError()

                recipient = job.recipients[job.index]
                result = await self._deliver(job, recipient, task_logger)
                job.results.append(result)
                job.totals[result["status"]] += 1
                job.index += 1
                if result["status"] == RESULT_SENT:
                    job.sent_since_cooldown += 1

                if job.index % self.checkpoint_every == 0 or job.index >= total:
                    self.store.save(job)
                await self._emit(job)

                if job.index < total and job.sent_since_cooldown >= job.config.cooldown_after:
                    await self._cooldown(job, task_logger)

            self._finish(job, STATUS_COMPLETED)
            task_logger.info(f"Broadcast completed: {job.totals}")
        except asyncio.CancelledError:
            if job.cancel_requested:
                self._finish(job, STATUS_CANCELLED)
                task_logger.info(f"Broadcast cancelled at {job.index}/{len(job.recipients)}")
            else:
                # 进程关闭: 保留 running 状态与 index，下次启动继续
                self.store.save(job)
                task_logger.info(f"Broadcast interrupted at {job.index}, checkpoint saved")
                raise
        except Exception as e:
            job.error = str(e)
            self._finish(job, STATUS_FAILED)
            task_logger.exception(f"Broadcast failed: {e}")

        await self._emit(job)
        return job

    async def _cooldown(self, job: BroadcastJob, task_logger) -> None:
        delay_ms = self._random_ms(job.config.cooldown_min_ms, job.config.cooldown_max_ms)
        job.phase = PHASE_COOLDOWN
        job.next_resume_at = now_ms() + delay_ms
        self.store.save(job)
        await self._emit(job)
        task_logger.info(f"Cooldown for {delay_ms / 1000:.0f}s after {job.sent_since_cooldown} messages")

        await self.sleep(delay_ms / 1000)

        job.phase = PHASE_SENDING
        job.next_resume_at = None
        job.sent_since_cooldown = 0
        self.store.save(job)
        await self._emit(job)

    async def _deliver(self, job: BroadcastJob, recipient: Dict[str, Any], task_logger) -> Dict[str, Any]:
        raw_number = recipient["phone"]
        phone = normalize_phone(raw_number)
        if not phone:
            return {"number": raw_number, "status": RESULT_SKIPPED, "reason": REASON_INVALID}

        gateway = self.runtime.gateway
        try:
            if not await gateway.on_whatsapp(job.session_id, to_user_jid(phone)):
                return {"number": phone, "status": RESULT_SKIPPED, "reason": REASON_NOT_ON_WHATSAPP}

            await self.sleep(self._random_ms(job.config.delay_min_ms, job.config.delay_max_ms) / 1000)
            text = job.render_message(recipient)
            sent = await gateway.send_text(job.session_id, to_user_jid(phone), text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            task_logger.warning(f"Send to {phone} failed: {e}")
            return {"number": phone, "status": RESULT_FAILED, "error": str(e) or type(e).__name__}

        message_id = (sent.get("key") or {}).get("id")
        self._record(job, phone, recipient.get("name"), message_id, text, task_logger)
        return {"number": phone, "status": RESULT_SENT, "messageId": message_id}

    def _record(self, job: BroadcastJob, phone: str, name: Optional[str], message_id: Optional[str],
                text: str, task_logger) -> None:
        """已发送的消息写入 CRM；失败只记日志，不影响群发结果"""
        if not message_id or self.runtime.session_factory is None:
            return
        from wacrm.services.message_service import MessageService
        try:
            with self.runtime.session_factory() as session:
                service = MessageService(session, self.runtime)
                contact = service.contacts.get_or_create_contact(job.session_id, phone, name=name)
                service.record_outgoing(job.session_id, contact, message_id, text)
        except Exception as e:
            task_logger.error(f"Failed to record broadcast message to {phone}: {e}")

    def _finish(self, job: BroadcastJob, status: str) -> None:
        job.status = status
        job.phase = PHASE_DONE
        job.next_resume_at = None
        job.completed_at = now_ms()
        self.store.save(job)

    async def _emit(self, job: BroadcastJob) -> None:
        await self.runtime.notifier.emit("broadcastUpdate", job.summary())
