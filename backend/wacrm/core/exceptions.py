"""
标准化异常处理模块
定义 CRM 业务异常、错误码以及 FastAPI 全局异常处理器
"""
import logging
from typing import Optional, Any, Dict
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_502_BAD_GATEWAY,
    HTTP_503_SERVICE_UNAVAILABLE,
)

logger = logging.getLogger(__name__)


# ==================== 基础异常类 ====================

class CRMException(Exception):
    """CRM 基础异常类"""

    error_code: str = "CRM_ERROR"
    status_code: int = HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str = "An error occurred",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """转换为响应字典"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


# ==================== 验证相关异常 ====================

class ValidationException(CRMException):
    """数据验证异常"""
    error_code = "VALIDATION_ERROR"
    status_code = HTTP_400_BAD_REQUEST


class InvalidInputException(ValidationException):
    """无效输入"""
    error_code = "INVALID_INPUT"


class MissingSessionIdException(ValidationException):
    """请求缺少 sessionId"""
    error_code = "SESSION_ID_REQUIRED"

    def __init__(self, message: str = "sessionId is required"):
        super().__init__(message=message)


class InvalidPhoneNumberException(ValidationException):
    """号码无法规范化"""
    error_code = "INVALID_PHONE_NUMBER"

    def __init__(self, value: Optional[str] = None):
        super().__init__(message="Invalid phone number", details={"value": value})


class ResourceInUseException(ValidationException):
    """资源仍被引用，不能删除"""
    error_code = "RESOURCE_IN_USE"

    def __init__(self, resource: str, usage_count: int):
        super().__init__(
            message=f"Cannot delete {resource}: used by {usage_count} record(s)",
            details={"usage_count": usage_count}
        )


class DuplicateResourceException(CRMException):
    """唯一约束冲突"""
    error_code = "DUPLICATE_RESOURCE"
    status_code = HTTP_409_CONFLICT


# ==================== 资源不存在 ====================

class NotFoundException(CRMException):
    """资源不存在基类"""
    error_code = "NOT_FOUND"
    status_code = HTTP_404_NOT_FOUND
    resource: str = "Resource"

    def __init__(self, resource_id: Any = None, message: Optional[str] = None):
        if message is None:
            message = f"{self.resource} {resource_id} not found" if resource_id is not None else f"{self.resource} not found"
        super().__init__(message=message, details={"id": resource_id})


class ContactNotFoundException(NotFoundException):
    error_code = "CONTACT_NOT_FOUND"
    resource = "Contact"


class MessageNotFoundException(NotFoundException):
    error_code = "MESSAGE_NOT_FOUND"
    resource = "Message"


class GroupNotFoundException(NotFoundException):
    error_code = "GROUP_NOT_FOUND"
    resource = "Group"


class SessionNotFoundException(NotFoundException):
    error_code = "SESSION_NOT_FOUND"
    resource = "Session"


class JobNotFoundException(NotFoundException):
    error_code = "JOB_NOT_FOUND"
    resource = "Broadcast job"


# ==================== 会话 / 传输层异常 ====================

class SessionException(CRMException):
    """WhatsApp 会话异常基类"""
    error_code = "SESSION_ERROR"
    status_code = HTTP_400_BAD_REQUEST


class SessionAlreadyExistsException(SessionException):
    """会话 ID 已被占用"""
    error_code = "SESSION_EXISTS"

    def __init__(self, session_id: str):
        super().__init__(message=f"Session {session_id} already exists", details={"session_id": session_id})


class SessionNotReadyException(SessionException):
    """会话未连接，无法收发消息"""
    error_code = "SESSION_NOT_READY"
    status_code = HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, session_id: str, state: Optional[str] = None):
        super().__init__(
            message=f"Session {session_id} is not connected",
            details={"session_id": session_id, "state": state}
        )


class TransportException(CRMException):
    """WhatsApp 网关调用失败"""
    error_code = "TRANSPORT_ERROR"
    status_code = HTTP_502_BAD_GATEWAY


class GatewayUnavailableException(TransportException):
    """网关不可达"""
    error_code = "GATEWAY_UNAVAILABLE"
    status_code = HTTP_503_SERVICE_UNAVAILABLE


# ==================== 加密相关异常 ====================

class EncryptionException(CRMException):
    """加密相关异常"""
    error_code = "ENCRYPTION_ERROR"
    status_code = HTTP_500_INTERNAL_SERVER_ERROR


class DecryptionException(EncryptionException):
    """解密失败"""
    error_code = "DECRYPTION_FAILED"

    def __init__(self, message: str = "Decryption failed, the key may be wrong"):
        super().__init__(message=message)


# ==================== 异常处理器注册函数 ====================

def register_exception_handlers(app):
    """注册全局异常处理器"""

    @app.exception_handler(CRMException)
    async def crm_exception_handler(request: Request, exc: CRMException):
        """处理所有 CRM 自定义异常"""
        logger.warning(
            f"CRMException: {exc.error_code} - {exc.message} | "
            f"Path: {request.url.path} | Details: {exc.details}"
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                **exc.to_dict()
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """处理 HTTP 异常"""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error_code": f"HTTP_{exc.status_code}",
                "message": exc.detail,
                "details": {}
            },
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """处理所有未捕获的异常 (数据库 / 传输层故障)"""
        logger.exception(
            f"Unhandled exception: {type(exc).__name__} - {str(exc)} | "
            f"Path: {request.url.path}"
        )
        return JSONResponse(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error_code": "INTERNAL_ERROR",
                "message": "Internal server error",
                "details": {"type": type(exc).__name__}
            }
        )
