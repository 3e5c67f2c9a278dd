"""
安全中间件 - 添加安全头部和请求监控
"""
import time
import uuid
import logging
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger(__name__)

# 超过该耗时 (秒) 的请求记为慢请求
SLOW_REQUEST_SECONDS = 5.0


class SecurityMiddleware(BaseHTTPMiddleware):
    """
    安全中间件：
    1. 添加安全 HTTP 头部
    2. 为每个请求分配 X-Request-ID 并记录处理时间
    3. 记录慢请求与异常请求
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        client_ip = request.headers.get("X-Real-IP", request.client.host if request.client else "unknown")

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Request {request_id} error from {client_ip}: {request.method} {request.url.path} - {e}")
            raise

        process_time = time.time() - start_time

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["X-Request-ID"] = request_id
        # 媒体文件允许浏览器缓存，其余接口禁止缓存
        if "/media" not in request.url.path:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
            response.headers["Pragma"] = "no-cache"

        if "Server" in response.headers:
            del response.headers["Server"]

        response.headers["X-Process-Time"] = f"{process_time:.4f}"

        if process_time > SLOW_REQUEST_SECONDS:
            logger.warning(f"Slow request: {request.method} {request.url.path} took {process_time:.2f}s from {client_ip}")

        return response
