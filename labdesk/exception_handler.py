"""
统一异常处理器。

挂到 DRF 的 EXCEPTION_HANDLER setting 上。
所有响应（无论成功还是失败）前端都能用同一套逻辑判断：
  response.type 存在  → 出问题了
  没有 type 字段      → 成功

统一错误响应格式：
{
    "type":    "validation_error" | "block" | "forbidden" | "unauthorized" | "error",
    "code":    "ACTIVE_INVOICE_EXISTS",
    "message": "An active invoice already exists for this order",
    "detail":  { ... }  // 可选
}
"""

from django.http import JsonResponse
from rest_framework import exceptions as drf_exceptions
from rest_framework.views import exception_handler as drf_default_handler

from .exceptions import BaseAppException


def _body(type_, code, message, detail=None):
    body = {
        'type': type_,
        'code': code,
        'message': message,
    }
    if detail is not None:
        body['detail'] = detail
    return body


def unified_exception_handler(exc, context):
    """
    DRF exception handler entry point.

    优先级：
    1. BaseAppException 及其子类 → 统一格式
    2. DRF 自带的 ValidationError / ParseError → validation_error
    3. 未登录 → 401 unauthorized（SessionAuthentication 默认给 403，这里纠正）
    4. 无权限 → 403 forbidden
    5. 其他 APIException（404 / 405 ...）→ 先走 DRF 默认处理拿状态码，再套统一格式
    6. 非 API 异常 → 返回 None，按 Django 默认冒泡
    """

    # --- 1. 我们自己的异常体系 ---
    if isinstance(exc, BaseAppException):
        return JsonResponse(
            _body(exc.type, exc.code, exc.message, exc.detail),
            status=exc.http_status,
        )

    # --- 2. DRF 的校验 / 解析错误 ---
    if isinstance(exc, drf_exceptions.ValidationError):
        return JsonResponse(
            _body('validation_error', 'VALIDATION_ERROR', 'Request validation failed', exc.detail),
            status=400,
        )
    if isinstance(exc, drf_exceptions.ParseError):
        return JsonResponse(
            _body('validation_error', 'MALFORMED_REQUEST', str(exc.detail)),
            status=400,
        )

    # --- 3. 未登录 ---
    if isinstance(exc, (drf_exceptions.NotAuthenticated, drf_exceptions.AuthenticationFailed)):
        return JsonResponse(
            _body('unauthorized', 'NOT_AUTHENTICATED', str(exc.detail)),
            status=401,
        )

    # --- 4. 角色不够 ---
    if isinstance(exc, drf_exceptions.PermissionDenied):
        return JsonResponse(
            _body('forbidden', 'INSUFFICIENT_PERMISSIONS', str(exc.detail)),
            status=403,
        )

    # --- 5. 其他的先交给 DRF 默认处理 ---
    response = drf_default_handler(exc, context)
    if response is None:
        return None

    code = getattr(exc, 'default_code', None) or ('not_found' if response.status_code == 404 else 'error')
    return JsonResponse(
        _body('error', str(code).upper(), str(getattr(exc, 'detail', exc))),
        status=response.status_code,
    )
