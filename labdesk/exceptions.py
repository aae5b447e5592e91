"""
统一异常体系。

所有业务异常继承 BaseAppException，包含：
- type:        错误类型标识（validation_error / block / forbidden）
- code:        业务错误码（ACTIVE_INVOICE_EXISTS / DUPLICATE_IDENTIFIER / ...）
- message:     人类可读的描述
- detail:      可选的附加信息（dict / list / None）
- http_status: HTTP 状态码

View 层只需 raise，exception_handler 统一捕获并格式化响应。
"""


class BaseAppException(Exception):
    """所有业务异常的基类。"""

    type = 'error'
    code = 'UNKNOWN_ERROR'
    http_status = 500

    def __init__(self, message, code=None, detail=None, http_status=None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)


class ValidationError(BaseAppException):
    """输入验证失败。intake / billing 层抛出，400。"""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class BlockError(BaseAppException):
    """业务规则阻止操作。service 层抛出，409（找不到资源时用 404）。"""

    type = 'block'
    code = 'BUSINESS_BLOCK'
    http_status = 409


class DuplicateIdentifierError(BlockError):
    """
    编号冲突：重试若干次后仍撞上唯一约束。

    调用方可以稍后重新提交，届时会重新取号。
    """

    code = 'DUPLICATE_IDENTIFIER'


class PermissionDeniedError(BaseAppException):
    """当前角色无权执行该操作，403。"""

    type = 'forbidden'
    code = 'INSUFFICIENT_PERMISSIONS'
    http_status = 403


class AuthenticationError(BaseAppException):
    """账号或密码错误，401。"""

    type = 'unauthorized'
    code = 'INVALID_CREDENTIALS'
    http_status = 401
