"""
角色 = Django auth Group。

  admin      管理员（superuser 也算）
  reception  前台：建档、下单、开发票、收款
  lab_tech   检验技师：录入结果、推进订单状态
  doctor     医生：下单、审核结果
  patient    患者：只看自己的订单和结果
"""

from rest_framework.permissions import BasePermission

ADMIN = 'admin'
RECEPTION = 'reception'
LAB_TECH = 'lab_tech'
DOCTOR = 'doctor'
PATIENT = 'patient'

ROLES = (ADMIN, RECEPTION, LAB_TECH, DOCTOR, PATIENT)
STAFF_ROLES = (ADMIN, RECEPTION, LAB_TECH, DOCTOR)


def get_role(user):
    """返回用户的角色名；未登录或没有分组时返回 None。"""
    if user is None or not user.is_authenticated:
        return None
    if user.is_superuser:
        return ADMIN
    group = user.groups.filter(name__in=ROLES).order_by('name').first()
    return group.name if group else None


def has_role(user, *roles):
    return get_role(user) in roles


def HasRole(*roles):
    """
    DRF permission class 工厂：permission_classes = [HasRole(ADMIN, RECEPTION)]

    未登录交给 IsAuthenticated 报 401，这里只判断角色。
    """

    class _HasRole(BasePermission):
        message = 'Insufficient permissions'

        def has_permission(self, request, view):
            return has_role(request.user, *roles)

    _HasRole.__name__ = f"HasRole({', '.join(roles)})"
    return _HasRole
