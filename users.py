from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields
from models import db, User, Role
from auth import authenticate, require_admin, serialize_user
from errors import NotFound, InvalidInput, InvalidOperation, validate_request_data, commit_or_raise
from permissions import is_self_target
import logging

users_bp = Blueprint('users', __name__)
logger = logging.getLogger(__name__)


class ChangeRoleSchema(Schema):
    """變更全域角色"""
    role_id = fields.Int(required=True, error_messages={'required': 'role_id is required'})


def get_active_user_or_404(user_id):
    user = User.query.filter_by(id=user_id, is_active=True).first()
    if not user:
        raise NotFound('User not found')
    return user

# ============================================
# 使用者列表 (只有 admin)
# ============================================

@users_bp.route('', methods=['GET'])
@jwt_required()
def list_users():
    """列出所有啟用中的使用者"""
    current_user = authenticate()
    require_admin(current_user)

    page = request.args.get('page', 1, type=int)
    per_page = min(
        request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int),
        current_app.config['MAX_PAGE_SIZE']
    )

    users = User.query.filter_by(is_active=True).order_by(User.created_at.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )

    return jsonify({
        'users': [serialize_user(u) for u in users.items],
        'total': users.total,
        'page': page,
        'per_page': per_page,
        'total_pages': users.pages
    }), 200

# ============================================
# 刪除使用者 (軟刪除)
# ============================================

@users_bp.route('/<int:user_id>', methods=['DELETE'])
@jwt_required()
def delete_user(user_id):
    """
    停用使用者帳號

    管理員不能刪除自己,在任何資料庫操作前就擋下
    """
    current_user = authenticate()
    require_admin(current_user)

    if is_self_target(current_user.id, user_id):
        raise InvalidOperation('You cannot delete your own account')

    user = get_active_user_or_404(user_id)
    user.is_active = False

    commit_or_raise(db, 'user deletion')
    logger.info(f"User {user.email} deactivated by admin {current_user.email}")

    return jsonify({'message': 'User deleted successfully'}), 200

# ============================================
# 變更全域角色
# ============================================

@users_bp.route('/<int:user_id>/role', methods=['PATCH'])
@jwt_required()
def change_user_role(user_id):
    """管理員變更其他使用者的全域角色 (不能改自己的)"""
    current_user = authenticate()
    require_admin(current_user)

    if is_self_target(current_user.id, user_id):
        raise InvalidOperation('You cannot change your own role')

    result = validate_request_data(ChangeRoleSchema, request.get_json(silent=True))

    role = Role.query.filter_by(id=result['role_id'], is_active=True).first()
    if not role:
        raise InvalidInput('The specified role does not exist')

    user = get_active_user_or_404(user_id)
    old_role = user.global_role.name if user.global_role else None
    user.global_role_id = role.id

    commit_or_raise(db, 'role change')
    # global_role 是 joined 關聯,commit 後重新載入
    db.session.refresh(user)

    logger.info(f"User {user.email} role changed from {old_role} to {role.name} by {current_user.email}")

    return jsonify({
        'message': 'Role updated successfully',
        'user': serialize_user(user)
    }), 200
