from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields, validate
from models import db, Role, name_taken
from auth import authenticate, require_admin
from errors import NotFound, Conflict, InvalidOperation, NOT_BLANK, validate_request_data, commit_or_raise
import logging

roles_bp = Blueprint('roles', __name__)
logger = logging.getLogger(__name__)


class RoleSchema(Schema):
    """建立角色驗證 (更新時用 partial=True)"""
    name = fields.Str(
        required=True,
        validate=[validate.Length(min=1, max=100), NOT_BLANK],
        error_messages={'required': 'Role name is required'}
    )
    description = fields.Str(allow_none=True, validate=validate.Length(max=500))


def serialize_role(role):
    return {
        'id': role.id,
        'name': role.name,
        'description': role.description,
        'is_active': role.is_active,
        'created_at': role.created_at.isoformat() if role.created_at else None
    }


def get_active_role(role_id):
    role = Role.query.filter_by(id=role_id, is_active=True).first()
    if not role:
        raise NotFound('Role not found')
    return role


@roles_bp.route('', methods=['GET'])
@jwt_required()
def list_roles():
    """所有登入使用者都可以看角色列表 (加成員時要選角色)"""
    authenticate()
    roles = Role.query.filter_by(is_active=True).order_by(Role.name).all()
    return jsonify({
        'roles': [serialize_role(r) for r in roles],
        'total': len(roles)
    }), 200


@roles_bp.route('', methods=['POST'])
@jwt_required()
def create_role():
    current_user = authenticate()
    require_admin(current_user)

    result = validate_request_data(RoleSchema, request.get_json(silent=True))
    name = result['name'].strip()

    if name_taken(Role, name):
        raise Conflict('Role name already exists')

    role = Role(name=name, description=result.get('description'))
    db.session.add(role)
    commit_or_raise(db, 'role creation')

    logger.info(f"Role created: {role.name} by {current_user.email}")

    return jsonify({
        'message': 'Role created successfully',
        'role': serialize_role(role)
    }), 201


@roles_bp.route('/<int:role_id>', methods=['PATCH'])
@jwt_required()
def update_role(role_id):
    current_user = authenticate()
    require_admin(current_user)
    role = get_active_role(role_id)

    result = validate_request_data(RoleSchema, request.get_json(silent=True), partial=True)

    if 'name' in result:
        name = result['name'].strip()
        if name_taken(Role, name, exclude_id=role.id):
            raise Conflict('Role name already exists')
        role.name = name

    if 'description' in result:
        role.description = result['description']

    commit_or_raise(db, 'role update')
    logger.info(f"Role {role_id} updated by {current_user.email}")

    return jsonify({
        'message': 'Role updated successfully',
        'role': serialize_role(role)
    }), 200


@roles_bp.route('/<int:role_id>', methods=['DELETE'])
@jwt_required()
def delete_role(role_id):
    """
    軟刪除角色

    系統管理員角色不能刪,否則沒有人能再管理系統
    """
    current_user = authenticate()
    require_admin(current_user)
    role = get_active_role(role_id)

    if role.name == current_app.config['ADMIN_ROLE_NAME']:
        raise InvalidOperation('The administrator role cannot be deleted')

    role.is_active = False
    commit_or_raise(db, 'role deletion')

    logger.info(f"Role deleted: {role.name} by {current_user.email}")

    return jsonify({'message': 'Role deleted successfully'}), 200
