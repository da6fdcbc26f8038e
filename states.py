from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields, validate
from models import db, State, Task, Project, STATE_TYPES, name_taken
from auth import authenticate, require_admin
from errors import NotFound, Conflict, InvalidInput, InvalidOperation, NOT_BLANK, validate_request_data, commit_or_raise
import logging

states_bp = Blueprint('states', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

COLOR_PATTERN = r'^#[0-9a-fA-F]{6}$'

class CreateStateSchema(Schema):
    """建立狀態驗證,type 只能在建立時決定"""
    name = fields.Str(
        required=True,
        validate=[validate.Length(min=1, max=100), NOT_BLANK],
        error_messages={'required': 'State name is required'}
    )
    type = fields.Str(
        required=True,
        validate=validate.OneOf(STATE_TYPES),
        error_messages={'required': 'State type is required'}
    )
    description = fields.Str(allow_none=True, validate=validate.Length(max=500))
    color = fields.Str(validate=validate.Regexp(COLOR_PATTERN, error='Color must be a hex value like #1a2b3c'))
    order = fields.Int(validate=validate.Range(min=0))
    is_final = fields.Bool()

class UpdateStateSchema(Schema):
    """更新狀態驗證 (沒有 type)"""
    name = fields.Str(validate=[validate.Length(min=1, max=100), NOT_BLANK])
    description = fields.Str(allow_none=True, validate=validate.Length(max=500))
    color = fields.Str(validate=validate.Regexp(COLOR_PATTERN, error='Color must be a hex value like #1a2b3c'))
    order = fields.Int(validate=validate.Range(min=0))
    is_final = fields.Bool()

# ============================================
# 輔助函數
# ============================================

def serialize_state(state):
    return {
        'id': state.id,
        'name': state.name,
        'description': state.description,
        'color': state.color,
        'order': state.order,
        'is_final': state.is_final,
        'type': state.type,
        'is_active': state.is_active,
        'created_at': state.created_at.isoformat() if state.created_at else None
    }


def get_active_state(state_id):
    state = State.query.filter_by(id=state_id, is_active=True).first()
    if not state:
        raise NotFound('State not found')
    return state


def state_in_use(state):
    """還有啟用中的任務或專案停在這個狀態"""
    task_count = Task.query.filter_by(status_id=state.id, is_active=True).count()
    project_count = Project.query.filter_by(status_id=state.id, is_active=True).count()
    return task_count + project_count > 0

# ============================================
# 狀態 CRUD
# ============================================

@states_bp.route('', methods=['GET'])
@jwt_required()
def list_states():
    """
    取得啟用中的狀態,依 (order, name) 排序

    Query Parameters:
        - type: Task / Project
    """
    authenticate()

    query = State.query.filter_by(is_active=True)

    state_type = request.args.get('type')
    if state_type:
        if state_type not in STATE_TYPES:
            raise InvalidInput(f"type must be one of: {', '.join(STATE_TYPES)}")
        query = query.filter_by(type=state_type)

    states = query.order_by(State.order, State.name).all()

    return jsonify({
        'states': [serialize_state(s) for s in states],
        'total': len(states)
    }), 200


@states_bp.route('', methods=['POST'])
@jwt_required()
def create_state():
    current_user = authenticate()
    require_admin(current_user)

    result = validate_request_data(CreateStateSchema, request.get_json(silent=True))
    name = result['name'].strip()

    if name_taken(State, name):
        raise Conflict('State name already exists')

    state = State(
        name=name,
        type=result['type'],
        description=result.get('description'),
        color=result.get('color', '#6b7280'),
        order=result.get('order', 0),
        is_final=result.get('is_final', False)
    )
    db.session.add(state)
    commit_or_raise(db, 'state creation')

    logger.info(f"State created: {state.name} ({state.type}) by {current_user.email}")

    return jsonify({
        'message': 'State created successfully',
        'state': serialize_state(state)
    }), 201


@states_bp.route('/<int:state_id>', methods=['PATCH'])
@jwt_required()
def update_state(state_id):
    current_user = authenticate()
    require_admin(current_user)
    state = get_active_state(state_id)

    result = validate_request_data(UpdateStateSchema, request.get_json(silent=True))

    if 'name' in result:
        name = result['name'].strip()
        if name_taken(State, name, exclude_id=state.id):
            raise Conflict('State name already exists')
        result['name'] = name

    # 改 is_final 會讓既有任務的 completed_at 跟狀態對不上
    if 'is_final' in result and result['is_final'] != state.is_final and state_in_use(state):
        raise InvalidOperation('Cannot change is_final while tasks or projects use this state')

    for field in ['name', 'description', 'color', 'order', 'is_final']:
        if field in result:
            setattr(state, field, result[field])

    commit_or_raise(db, 'state update')
    logger.info(f"State {state_id} updated by {current_user.email}")

    return jsonify({
        'message': 'State updated successfully',
        'state': serialize_state(state)
    }), 200


@states_bp.route('/<int:state_id>', methods=['DELETE'])
@jwt_required()
def delete_state(state_id):
    """軟刪除:已經在用這個狀態的任務 / 專案不受影響,只是不能再轉入"""
    current_user = authenticate()
    require_admin(current_user)
    state = get_active_state(state_id)

    state.is_active = False
    commit_or_raise(db, 'state deletion')

    logger.info(f"State deleted: {state.name} by {current_user.email}")

    return jsonify({'message': 'State deleted successfully'}), 200
