from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields, validate
from models import db, Task, Project, User, PRIORITIES, log_activity
from auth import authenticate, user_summary
from errors import NotFound, Forbidden, InvalidAssignee, validate_request_data, commit_or_raise
from permissions import (
    can_read_task, can_write_task, can_delete_task,
    can_change_task_status, can_assign_task, is_eligible_assignee
)
from projects import get_readable_project, TagList
from workflow import resolve_state, apply_status_change, apply_updates, state_summary
from notifications import notify_task_assigned
from datetime import datetime
import logging

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class CreateTaskSchema(Schema):
    """建立任務驗證"""
    title = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Task title is required'}
    )
    description = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=5000),
        error_messages={'required': 'Task description is required'}
    )
    status_id = fields.Int(required=True, error_messages={'required': 'Status is required'})
    priority = fields.Str(validate=validate.OneOf(PRIORITIES), load_default='Medium')
    assigned_to = fields.Int(allow_none=True)
    start_date = fields.DateTime(allow_none=True)
    due_date = fields.DateTime(allow_none=True)
    estimated_hours = fields.Float(validate=validate.Range(min=0))
    actual_hours = fields.Float(validate=validate.Range(min=0))
    tags = TagList()

class UpdateTaskSchema(Schema):
    """
    更新任務驗證

    狀態和指派有自己的 endpoint,這裡不接受 status_id / assigned_to
    """
    title = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(validate=validate.Length(min=1, max=5000))
    priority = fields.Str(validate=validate.OneOf(PRIORITIES))
    start_date = fields.DateTime(allow_none=True)
    due_date = fields.DateTime(allow_none=True)
    estimated_hours = fields.Float(validate=validate.Range(min=0))
    actual_hours = fields.Float(validate=validate.Range(min=0))
    tags = TagList()

class ChangeTaskStatusSchema(Schema):
    status_id = fields.Int(required=True, error_messages={'required': 'status_id is required'})

class AssignTaskSchema(Schema):
    """assigned_to 給 null 代表取消指派"""
    assigned_to = fields.Int(required=True, allow_none=True,
                             error_messages={'required': 'assigned_to is required'})

# ============================================
# 輔助函數
# ============================================

def get_active_task(task_id):
    """
    任務或所屬專案被軟刪除,都當作找不到

    Returns:
        tuple: (task, project)
    """
    task = Task.query.filter_by(id=task_id, is_active=True).first()
    if not task or not task.project or not task.project.is_active:
        raise NotFound('Task not found')
    return task, task.project


def get_readable_task(task_id, user_id):
    """任務存在但沒有權限看 -> Forbidden"""
    task, project = get_active_task(task_id)
    if not can_read_task(user_id, task, project):
        logger.warning(f"User {user_id} denied access to task {task_id}")
        raise Forbidden('You do not have access to this task')
    return task, project


def resolve_assignee(user_id, project):
    """
    找出可以被指派的使用者

    Raises:
        InvalidAssignee: 使用者不存在、被停用,或不是專案 owner / 成員
    """
    user = User.query.filter_by(id=user_id, is_active=True).first()
    if not user or not is_eligible_assignee(user.id, project):
        raise InvalidAssignee('The assigned user must be the project owner or a member')
    return user


def serialize_task(task):
    now = datetime.utcnow()
    return {
        'id': task.id,
        'title': task.title,
        'description': task.description,
        'status': state_summary(task.status),
        'priority': task.priority,
        'estimated_hours': task.estimated_hours,
        'actual_hours': task.actual_hours,
        'tags': task.tags or [],
        'project': {
            'id': task.project.id,
            'name': task.project.name
        } if task.project else None,
        'assigned_to': user_summary(task.assignee),
        'created_by': user_summary(task.creator),
        'start_date': task.start_date.isoformat() if task.start_date else None,
        'due_date': task.due_date.isoformat() if task.due_date else None,
        'completed_at': task.completed_at.isoformat() if task.completed_at else None,
        'is_overdue': bool(task.due_date and task.due_date < now and task.completed_at is None),
        'is_active': task.is_active,
        'version': task.version,
        'created_at': task.created_at.isoformat() if task.created_at else None,
        'updated_at': task.updated_at.isoformat() if task.updated_at else None
    }

# ============================================
# 建立任務
# ============================================

@tasks_bp.route('/projects/<int:project_id>/tasks', methods=['POST'])
@jwt_required()
def create_task(project_id):
    """
    在專案裡建立任務 (owner 或成員)

    - 狀態必須是啟用中的 Task 類型狀態
    - 一開始就指派的話,被指派者必須是專案 owner 或成員
    - 初始狀態就是 final 的話,completed_at 直接設定
    """
    current_user = authenticate()
    project = get_readable_project(project_id, current_user.id)

    result = validate_request_data(CreateTaskSchema, request.get_json(silent=True))

    state = resolve_state(result['status_id'], Task.STATE_TYPE)

    assignee = None
    if result.get('assigned_to') is not None:
        assignee = resolve_assignee(result['assigned_to'], project)

    task = Task(
        title=result['title'],
        description=result['description'],
        status_id=state.id,
        priority=result['priority'],
        project_id=project.id,
        assigned_to=assignee.id if assignee else None,
        created_by=current_user.id,
        start_date=result.get('start_date') or datetime.utcnow(),
        due_date=result.get('due_date'),
        estimated_hours=result.get('estimated_hours', 0),
        actual_hours=result.get('actual_hours', 0),
        tags=result.get('tags', []),
        completed_at=datetime.utcnow() if state.is_final else None
    )

    db.session.add(task)
    db.session.flush()

    log_activity(project.id, current_user.id, 'create_task', 'task', task.id,
                 {'title': task.title, 'assigned_to': task.assigned_to})

    commit_or_raise(db, 'task creation')

    logger.info(f"Task created: {task.title} in project {project.id} by {current_user.email}")

    if assignee is not None:
        notify_task_assigned(task, assignee, current_user)

    return jsonify({
        'message': 'Task created successfully',
        'task': serialize_task(task)
    }), 201

# ============================================
# 專案任務列表
# ============================================

@tasks_bp.route('/projects/<int:project_id>/tasks', methods=['GET'])
@jwt_required()
def get_project_tasks(project_id):
    """
    取得專案的任務列表

    Query Parameters:
        - status_id, assigned_to, priority: 篩選
        - page, per_page: 分頁
    """
    current_user = authenticate()
    project = get_readable_project(project_id, current_user.id)

    page = request.args.get('page', 1, type=int)
    per_page = min(
        request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int),
        current_app.config['MAX_PAGE_SIZE']
    )

    query = Task.query.filter_by(project_id=project.id, is_active=True)

    status_id = request.args.get('status_id', type=int)
    if status_id is not None:
        query = query.filter(Task.status_id == status_id)

    assigned_to = request.args.get('assigned_to', type=int)
    if assigned_to is not None:
        query = query.filter(Task.assigned_to == assigned_to)

    priority = request.args.get('priority')
    if priority:
        query = query.filter(Task.priority == priority)

    tasks = query.order_by(Task.created_at.desc(), Task.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )

    return jsonify({
        'tasks': [serialize_task(t) for t in tasks.items],
        'total': tasks.total,
        'page': page,
        'per_page': per_page,
        'total_pages': tasks.pages
    }), 200

# ============================================
# 我的任務
# ============================================

@tasks_bp.route('/tasks/my', methods=['GET'])
@jwt_required()
def get_my_tasks():
    """
    指派給我的任務

    排序:due_date 由近到遠 (沒有 due_date 的排最後),再來是新建立的在前
    """
    current_user = authenticate()

    page = request.args.get('page', 1, type=int)
    per_page = min(
        request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int),
        current_app.config['MAX_PAGE_SIZE']
    )

    tasks = Task.query.join(Project, Task.project_id == Project.id).filter(
        Task.assigned_to == current_user.id,
        Task.is_active.is_(True),
        Project.is_active.is_(True)
    ).order_by(
        Task.due_date.is_(None),
        Task.due_date.asc(),
        Task.created_at.desc(),
        Task.id.desc()
    ).paginate(page=page, per_page=per_page, error_out=False)

    return jsonify({
        'tasks': [serialize_task(t) for t in tasks.items],
        'total': tasks.total,
        'page': page,
        'per_page': per_page,
        'total_pages': tasks.pages
    }), 200

# ============================================
# 任務詳情 / 更新 / 刪除
# ============================================

@tasks_bp.route('/tasks/<int:task_id>', methods=['GET'])
@jwt_required()
def get_task(task_id):
    current_user = authenticate()
    task, _ = get_readable_task(task_id, current_user.id)
    return jsonify(serialize_task(task)), 200


@tasks_bp.route('/tasks/<int:task_id>', methods=['PATCH'])
@jwt_required()
def update_task(task_id):
    """專案 owner、建立者、被指派者可以修改"""
    current_user = authenticate()
    task, project = get_readable_task(task_id, current_user.id)

    if not can_write_task(current_user.id, task, project):
        raise Forbidden('You cannot modify this task')

    result = validate_request_data(UpdateTaskSchema, request.get_json(silent=True))

    changes = apply_updates(task, result)

    if not changes:
        return jsonify({
            'message': 'No changes to update',
            'task': serialize_task(task)
        }), 200

    log_activity(project.id, current_user.id, 'update_task', 'task', task.id, {'changes': changes})

    commit_or_raise(db, 'task update')

    logger.info(f"Task {task_id} updated by {current_user.email}")

    return jsonify({
        'message': 'Task updated successfully',
        'task': serialize_task(task),
        'changes': changes
    }), 200


@tasks_bp.route('/tasks/<int:task_id>', methods=['DELETE'])
@jwt_required()
def delete_task(task_id):
    """軟刪除任務 (專案 owner 或建立者)"""
    current_user = authenticate()
    task, project = get_readable_task(task_id, current_user.id)

    if not can_delete_task(current_user.id, task, project):
        raise Forbidden('Only the project owner or the task creator can delete this task')

    task.is_active = False
    log_activity(project.id, current_user.id, 'delete_task', 'task', task.id, {'title': task.title})

    commit_or_raise(db, 'task deletion')

    logger.info(f"Task deleted: {task.title} by {current_user.email}")

    return jsonify({'message': 'Task deleted successfully'}), 200

# ============================================
# 任務狀態
# ============================================

@tasks_bp.route('/tasks/<int:task_id>/status', methods=['PATCH'])
@jwt_required()
def change_task_status(task_id):
    """
    變更任務狀態 (專案 owner、成員、被指派者)

    進入 final 狀態設定 completed_at,離開時清掉
    """
    current_user = authenticate()
    task, project = get_readable_task(task_id, current_user.id)

    if not can_change_task_status(current_user.id, task, project):
        raise Forbidden('You cannot change the status of this task')

    result = validate_request_data(ChangeTaskStatusSchema, request.get_json(silent=True))

    state, updates = apply_status_change(task, result['status_id'])
    changes = apply_updates(task, updates)

    if changes:
        log_activity(project.id, current_user.id, 'change_task_status', 'task', task.id,
                     {'changes': changes, 'status': state.name})
        commit_or_raise(db, 'task status change')
        logger.info(f"Task {task_id} moved to '{state.name}' by {current_user.email}")

    return jsonify({
        'message': 'Task status updated successfully',
        'task': serialize_task(task)
    }), 200

# ============================================
# 任務指派
# ============================================

@tasks_bp.route('/tasks/<int:task_id>/assign', methods=['PATCH'])
@jwt_required()
def assign_task(task_id):
    """
    指派任務 (只有專案 owner)

    被指派者必須是專案 owner 或成員,assigned_to 為 null 代表取消指派
    """
    current_user = authenticate()
    task, project = get_active_task(task_id)

    if not can_assign_task(current_user.id, project):
        raise Forbidden('Only the project owner can assign tasks')

    result = validate_request_data(AssignTaskSchema, request.get_json(silent=True))

    assignee = None
    if result['assigned_to'] is not None:
        assignee = resolve_assignee(result['assigned_to'], project)

    changes = apply_updates(task, {'assigned_to': assignee.id if assignee else None})

    if changes:
        log_activity(project.id, current_user.id, 'assign_task', 'task', task.id, {'changes': changes})
        commit_or_raise(db, 'task assignment')
        logger.info(f"Task {task_id} assigned to {assignee.email if assignee else 'nobody'} "
                    f"by {current_user.email}")

        if assignee is not None:
            notify_task_assigned(task, assignee, current_user)

    return jsonify({
        'message': 'Task assigned successfully' if assignee else 'Task unassigned successfully',
        'task': serialize_task(task)
    }), 200
