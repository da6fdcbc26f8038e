from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from sqlalchemy import func, case, and_, or_
from marshmallow import Schema, fields, validate
from models import db, Project, ProjectMember, User, Role, Category, State, Task, ActivityLog, PRIORITIES, log_activity
from auth import authenticate, user_summary
from errors import NotFound, Forbidden, InvalidInput, Conflict, validate_request_data, commit_or_raise
from permissions import (
    can_read_project, can_write_project,
    can_manage_members, find_member, is_project_owner, project_role
)
from workflow import resolve_state, apply_status_change, apply_updates, state_summary
from notifications import notify_member_added
from datetime import datetime
import logging

projects_bp = Blueprint('projects', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class TagList(fields.List):
    """標籤:保留順序,去掉重複"""

    def __init__(self, **kwargs):
        super().__init__(fields.Str(validate=validate.Length(min=1, max=50)), **kwargs)

    def _deserialize(self, value, attr, data, **kwargs):
        tags = super()._deserialize(value, attr, data, **kwargs)
        return list(dict.fromkeys(tag.strip() for tag in tags))

class CreateProjectSchema(Schema):
    """建立專案驗證"""
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Project name is required'}
    )
    description = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=5000),
        error_messages={'required': 'Project description is required'}
    )
    category_id = fields.Int(required=True, error_messages={'required': 'Category is required'})
    status_id = fields.Int(required=True, error_messages={'required': 'Status is required'})
    priority = fields.Str(validate=validate.OneOf(PRIORITIES), load_default='Medium')
    start_date = fields.DateTime(allow_none=True)
    end_date = fields.DateTime(allow_none=True)
    estimated_hours = fields.Float(allow_none=True, validate=validate.Range(min=0))
    actual_hours = fields.Float(validate=validate.Range(min=0))
    budget = fields.Float(allow_none=True, validate=validate.Range(min=0))
    tags = TagList()

class UpdateProjectSchema(Schema):
    """
    更新專案驗證

    這就是可以修改的欄位清單,owner_id / status_id / members 不能從這裡改
    """
    name = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(validate=validate.Length(min=1, max=5000))
    category_id = fields.Int()
    priority = fields.Str(validate=validate.OneOf(PRIORITIES))
    start_date = fields.DateTime(allow_none=True)
    end_date = fields.DateTime(allow_none=True)
    estimated_hours = fields.Float(allow_none=True, validate=validate.Range(min=0))
    actual_hours = fields.Float(validate=validate.Range(min=0))
    budget = fields.Float(allow_none=True, validate=validate.Range(min=0))
    tags = TagList()

class ChangeStatusSchema(Schema):
    status_id = fields.Int(required=True, error_messages={'required': 'status_id is required'})

class AddMemberSchema(Schema):
    """新增成員驗證"""
    user_id = fields.Int(required=True, error_messages={'required': 'user_id is required'})
    role_id = fields.Int(required=True, error_messages={'required': 'role_id is required'})

# ============================================
# 輔助函數
# ============================================

def get_active_project(project_id):
    """找不到或已軟刪除 -> NotFound"""
    project = Project.query.filter_by(id=project_id, is_active=True).first()
    if not project:
        raise NotFound('Project not found')
    return project


def get_readable_project(project_id, user_id):
    """
    取得使用者看得到的專案

    沒有權限也回 NotFound,不讓外人知道專案存不存在
    """
    project = get_active_project(project_id)
    if not can_read_project(user_id, project):
        logger.warning(f"User {user_id} has no access to project {project_id}")
        raise NotFound('Project not found or no access')
    return project


def get_owned_project(project_id, user_id, action):
    """owner 才能做的操作:看得到但不是 owner -> Forbidden"""
    project = get_readable_project(project_id, user_id)
    if not can_write_project(user_id, project):
        raise Forbidden(f'Only the project owner can {action}')
    return project


def find_active_category(category_id):
    category = Category.query.filter_by(id=category_id, is_active=True).first()
    if not category:
        raise InvalidInput('The specified category does not exist')
    return category


def serialize_member(member):
    return {
        'user': user_summary(member.user),
        'role': {
            'id': member.role.id,
            'name': member.role.name
        } if member.role else None,
        'joined_at': member.joined_at.isoformat() if member.joined_at else None
    }


def serialize_project(project, user_id=None):
    data = {
        'id': project.id,
        'name': project.name,
        'description': project.description,
        'category': {
            'id': project.category.id,
            'name': project.category.name
        } if project.category else None,
        'owner': user_summary(project.owner),
        'status': state_summary(project.status),
        'priority': project.priority,
        'start_date': project.start_date.isoformat() if project.start_date else None,
        'end_date': project.end_date.isoformat() if project.end_date else None,
        'estimated_hours': project.estimated_hours,
        'actual_hours': project.actual_hours,
        'budget': project.budget,
        'tags': project.tags or [],
        'members': [serialize_member(m) for m in project.members],
        'member_count': len(project.members),
        'is_active': project.is_active,
        'version': project.version,
        'created_at': project.created_at.isoformat() if project.created_at else None,
        'updated_at': project.updated_at.isoformat() if project.updated_at else None
    }
    if user_id is not None:
        data['my_role'] = project_role(user_id, project)
    return data


def touch_project(project):
    """
    成員異動時更新專案本身,讓 version 遞增

    兩個請求同時改成員時,後 commit 的會拿到 StaleDataError
    """
    project.updated_at = datetime.utcnow()

# ============================================
# 專案列表
# ============================================

@projects_bp.route('', methods=['GET'])
@jwt_required()
def list_projects():
    """
    取得使用者參與的專案 (owner 或 member)

    Query Parameters:
        - page, per_page: 分頁
        - status_id, category_id, priority: 篩選
    """
    current_user = authenticate()

    page = request.args.get('page', 1, type=int)
    per_page = min(
        request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int),
        current_app.config['MAX_PAGE_SIZE']
    )

    query = Project.query.filter(
        Project.is_active.is_(True),
        or_(
            Project.owner_id == current_user.id,
            Project.members.any(ProjectMember.user_id == current_user.id)
        )
    )

    status_id = request.args.get('status_id', type=int)
    if status_id is not None:
        query = query.filter(Project.status_id == status_id)

    category_id = request.args.get('category_id', type=int)
    if category_id is not None:
        query = query.filter(Project.category_id == category_id)

    priority = request.args.get('priority')
    if priority:
        query = query.filter(Project.priority == priority)

    projects = query.order_by(Project.created_at.desc(), Project.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )

    return jsonify({
        'projects': [serialize_project(p, current_user.id) for p in projects.items],
        'total': projects.total,
        'page': page,
        'per_page': per_page,
        'total_pages': projects.pages
    }), 200

# ============================================
# 建立專案
# ============================================

@projects_bp.route('', methods=['POST'])
@jwt_required()
def create_project():
    """
    建立新專案

    建立者就是 owner,不會自動加入 members
    狀態必須是啟用中的 Project 類型狀態
    """
    current_user = authenticate()

    result = validate_request_data(CreateProjectSchema, request.get_json(silent=True))

    find_active_category(result['category_id'])
    state = resolve_state(result['status_id'], Project.STATE_TYPE)

    project = Project(
        name=result['name'],
        description=result['description'],
        category_id=result['category_id'],
        owner_id=current_user.id,
        status_id=state.id,
        priority=result['priority'],
        start_date=result.get('start_date') or datetime.utcnow(),
        end_date=result.get('end_date'),
        estimated_hours=result.get('estimated_hours'),
        actual_hours=result.get('actual_hours', 0),
        budget=result.get('budget'),
        tags=result.get('tags', [])
    )

    db.session.add(project)
    db.session.flush()  # 取得 project.id 但不 commit

    log_activity(project.id, current_user.id, 'create_project', 'project', project.id,
                 {'name': project.name})

    commit_or_raise(db, 'project creation')

    logger.info(f"Project created: {project.name} by user {current_user.email}")

    return jsonify({
        'message': 'Project created successfully',
        'project': serialize_project(project, current_user.id)
    }), 201

# ============================================
# 專案詳情 / 更新 / 刪除
# ============================================

@projects_bp.route('/<int:project_id>', methods=['GET'])
@jwt_required()
def get_project(project_id):
    current_user = authenticate()
    project = get_readable_project(project_id, current_user.id)
    return jsonify(serialize_project(project, current_user.id)), 200


@projects_bp.route('/<int:project_id>', methods=['PATCH'])
@jwt_required()
def update_project(project_id):
    """
    更新專案資訊 (只有 owner)

    只更新有變動的欄位,變更內容寫進活動日誌
    """
    current_user = authenticate()
    project = get_owned_project(project_id, current_user.id, 'update the project')

    result = validate_request_data(UpdateProjectSchema, request.get_json(silent=True))

    if 'category_id' in result:
        find_active_category(result['category_id'])

    changes = apply_updates(project, result)

    if not changes:
        return jsonify({
            'message': 'No changes to update',
            'project': serialize_project(project, current_user.id)
        }), 200

    log_activity(project.id, current_user.id, 'update_project', 'project', project.id,
                 {'changes': changes})

    commit_or_raise(db, 'project update')

    logger.info(f"Project {project_id} updated by user {current_user.email}")

    return jsonify({
        'message': 'Project updated successfully',
        'project': serialize_project(project, current_user.id),
        'changes': changes
    }), 200


@projects_bp.route('/<int:project_id>', methods=['DELETE'])
@jwt_required()
def delete_project(project_id):
    """軟刪除專案 (只有 owner),底下的任務跟著看不到"""
    current_user = authenticate()
    project = get_owned_project(project_id, current_user.id, 'delete the project')

    project.is_active = False
    log_activity(project.id, current_user.id, 'delete_project', 'project', project.id,
                 {'name': project.name})

    commit_or_raise(db, 'project deletion')

    logger.info(f"Project deleted: {project.name} by user {current_user.email}")

    return jsonify({'message': 'Project deleted successfully'}), 200

# ============================================
# 專案狀態
# ============================================

@projects_bp.route('/<int:project_id>/status', methods=['PATCH'])
@jwt_required()
def change_project_status(project_id):
    """owner 或成員都可以改專案狀態 (get_readable_project 已經檢查過)"""
    current_user = authenticate()
    project = get_readable_project(project_id, current_user.id)

    result = validate_request_data(ChangeStatusSchema, request.get_json(silent=True))

    state, updates = apply_status_change(project, result['status_id'])
    changes = apply_updates(project, updates)

    if changes:
        log_activity(project.id, current_user.id, 'change_project_status', 'project', project.id,
                     {'changes': changes, 'status': state.name})
        commit_or_raise(db, 'project status change')
        logger.info(f"Project {project_id} moved to '{state.name}' by user {current_user.email}")

    return jsonify({
        'message': 'Project status updated successfully',
        'project': serialize_project(project, current_user.id)
    }), 200

# ============================================
# 專案成員管理
# ============================================

@projects_bp.route('/<int:project_id>/members', methods=['GET'])
@jwt_required()
def get_project_members(project_id):
    """取得專案成員列表"""
    current_user = authenticate()
    project = get_readable_project(project_id, current_user.id)

    return jsonify({
        'owner': user_summary(project.owner),
        'members': [serialize_member(m) for m in project.members],
        'total': len(project.members)
    }), 200


@projects_bp.route('/<int:project_id>/members', methods=['POST'])
@jwt_required()
def add_project_member(project_id):
    """
    新增專案成員 (只有 owner)

    - 使用者與角色都必須存在且啟用中
    - 已經是成員 (或是 owner 本人) -> Conflict
    """
    current_user = authenticate()
    project = get_readable_project(project_id, current_user.id)

    if not can_manage_members(current_user.id, project):
        raise Forbidden('Only the project owner can add members')

    result = validate_request_data(AddMemberSchema, request.get_json(silent=True))

    user = User.query.filter_by(id=result['user_id'], is_active=True).first()
    if not user:
        raise InvalidInput('The specified user does not exist')

    role = Role.query.filter_by(id=result['role_id'], is_active=True).first()
    if not role:
        raise InvalidInput('The specified role does not exist')

    if is_project_owner(user.id, project):
        raise Conflict('User is already the project owner')

    if find_member(project, user.id) is not None:
        raise Conflict('User is already a member of this project')

    member = ProjectMember(user_id=user.id, role_id=role.id, joined_at=datetime.utcnow())
    project.members.append(member)
    touch_project(project)

    log_activity(project.id, current_user.id, 'add_member', 'member', user.id,
                 {'email': user.email, 'role': role.name})

    commit_or_raise(db, 'member addition')

    logger.info(f"Member added to project {project_id}: user {user.email} as {role.name}")

    notify_member_added(project, user, current_user)

    return jsonify({
        'message': 'Member added successfully',
        'member': serialize_member(member),
        'project': serialize_project(project, current_user.id)
    }), 201


@projects_bp.route('/<int:project_id>/members/<int:user_id>', methods=['DELETE'])
@jwt_required()
def remove_project_member(project_id, user_id):
    """移除專案成員 (只有 owner),不是成員 -> NotFound"""
    current_user = authenticate()
    project = get_readable_project(project_id, current_user.id)

    if not can_manage_members(current_user.id, project):
        raise Forbidden('Only the project owner can remove members')

    member = find_member(project, user_id)
    if member is None:
        raise NotFound('User is not a member of this project')

    removed_email = member.user.email if member.user else None
    project.members.remove(member)
    touch_project(project)

    log_activity(project.id, current_user.id, 'remove_member', 'member', user_id,
                 {'email': removed_email})

    commit_or_raise(db, 'member removal')

    logger.info(f"Member removed from project {project_id}: user {user_id}")

    return jsonify({
        'message': 'Member removed successfully',
        'project': serialize_project(project, current_user.id)
    }), 200

# ============================================
# 專案統計
# ============================================

@projects_bp.route('/<int:project_id>/stats', methods=['GET'])
@jwt_required()
def get_project_stats(project_id):
    """
    取得專案統計資訊

    「完成」指的是任務目前的狀態 is_final,不是看 completed_at
    """
    current_user = authenticate()
    project = get_readable_project(project_id, current_user.id)

    now = datetime.utcnow()
    task_stats = db.session.query(
        func.count(Task.id).label('total'),
        func.sum(case((State.is_final.is_(True), 1), else_=0)).label('completed'),
        func.sum(case((and_(Task.due_date.isnot(None), Task.due_date < now, State.is_final.is_(False)), 1),
                      else_=0)).label('overdue')
    ).join(State, Task.status_id == State.id).filter(
        Task.project_id == project.id,
        Task.is_active.is_(True)
    ).first()

    by_status = db.session.query(
        State.id, State.name, func.count(Task.id)
    ).join(Task, Task.status_id == State.id).filter(
        Task.project_id == project.id,
        Task.is_active.is_(True)
    ).group_by(State.id, State.name).order_by(State.order, State.name).all()

    total = task_stats.total or 0
    completed = task_stats.completed or 0

    return jsonify({
        'tasks': {
            'total': total,
            'completed': completed,
            'open': total - completed,
            'overdue': task_stats.overdue or 0,
            'by_status': [
                {'status_id': state_id, 'name': name, 'count': count}
                for state_id, name, count in by_status
            ]
        },
        'members': len(project.members),
        'completion_rate': round(completed / (total or 1) * 100, 2)
    }), 200

# ============================================
# 活動日誌
# ============================================

@projects_bp.route('/<int:project_id>/activity', methods=['GET'])
@jwt_required()
def get_project_activity(project_id):
    """專案的活動紀錄,新的在前面"""
    current_user = authenticate()
    project = get_readable_project(project_id, current_user.id)

    page = request.args.get('page', 1, type=int)
    per_page = min(
        request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int),
        current_app.config['MAX_PAGE_SIZE']
    )

    activities = ActivityLog.query.filter_by(project_id=project.id).order_by(
        ActivityLog.timestamp.desc(), ActivityLog.id.desc()
    ).paginate(page=page, per_page=per_page, error_out=False)

    return jsonify({
        'activities': [{
            'id': a.id,
            'action': a.action,
            'resource_type': a.resource_type,
            'resource_id': a.resource_id,
            'details': a.details,
            'user': user_summary(a.user),
            'timestamp': a.timestamp.isoformat() if a.timestamp else None
        } for a in activities.items],
        'total': activities.total,
        'page': page,
        'per_page': per_page,
        'total_pages': activities.pages
    }), 200
