# ============================================
# notifications.py
# 站內通知:任務指派、加入專案
# ============================================

from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from models import db, Notification
from auth import authenticate
from errors import NotFound, commit_or_raise
from permissions import same_id
from sqlalchemy.exc import SQLAlchemyError
import logging

notifications_bp = Blueprint('notifications', __name__)
logger = logging.getLogger(__name__)

NOTIFICATION_TASK_ASSIGNED = 'task_assigned'
NOTIFICATION_MEMBER_ADDED = 'member_added'

# ============================================
# 1. 建立通知 (內部使用)
# ============================================

def _deliver(user_id, notification_type, title, content, project_id=None, task_id=None):
    """
    寫一筆通知並獨立 commit

    通知失敗不能影響已經完成的業務操作,所以這裡只記 log 不往外丟
    """
    try:
        notification = Notification(
            user_id=user_id,
            type=notification_type,
            title=title,
            content=content,
            related_project_id=project_id,
            related_task_id=task_id
        )
        db.session.add(notification)
        db.session.commit()
        logger.info(f"Notification '{notification_type}' sent to user {user_id}")
        return notification
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Failed to send '{notification_type}' notification to user {user_id}: {str(e)}",
                     exc_info=True)
        return None


def _should_notify(recipient, actor):
    if not current_app.config.get('NOTIFICATIONS_ENABLED', True):
        return False
    if recipient is None:
        return False
    # 自己指派給自己不用通知
    return not same_id(recipient.id, actor.id)


def notify_task_assigned(task, assignee, actor):
    """任務指派通知 (在任務 commit 之後呼叫)"""
    if not _should_notify(assignee, actor):
        return None

    return _deliver(
        assignee.id,
        NOTIFICATION_TASK_ASSIGNED,
        f'New task assigned: {task.title}',
        f'{actor.first_name} {actor.last_name} assigned you the task "{task.title}"',
        project_id=task.project_id,
        task_id=task.id
    )


def notify_member_added(project, member_user, actor):
    """加入專案通知"""
    if not _should_notify(member_user, actor):
        return None

    return _deliver(
        member_user.id,
        NOTIFICATION_MEMBER_ADDED,
        f'You were added to project {project.name}',
        f'{actor.first_name} {actor.last_name} added you to the project "{project.name}"',
        project_id=project.id
    )

# ============================================
# 2. 取得使用者的通知
# ============================================

def serialize_notification(n):
    return {
        'id': n.id,
        'type': n.type,
        'title': n.title,
        'content': n.content,
        'is_read': n.is_read,
        'project': {
            'id': n.project.id,
            'name': n.project.name
        } if n.project else None,
        'task': {
            'id': n.task.id,
            'title': n.task.title
        } if n.task else None,
        'created_at': n.created_at.isoformat() if n.created_at else None
    }


@notifications_bp.route('/notifications', methods=['GET'])
@jwt_required()
def get_notifications():
    """取得當前使用者的通知"""
    current_user = authenticate()

    # 查詢參數
    unread_only = request.args.get('unread_only', 'false').lower() in ('1', 'true', 'yes')
    notification_type = request.args.get('type')
    page = request.args.get('page', 1, type=int)
    per_page = min(
        request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int),
        current_app.config['MAX_PAGE_SIZE']
    )

    query = Notification.query.filter_by(user_id=current_user.id)

    if unread_only:
        query = query.filter_by(is_read=False)

    if notification_type:
        query = query.filter_by(type=notification_type)

    # 最新的在前
    notifications = query.order_by(Notification.created_at.desc(), Notification.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )

    return jsonify({
        'notifications': [serialize_notification(n) for n in notifications.items],
        'total': notifications.total,
        'unread_count': Notification.query.filter_by(user_id=current_user.id, is_read=False).count(),
        'page': page,
        'per_page': per_page,
        'total_pages': notifications.pages
    }), 200

# ============================================
# 3. 標記通知為已讀
# ============================================

@notifications_bp.route('/notifications/<int:notification_id>/read', methods=['PATCH'])
@jwt_required()
def mark_notification_read(notification_id):
    """標記單個通知為已讀,別人的通知視為不存在"""
    current_user = authenticate()

    notification = Notification.query.filter_by(
        id=notification_id,
        user_id=current_user.id
    ).first()

    if not notification:
        raise NotFound('Notification not found')

    notification.is_read = True
    commit_or_raise(db, 'notification update')

    return jsonify({
        'message': 'Notification marked as read',
        'notification': serialize_notification(notification)
    }), 200


@notifications_bp.route('/notifications/read-all', methods=['PATCH'])
@jwt_required()
def mark_all_notifications_read():
    """標記所有通知為已讀"""
    current_user = authenticate()

    updated = Notification.query.filter_by(user_id=current_user.id, is_read=False)\
        .update({'is_read': True})
    commit_or_raise(db, 'notification update')

    return jsonify({
        'message': 'All notifications marked as read',
        'updated': updated
    }), 200
