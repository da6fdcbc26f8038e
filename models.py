from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import func
from datetime import datetime

db = SQLAlchemy()

# 專案與任務共用的優先級
PRIORITIES = ['Low', 'Medium', 'High', 'Critical']

# State.type 的合法值
STATE_TYPE_TASK = 'Task'
STATE_TYPE_PROJECT = 'Project'
STATE_TYPES = [STATE_TYPE_TASK, STATE_TYPE_PROJECT]

# ============================================
# 1. Role 模型
# ============================================
class Role(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False, index=True)
    description = db.Column(db.String(500))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

# ============================================
# 2. User 模型
# ============================================
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    phone = db.Column(db.String(20))
    avatar_url = db.Column(db.String(500))
    global_role_id = db.Column(db.Integer, db.ForeignKey('role.id'), nullable=True)

    # 軟刪除:永遠不做實體刪除
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_login = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 關聯
    global_role = db.relationship('Role', lazy='joined')
    owned_projects = db.relationship('Project', backref='owner', lazy=True)
    tasks_assigned = db.relationship('Task', foreign_keys='Task.assigned_to', backref='assignee', lazy=True)
    tasks_created = db.relationship('Task', foreign_keys='Task.created_by', backref='creator', lazy=True)
    notifications = db.relationship('Notification', backref='user', lazy=True, cascade='all,delete-orphan')

# ============================================
# 3. State 模型 (任務 / 專案共用的工作流程狀態)
# ============================================
class State(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False, index=True)
    description = db.Column(db.String(500))
    color = db.Column(db.String(7), nullable=False, default='#6b7280')
    order = db.Column(db.Integer, nullable=False, default=0)
    is_final = db.Column(db.Boolean, nullable=False, default=False)
    # 'Task' 或 'Project',建立後不可修改
    type = db.Column(db.String(20), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint("type IN ('Task', 'Project')", name='ck_state_type'),
        db.Index('idx_state_type_order', 'type', 'order'),
    )

# ============================================
# 4. Category 模型
# ============================================
class Category(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False, index=True)
    description = db.Column(db.String(500))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

# ============================================
# 5. Project 模型
# ============================================
class Project(db.Model):
    STATE_TYPE = STATE_TYPE_PROJECT
    TRACKS_COMPLETION = False

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category_id = db.Column(db.Integer, db.ForeignKey('category.id'), nullable=False)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    status_id = db.Column(db.Integer, db.ForeignKey('state.id'), nullable=False)
    priority = db.Column(db.String(20), nullable=False, default='Medium')

    start_date = db.Column(db.DateTime, default=datetime.utcnow)
    end_date = db.Column(db.DateTime)
    estimated_hours = db.Column(db.Float)
    actual_hours = db.Column(db.Float, nullable=False, default=0)
    budget = db.Column(db.Float)
    tags = db.Column(db.JSON, nullable=False, default=list)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 樂觀鎖:每次 UPDATE 都會比對並遞增
    version = db.Column(db.Integer, nullable=False)

    # 關聯
    category = db.relationship('Category')
    status = db.relationship('State')
    tasks = db.relationship('Task', backref='project', lazy=True)
    members = db.relationship(
        'ProjectMember',
        backref='project',
        lazy='selectin',
        cascade='all,delete-orphan',
        order_by='ProjectMember.id'
    )
    activity_logs = db.relationship('ActivityLog', backref='project', lazy=True)

    __mapper_args__ = {'version_id_col': version}

    # 索引
    __table_args__ = (
        db.Index('idx_project_owner_active', 'owner_id', 'is_active'),
        db.Index('idx_project_status', 'status_id'),
    )

# ============================================
# 6. ProjectMember 模型 (只能透過 Project 操作)
# ============================================
class ProjectMember(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    role_id = db.Column(db.Integer, db.ForeignKey('role.id'), nullable=False)
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    # 關聯
    user = db.relationship('User', backref='project_memberships')
    role = db.relationship('Role')

    # 唯一性約束
    __table_args__ = (
        db.UniqueConstraint('project_id', 'user_id', name='unique_project_member'),
    )

# ============================================
# 7. Task 模型
# ============================================
class Task(db.Model):
    STATE_TYPE = STATE_TYPE_TASK
    TRACKS_COMPLETION = True

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    status_id = db.Column(db.Integer, db.ForeignKey('state.id'), nullable=False)
    priority = db.Column(db.String(20), nullable=False, default='Medium')

    estimated_hours = db.Column(db.Float, nullable=False, default=0)
    actual_hours = db.Column(db.Float, nullable=False, default=0)
    tags = db.Column(db.JSON, nullable=False, default=list)

    # 關聯欄位 (project_id 與 created_by 建立後不可修改)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    assigned_to = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)

    # 時間欄位
    start_date = db.Column(db.DateTime, default=datetime.utcnow)
    due_date = db.Column(db.DateTime, nullable=True)
    # 只在狀態是 is_final 時有值
    completed_at = db.Column(db.DateTime, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    version = db.Column(db.Integer, nullable=False)

    status = db.relationship('State')

    __mapper_args__ = {'version_id_col': version}

    # 索引
    __table_args__ = (
        db.Index('idx_task_project_status', 'project_id', 'status_id'),
        db.Index('idx_task_assigned_active', 'assigned_to', 'is_active'),
        db.Index('idx_task_due_date', 'due_date'),
        db.Index('idx_task_created_at', 'created_at'),
    )

# ============================================
# 8. Notification 模型
# ============================================
class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    type = db.Column(db.String(50), nullable=False)  # task_assigned, member_added
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    related_project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=True)
    related_task_id = db.Column(db.Integer, db.ForeignKey('task.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    project = db.relationship('Project')
    task = db.relationship('Task')

# ============================================
# 9. ActivityLog 模型
# ============================================
class ActivityLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    action = db.Column(db.String(100), nullable=False)
    resource_type = db.Column(db.String(50))
    resource_id = db.Column(db.Integer)
    details = db.Column(db.JSON)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User')


def log_activity(project_id, user_id, action, resource_type, resource_id, details=None):
    """在目前的 transaction 裡加一筆活動日誌 (跟著同一次 commit)"""
    activity = ActivityLog(
        project_id=project_id,
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details
    )
    db.session.add(activity)
    return activity


def name_taken(model, name, exclude_id=None):
    """Role / State / Category 的名稱不分大小寫唯一 (包含已停用的)"""
    query = model.query.filter(func.lower(model.name) == name.strip().lower())
    if exclude_id is not None:
        query = query.filter(model.id != exclude_id)
    return db.session.query(query.exists()).scalar()

# ============================================
# 10. TokenBlocklist 模型 (登出後的 token)
# ============================================
class TokenBlocklist(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    jti = db.Column(db.String(36), unique=True, nullable=False, index=True)
    token_type = db.Column(db.String(10), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    # token 的到期時間 (沒有 exp 的 token 為 None,永遠保留)
    expires_at = db.Column(db.DateTime, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
