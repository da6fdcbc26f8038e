"""
共用的 pytest fixtures

- 每個測試一個新的 app + in-memory SQLite (TestingConfig)
- 預設角色 / 狀態 / 分類由 seed_defaults() 建立
- make_* 工廠直接寫資料庫,api_headers 直接簽 token,不經過 /auth/login
"""
import pytest
from flask_jwt_extended import create_access_token

from app import create_app, seed_defaults
from config import TestingConfig
from models import db, User, Role, State, Category, Project, ProjectMember, Task

DEFAULT_PASSWORD = 'password123'


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        seed_defaults()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()

# ============================================
# 查詢輔助
# ============================================

@pytest.fixture
def role_named(app):
    def _role_named(name):
        return Role.query.filter_by(name=name).one()
    return _role_named


@pytest.fixture
def state_named(app):
    def _state_named(name):
        return State.query.filter_by(name=name).one()
    return _state_named


@pytest.fixture
def category(app):
    return Category.query.filter_by(name='General').one()

# ============================================
# 資料工廠
# ============================================

@pytest.fixture
def make_user(app, role_named):
    counter = {'n': 0}

    def _make_user(email=None, role='Member', password=DEFAULT_PASSWORD, is_active=True,
                   first_name='Test', last_name='User'):
        counter['n'] += 1
        user = User(
            email=email or f'user{counter["n"]}@example.com',
            password_hash=app.extensions['bcrypt'].generate_password_hash(password).decode('utf-8'),
            first_name=first_name,
            last_name=last_name,
            global_role_id=role_named(role).id if role else None,
            is_active=is_active
        )
        db.session.add(user)
        db.session.commit()
        return user
    return _make_user


@pytest.fixture
def make_project(app, category, state_named, role_named):
    def _make_project(owner, members=(), name='Website Redesign', status='Planning'):
        project = Project(
            name=name,
            description='Redesign the public website',
            category_id=category.id,
            owner_id=owner.id,
            status_id=state_named(status).id
        )
        for member in members:
            project.members.append(ProjectMember(user_id=member.id, role_id=role_named('Member').id))
        db.session.add(project)
        db.session.commit()
        return project
    return _make_project


@pytest.fixture
def make_task(app, state_named):
    def _make_task(project, creator, status='To Do', assignee=None, title='Write copy', due_date=None):
        task = Task(
            title=title,
            description='Write the landing page copy',
            status_id=state_named(status).id,
            project_id=project.id,
            created_by=creator.id,
            assigned_to=assignee.id if assignee else None,
            due_date=due_date
        )
        db.session.add(task)
        db.session.commit()
        return task
    return _make_task

# ============================================
# 使用者與 token
# ============================================

@pytest.fixture
def api_headers(app):
    def _api_headers(user):
        token = create_access_token(identity=str(user.id))
        return {'Authorization': f'Bearer {token}'}
    return _api_headers


@pytest.fixture
def admin(make_user):
    return make_user(email='admin@example.com', role='Admin', first_name='Ada', last_name='Admin')


@pytest.fixture
def owner(make_user):
    return make_user(email='owner@example.com', first_name='Olga', last_name='Owner')


@pytest.fixture
def member(make_user):
    return make_user(email='member@example.com', first_name='Max', last_name='Member')


@pytest.fixture
def outsider(make_user):
    return make_user(email='outsider@example.com', first_name='Otto', last_name='Outsider')
