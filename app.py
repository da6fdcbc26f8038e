from flask import Flask, request, jsonify, current_app
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from config import get_config
from models import db, Role, State, Category, STATE_TYPE_TASK, STATE_TYPE_PROJECT
from extensions import jwt, bcrypt, limiter
from errors import register_error_handlers
from sqlalchemy import text
from datetime import datetime
import logging
from logging.handlers import RotatingFileHandler
import os

# ============================================
# 預設資料 (只在不存在時建立)
# ============================================

DEFAULT_TASK_STATES = [
    {'name': 'To Do', 'order': 1, 'is_final': False, 'color': '#6b7280'},
    {'name': 'In Progress', 'order': 2, 'is_final': False, 'color': '#3b82f6'},
    {'name': 'Done', 'order': 3, 'is_final': True, 'color': '#10b981'},
]

DEFAULT_PROJECT_STATES = [
    {'name': 'Planning', 'order': 1, 'is_final': False, 'color': '#a855f7'},
    {'name': 'Active', 'order': 2, 'is_final': False, 'color': '#f59e0b'},
    {'name': 'Closed', 'order': 3, 'is_final': True, 'color': '#10b981'},
]

DEFAULT_CATEGORY = 'General'

# ============================================
# Logging 設定
# ============================================

def setup_logging(app):
    """
    設定 logging 系統

    1. 分開 info 和 error logs
    2. 使用 RotatingFileHandler 避免 log 檔案過大
    3. handler 掛在 root logger,各模組的 logging.getLogger(__name__) 都會寫進來
    """
    log_dir = app.config['LOG_DIR']
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    root_logger = logging.getLogger()
    info_path = os.path.abspath(os.path.join(log_dir, 'app.log'))

    # create_app() 被呼叫多次時不要重複加 handler
    if any(getattr(h, 'baseFilename', None) == info_path for h in root_logger.handlers):
        return

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )

    # Info log handler (記錄一般資訊)
    info_handler = RotatingFileHandler(
        info_path,
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    info_handler.setLevel(logging.INFO)
    info_handler.setFormatter(formatter)

    # Error log handler (只記錄錯誤)
    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'error.log'),
        maxBytes=10240000,
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    root_logger.addHandler(info_handler)
    root_logger.addHandler(error_handler)
    root_logger.setLevel(app.config['LOG_LEVEL'])

    app.logger.info('Application startup')

# ============================================
# JWT 錯誤處理
# ============================================

def register_jwt_callbacks():
    """所有 token 問題都回 unauthenticated,用 reason 區分原因"""
    from auth import is_token_revoked

    def unauthenticated(reason, message):
        return jsonify({
            'error': 'unauthenticated',
            'reason': reason,
            'message': message,
            'status': 401
        }), 401

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        current_app.logger.warning(f"Expired token attempt from: {request.remote_addr}")
        return unauthenticated('token_expired',
                               'The token has expired. Please refresh your token or login again.')

    @jwt.invalid_token_loader
    def invalid_token_callback(error):
        current_app.logger.warning(f"Invalid token attempt from: {request.remote_addr}, error: {error}")
        return unauthenticated('invalid_token',
                               'Token validation failed. Please provide a valid token.')

    @jwt.unauthorized_loader
    def unauthorized_callback(error):
        current_app.logger.warning(f"Unauthorized access attempt from: {request.remote_addr}, error: {error}")
        return unauthenticated('authorization_required',
                               'Access token is required. Please provide an authorization token.')

    @jwt.revoked_token_loader
    def revoked_token_callback(jwt_header, jwt_payload):
        current_app.logger.warning(f"Revoked token attempt from: {request.remote_addr}")
        return unauthenticated('token_revoked', 'The token has been revoked. Please login again.')

    @jwt.needs_fresh_token_loader
    def needs_fresh_token_callback(jwt_header, jwt_payload):
        return unauthenticated('fresh_token_required', 'A fresh token is required. Please login again.')

    jwt.token_in_blocklist_loader(is_token_revoked)

# ============================================
# 全域錯誤處理
# ============================================

def register_http_error_handlers(app):
    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({
            'error': 'invalid_input',
            'message': 'The request is malformed or invalid',
            'status': 400
        }), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'error': 'not_found',
            'message': 'The requested resource does not exist',
            'status': 404
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'error': 'method_not_allowed',
            'message': 'The HTTP method is not allowed for this endpoint',
            'status': 405
        }), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
        return jsonify({
            'error': 'rate_limit_exceeded',
            'message': 'Too many requests. Please try again later.',
            'status': 429
        }), 429

    @app.errorhandler(HTTPException)
    def http_error(error):
        """其他沒有特別處理的 HTTP 錯誤"""
        return jsonify({
            'error': error.name.lower().replace(' ', '_'),
            'message': error.description,
            'status': error.code
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """
        處理所有未預期的錯誤

        這是最後的防線,完整 stack trace 只寫 log,不給前端
        """
        db.session.rollback()

        app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)

        return jsonify({
            'error': 'unexpected_error',
            'message': 'An unexpected error occurred. Please try again later.',
            'status': 500
        }), 500

# ============================================
# 預設資料
# ============================================

def seed_defaults():
    """
    建立預設角色、狀態與分類

    已存在的名稱不會重建,也不會被覆蓋 (可以重複執行)
    """
    config = current_app.config
    created = 0

    for role_name, description in [
        (config['ADMIN_ROLE_NAME'], 'System administrator'),
        (config['DEFAULT_ROLE_NAME'], 'Regular member'),
    ]:
        if not Role.query.filter_by(name=role_name).first():
            db.session.add(Role(name=role_name, description=description))
            created += 1

    for state_type, defaults in [
        (STATE_TYPE_TASK, DEFAULT_TASK_STATES),
        (STATE_TYPE_PROJECT, DEFAULT_PROJECT_STATES),
    ]:
        for item in defaults:
            if not State.query.filter_by(name=item['name']).first():
                db.session.add(State(type=state_type, **item))
                created += 1

    if not Category.query.filter_by(name=DEFAULT_CATEGORY).first():
        db.session.add(Category(name=DEFAULT_CATEGORY, description='Default category'))
        created += 1

    if created:
        db.session.commit()
        current_app.logger.info(f'Seeded {created} default records')

    return created

# ============================================
# Application Factory
# ============================================

def create_app(config_class=None):
    """
    建立 Flask app

    Args:
        config_class: 設定類別,預設依 FLASK_ENV 決定
    """
    config_class = config_class or get_config()
    config_class.validate()

    app = Flask(__name__)
    app.config.from_object(config_class)

    # ============================================
    # CORS 設定
    # ============================================

    # 不要用 '*',由 CORS_ORIGINS 指定允許的來源
    CORS(app,
         supports_credentials=True,
         origins=app.config['CORS_ORIGINS'],
         methods=['GET', 'POST', 'PATCH', 'DELETE', 'OPTIONS'],
         allow_headers=['Content-Type', 'Authorization'])

    # ============================================
    # 擴展初始化
    # ============================================

    db.init_app(app)
    jwt.init_app(app)
    bcrypt.init_app(app)
    app.extensions['bcrypt'] = bcrypt
    # storage 由 RATELIMIT_STORAGE_URI 決定 (production 用 Redis)
    limiter.init_app(app)

    if not app.debug and not app.testing:
        setup_logging(app)

    register_jwt_callbacks()
    register_error_handlers(app, db)
    register_http_error_handlers(app)

    # ============================================
    # 註冊 Blueprints
    # ============================================

    from auth import auth_bp
    from users import users_bp
    from roles import roles_bp
    from states import states_bp
    from categories import categories_bp
    from projects import projects_bp
    from tasks import tasks_bp
    from notifications import notifications_bp

    app.register_blueprint(auth_bp, url_prefix='/auth')
    app.register_blueprint(users_bp, url_prefix='/users')
    app.register_blueprint(roles_bp, url_prefix='/roles')
    app.register_blueprint(states_bp, url_prefix='/states')
    app.register_blueprint(categories_bp, url_prefix='/categories')
    app.register_blueprint(projects_bp, url_prefix='/projects')
    app.register_blueprint(tasks_bp)
    app.register_blueprint(notifications_bp)

    # ============================================
    # Request/Response Logging
    # ============================================

    @app.before_request
    def log_request():
        if not app.debug:
            app.logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.after_request
    def log_response(response):
        if not app.debug:
            app.logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

        # 加上 security headers
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'

        return response

    # ============================================
    # Health Check / API 首頁
    # ============================================

    @app.route('/health', methods=['GET'])
    @limiter.exempt
    def health_check():
        """給 load balancer 或監控系統檢查服務是否正常"""
        try:
            db.session.execute(text('SELECT 1'))

            return jsonify({
                'status': 'healthy',
                'database': 'connected',
                'timestamp': datetime.utcnow().isoformat()
            }), 200
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Health check failed: {str(e)}")
            return jsonify({
                'status': 'unhealthy',
                'database': 'disconnected',
                'error': 'Database connection failed'
            }), 503

    @app.route('/')
    @limiter.limit("10 per minute")
    def home():
        return jsonify({
            'message': 'Project Workflow API',
            'version': app.config['API_VERSION'],
            'endpoints': {
                'health': {'path': '/health', 'methods': ['GET']},
                'auth': {
                    'register': {'path': '/auth/register', 'methods': ['POST']},
                    'login': {'path': '/auth/login', 'methods': ['POST']},
                    'refresh': {'path': '/auth/refresh', 'methods': ['POST']},
                    'logout': {'path': '/auth/logout', 'methods': ['POST']},
                    'me': {'path': '/auth/me', 'methods': ['GET', 'PATCH']},
                    'change_password': {'path': '/auth/change-password', 'methods': ['POST']}
                },
                'users': {
                    'list': {'path': '/users', 'methods': ['GET']},
                    'detail': {'path': '/users/:id', 'methods': ['DELETE']},
                    'role': {'path': '/users/:id/role', 'methods': ['PATCH']}
                },
                'registries': {
                    'roles': {'path': '/roles', 'methods': ['GET', 'POST']},
                    'role': {'path': '/roles/:id', 'methods': ['PATCH', 'DELETE']},
                    'states': {'path': '/states', 'methods': ['GET', 'POST']},
                    'state': {'path': '/states/:id', 'methods': ['PATCH', 'DELETE']},
                    'categories': {'path': '/categories', 'methods': ['GET', 'POST']},
                    'category': {'path': '/categories/:id', 'methods': ['PATCH', 'DELETE']}
                },
                'projects': {
                    'list': {'path': '/projects', 'methods': ['GET', 'POST']},
                    'detail': {'path': '/projects/:id', 'methods': ['GET', 'PATCH', 'DELETE']},
                    'status': {'path': '/projects/:id/status', 'methods': ['PATCH']},
                    'members': {'path': '/projects/:id/members', 'methods': ['GET', 'POST']},
                    'member': {'path': '/projects/:id/members/:user_id', 'methods': ['DELETE']},
                    'stats': {'path': '/projects/:id/stats', 'methods': ['GET']},
                    'activity': {'path': '/projects/:id/activity', 'methods': ['GET']}
                },
                'tasks': {
                    'list': {'path': '/projects/:id/tasks', 'methods': ['GET', 'POST']},
                    'my_tasks': {'path': '/tasks/my', 'methods': ['GET']},
                    'detail': {'path': '/tasks/:id', 'methods': ['GET', 'PATCH', 'DELETE']},
                    'status': {'path': '/tasks/:id/status', 'methods': ['PATCH']},
                    'assign': {'path': '/tasks/:id/assign', 'methods': ['PATCH']}
                },
                'notifications': {
                    'list': {'path': '/notifications', 'methods': ['GET']},
                    'mark_read': {'path': '/notifications/:id/read', 'methods': ['PATCH']},
                    'mark_all_read': {'path': '/notifications/read-all', 'methods': ['PATCH']}
                }
            },
            'rate_limits': {
                'default': '200 per hour, 1000 per day',
                'auth': {
                    'register': '5 per hour',
                    'login': '10 per minute'
                }
            }
        })

    if app.debug:
        @app.route('/debug/routes')
        def debug_routes():
            """列出所有註冊的路由 (僅開發環境)"""
            routes = []
            for rule in app.url_map.iter_rules():
                routes.append({
                    'endpoint': rule.endpoint,
                    'methods': sorted(rule.methods),
                    'path': str(rule)
                })
            return jsonify({'routes': routes})

    # ============================================
    # 資料庫初始化
    # ============================================

    with app.app_context():
        db.create_all()
        if app.config['SEED_DEFAULTS']:
            seed_defaults()

    return app


def shutdown_app(app):
    """釋放 session 與連線池"""
    with app.app_context():
        db.session.remove()
        db.engine.dispose()
    app.logger.info('Application shutdown')

# ============================================
# 啟動應用
# ============================================

if __name__ == '__main__':
    # production 不要用 Flask 內建的 server,改用 gunicorn 或 uwsgi
    app = create_app()

    port = int(os.getenv('FLASK_PORT', 8888))

    try:
        app.run(
            debug=app.config['DEBUG'],
            port=port,
            host='0.0.0.0'
        )
    finally:
        shutdown_app(app)
