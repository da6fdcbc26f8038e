from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import create_access_token, create_refresh_token, jwt_required, get_jwt_identity, get_jwt
from marshmallow import Schema, fields, validate
from models import db, User, Role, TokenBlocklist
from errors import ApiError, Unauthenticated, Forbidden, Conflict, validate_request_data, commit_or_raise
from extensions import limiter
from permissions import is_admin
from datetime import datetime
import logging

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class RegisterSchema(Schema):
    """註冊輸入驗證"""
    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'invalid': 'Invalid email format'
    })
    password = fields.Str(
        required=True,
        validate=validate.Length(min=8, max=128, error='Password must be 8-128 characters'),
        error_messages={'required': 'Password is required'}
    )
    first_name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=100),
        error_messages={'required': 'First name is required'}
    )
    last_name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=100),
        error_messages={'required': 'Last name is required'}
    )
    phone = fields.Str(validate=validate.Length(max=20))

class LoginSchema(Schema):
    """登入輸入驗證"""
    email = fields.Email(required=True)
    password = fields.Str(required=True)

class UpdateProfileSchema(Schema):
    """個人資料更新驗證 (只允許這幾個欄位)"""
    first_name = fields.Str(validate=validate.Length(min=1, max=100))
    last_name = fields.Str(validate=validate.Length(min=1, max=100))
    phone = fields.Str(validate=validate.Length(max=20))
    avatar_url = fields.Url(validate=validate.Length(max=500))

class ChangePasswordSchema(Schema):
    """密碼修改驗證"""
    current_password = fields.Str(required=True)
    new_password = fields.Str(
        required=True,
        validate=validate.Length(min=8, max=128)
    )

# ============================================
# Helper Functions
# ============================================

def get_bcrypt():
    """從 Flask app extensions 取得 bcrypt 實例"""
    return current_app.extensions['bcrypt']


def authenticate():
    """
    取得當前登入的使用者 (必須在 @jwt_required() 之後呼叫)

    token 有效但使用者已不存在或被停用,一樣視為未登入

    Raises:
        Unauthenticated
    """
    user_id = get_jwt_identity()
    if not user_id:
        raise Unauthenticated('Authentication required')

    try:
        user = db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        logger.warning(f"Token carries a malformed identity: {user_id!r}")
        raise Unauthenticated('Token validation failed. Please provide a valid token.')

    if not user:
        logger.warning(f"Token valid but user not found: {user_id}")
        raise Unauthenticated('Invalid or inactive user')

    if not user.is_active:
        logger.warning(f"Token used by inactive user: {user.email}")
        raise Unauthenticated('Invalid or inactive user')

    return user


def require_admin(user):
    """全域角色必須是 ADMIN_ROLE_NAME"""
    if not is_admin(user, current_app.config['ADMIN_ROLE_NAME']):
        logger.warning(f"Non-admin user {user.email} attempted an admin operation")
        raise Forbidden('Administrator role required')


def user_summary(user):
    """給其他資源嵌入用的精簡使用者資訊"""
    if user is None:
        return None
    return {
        'id': user.id,
        'first_name': user.first_name,
        'last_name': user.last_name,
        'email': user.email
    }


def serialize_user(user):
    return {
        'id': user.id,
        'email': user.email,
        'first_name': user.first_name,
        'last_name': user.last_name,
        'phone': user.phone,
        'avatar_url': user.avatar_url,
        'global_role': {
            'id': user.global_role.id,
            'name': user.global_role.name,
            'description': user.global_role.description
        } if user.global_role else None,
        'is_active': user.is_active,
        'last_login': user.last_login.isoformat() if user.last_login else None,
        'created_at': user.created_at.isoformat() if user.created_at else None
    }


def role_for_new_user(email):
    """新註冊的使用者拿預設角色,BOOTSTRAP_ADMIN_EMAIL 拿 admin 角色"""
    config = current_app.config
    role_name = config['DEFAULT_ROLE_NAME']
    bootstrap_email = config.get('BOOTSTRAP_ADMIN_EMAIL')
    if bootstrap_email and email.lower() == bootstrap_email.lower():
        role_name = config['ADMIN_ROLE_NAME']
    return Role.query.filter_by(name=role_name, is_active=True).first()

# ============================================
# 註冊 API
# ============================================

@auth_bp.route('/register', methods=['POST'])
@limiter.limit("5 per hour")
def register():
    """使用者註冊"""
    result = validate_request_data(RegisterSchema, request.get_json(silent=True))

    email = result['email'].lower()

    # 檢查 email 是否已存在
    if User.query.filter_by(email=email).first():
        raise Conflict('Email already exists')

    hashed_password = get_bcrypt().generate_password_hash(result['password']).decode('utf-8')
    role = role_for_new_user(email)

    user = User(
        email=email,
        first_name=result['first_name'],
        last_name=result['last_name'],
        phone=result.get('phone'),
        password_hash=hashed_password,
        global_role_id=role.id if role else None
    )

    db.session.add(user)
    commit_or_raise(db, 'registration')

    logger.info(f"New user registered: {user.email}")

    return jsonify({
        'message': 'User registered successfully',
        'user': serialize_user(user)
    }), 201

# ============================================
# 登入 API
# ============================================

@auth_bp.route('/login', methods=['POST'])
@limiter.limit("10 per minute")
def login():
    """
    使用者登入

    不區分是 email 錯還是 password 錯,避免帳號枚舉攻擊
    """
    result = validate_request_data(LoginSchema, request.get_json(silent=True))

    user = User.query.filter_by(email=result['email'].lower()).first()

    if not user or not get_bcrypt().check_password_hash(user.password_hash, result['password']):
        logger.warning(f"Failed login attempt for email: {result['email']}")
        raise Unauthenticated('Invalid credentials')

    # 檢查帳號是否被停用
    if not user.is_active:
        logger.warning(f"Inactive user login attempt: {user.email}")
        raise Forbidden('Account is disabled')

    access_token = create_access_token(identity=str(user.id))
    refresh_token = create_refresh_token(identity=str(user.id))

    # 更新最後登入時間 (失敗不影響登入)
    user.last_login = datetime.utcnow()
    try:
        commit_or_raise(db, 'login bookkeeping')
    except ApiError as e:
        logger.error(f"Failed to update last_login for {user.email}: {str(e)}")

    logger.info(f"User logged in: {user.email}")

    return jsonify({
        'message': 'Login successful',
        'access_token': access_token,
        'refresh_token': refresh_token,
        'user': user_summary(user)
    }), 200

# ============================================
# Token 刷新 / 登出
# ============================================

@auth_bp.route('/refresh', methods=['POST'])
@jwt_required(refresh=True)
def refresh():
    """用 refresh token 換新的 access token"""
    user = authenticate()

    access_token = create_access_token(identity=str(user.id))

    return jsonify({
        'access_token': access_token
    }), 200


@auth_bp.route('/logout', methods=['POST'])
@jwt_required(verify_type=False)
def logout():
    """登出:把目前的 token 加入 blocklist"""
    user = authenticate()
    token = get_jwt()

    prune_expired_tokens()
    db.session.add(TokenBlocklist(
        jti=token['jti'],
        token_type=token['type'],
        user_id=user.id,
        expires_at=datetime.utcfromtimestamp(token['exp']) if 'exp' in token else None
    ))
    commit_or_raise(db, 'logout')

    logger.info(f"User logged out: {user.email}")

    return jsonify({'message': 'Logout successful'}), 200


def prune_expired_tokens():
    """刪掉已經過期的 blocklist 紀錄,過期的 token 本來就無法通過驗證"""
    removed = TokenBlocklist.query.filter(
        TokenBlocklist.expires_at < datetime.utcnow()
    ).delete(synchronize_session=False)
    if removed:
        logger.info(f"Pruned {removed} expired blocklist entries")
    return removed


def is_token_revoked(jwt_header, jwt_payload):
    """給 JWTManager.token_in_blocklist_loader 用"""
    jti = jwt_payload['jti']
    return db.session.query(TokenBlocklist.id).filter_by(jti=jti).scalar() is not None

# ============================================
# 當前使用者
# ============================================

@auth_bp.route('/me', methods=['GET'])
@jwt_required()
def get_me():
    """取得當前登入使用者的資訊"""
    user = authenticate()
    return jsonify(serialize_user(user)), 200


@auth_bp.route('/me', methods=['PATCH'])
@jwt_required()
def update_me():
    """更新當前使用者資料"""
    user = authenticate()

    result = validate_request_data(UpdateProfileSchema, request.get_json(silent=True))

    for field in ['first_name', 'last_name', 'phone', 'avatar_url']:
        if field in result:
            setattr(user, field, result[field])

    commit_or_raise(db, 'profile update')
    logger.info(f"User profile updated: {user.email}")

    return jsonify({
        'message': 'Profile updated successfully',
        'user': serialize_user(user)
    }), 200


@auth_bp.route('/change-password', methods=['POST'])
@jwt_required()
def change_password():
    """修改密碼"""
    user = authenticate()

    result = validate_request_data(ChangePasswordSchema, request.get_json(silent=True))

    bcrypt = get_bcrypt()
    if not bcrypt.check_password_hash(user.password_hash, result['current_password']):
        raise Unauthenticated('Current password is incorrect')

    user.password_hash = bcrypt.generate_password_hash(result['new_password']).decode('utf-8')

    commit_or_raise(db, 'password change')
    logger.info(f"Password changed for user: {user.email}")

    return jsonify({'message': 'Password changed successfully'}), 200
