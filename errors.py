from flask import jsonify, current_app
from marshmallow import ValidationError, validate
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
import logging

logger = logging.getLogger(__name__)

# ============================================
# 錯誤類型
# ============================================

class ApiError(Exception):
    """
    所有業務錯誤的基底類別

    每個子類別有固定的 kind (給前端判斷) 與 HTTP status
    """
    status_code = 500
    kind = 'error'
    default_message = 'An error occurred'

    def __init__(self, message=None, details=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_dict(self):
        body = {
            'error': self.kind,
            'message': self.message,
            'status': self.status_code
        }
        if self.details is not None:
            body['details'] = self.details
        return body


class Unauthenticated(ApiError):
    status_code = 401
    kind = 'unauthenticated'
    default_message = 'Authentication required'


class Forbidden(ApiError):
    status_code = 403
    kind = 'forbidden'
    default_message = 'Permission denied'


class NotFound(ApiError):
    status_code = 404
    kind = 'not_found'
    default_message = 'The requested resource does not exist'


class InvalidInput(ApiError):
    status_code = 400
    kind = 'invalid_input'
    default_message = 'Validation failed'


class InvalidState(ApiError):
    status_code = 400
    kind = 'invalid_state'
    default_message = 'Invalid state'


class InvalidAssignee(ApiError):
    status_code = 400
    kind = 'invalid_assignee'
    default_message = 'The assigned user must be the project owner or a member'


class Conflict(ApiError):
    status_code = 409
    kind = 'conflict'
    default_message = 'The resource was modified or already exists'


class InvalidOperation(ApiError):
    status_code = 400
    kind = 'invalid_operation'
    default_message = 'This operation is not allowed'


class StorageFailure(ApiError):
    status_code = 500
    kind = 'storage_failure'
    default_message = 'A storage error occurred. Please try again later.'

# ============================================
# 輔助函數
# ============================================

# 名稱欄位:去掉空白後不能是空字串
NOT_BLANK = validate.Regexp(r'\s*\S', error='Name cannot be blank')


def validate_request_data(schema_class, data, **schema_kwargs):
    """
    統一的輸入驗證函數

    schema 就是欄位的 allow-list,多餘的欄位一律拒絕

    Returns:
        dict: 驗證後的資料

    Raises:
        InvalidInput: body 不是 JSON 物件或驗證失敗
    """
    if not isinstance(data, dict):
        raise InvalidInput('Request body must be a JSON object')

    schema = schema_class(**schema_kwargs)
    try:
        return schema.load(data)
    except ValidationError as err:
        raise InvalidInput('Validation failed', details=err.messages) from err


def commit_or_raise(db, action):
    """
    commit 目前的 session,失敗時 rollback 並轉成對應的 ApiError

    - StaleDataError: 別人同時改了同一筆資料 (樂觀鎖)
    - IntegrityError: 違反唯一性約束
    - 其他 SQLAlchemyError: 儲存層錯誤,不重試
    """
    try:
        db.session.commit()
    except StaleDataError as e:
        db.session.rollback()
        logger.warning(f"Concurrent modification during {action}: {str(e)}")
        raise Conflict('The resource was modified by another request. Please reload and retry.') from e
    except IntegrityError as e:
        db.session.rollback()
        logger.warning(f"Integrity error during {action}: {str(e)}")
        raise Conflict('The resource conflicts with an existing record') from e
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Storage error during {action}: {str(e)}", exc_info=True)
        raise StorageFailure(storage_error_message(action, e)) from e


def storage_error_message(action, error):
    """production 環境不洩漏資料庫錯誤細節"""
    message = f'{action.capitalize()} failed due to server error'
    if current_app.config.get('EXPOSE_ERROR_DETAILS'):
        message = f'{message}: {str(error)}'
    return message

# ============================================
# 註冊 error handlers
# ============================================

def register_error_handlers(app, db):
    @app.errorhandler(ApiError)
    def handle_api_error(error):
        if error.status_code >= 500:
            app.logger.error(f"{error.kind}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_storage_error(error):
        """讀取時的資料庫錯誤 (寫入時已由 commit_or_raise 處理)"""
        db.session.rollback()
        app.logger.error(f"Storage error: {str(error)}", exc_info=True)
        failure = StorageFailure(storage_error_message('request', error))
        return jsonify(failure.to_dict()), failure.status_code
