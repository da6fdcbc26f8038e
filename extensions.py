from flask_jwt_extended import JWTManager
from flask_bcrypt import Bcrypt
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# 擴展物件在這裡建立,由 create_app() 呼叫 init_app 綁定
# blueprint 需要在 import 時就拿到 limiter 才能加 @limiter.limit

jwt = JWTManager()
bcrypt = Bcrypt()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["1000 per day", "200 per hour"],
    strategy="fixed-window"
)
