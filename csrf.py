import time

from itsdangerous import BadData, URLSafeSerializer

from config import get_settings


def _serializer() -> URLSafeSerializer:
    settings = get_settings()
    return URLSafeSerializer(settings.secret_key, salt="csrf-token")


def generate_csrf_token(user_id: int = 0, max_age_hours: int = 2) -> str:
    serializer = _serializer()
    timestamp = int(time.time())
    expiry = timestamp + (max_age_hours * 3600)

    token_data = {"u": user_id, "ts": timestamp, "exp": expiry}

    return serializer.dumps(token_data)


def validate_csrf_token(token: str, user_id: int = 0) -> bool:
    if not token:
        return False
    serializer = _serializer()
    try:
        data = serializer.loads(token)
    except BadData:
        return False

    if data.get("u") != user_id:
        return False

    if int(time.time()) > data.get("exp", 0):
        return False

    return True
