from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from walletcore.config import settings

# Tokens are minted by the auth service; create_access_token exists for
# internal tooling and tests.
def create_access_token(user_id: int, expires_minutes: int = 60) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    return jwt.encode({"sub": str(user_id), "exp": expire}, settings.SECRET_KEY, settings.ALGORITHM)

def decode_token(token: str) -> Optional[int]:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return int(payload["sub"])
    except (JWTError, KeyError, ValueError):
        return None
