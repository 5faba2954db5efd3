"""
Security module
Rate limiting for PIN redemption and admin authentication
"""
from fastapi import Request, HTTPException, status, Depends
from fastapi.security import HTTPBasic, HTTPBasicCredentials
import secrets
import time
from collections import defaultdict, deque
import logging
from scoredesk.core.config import get_settings

logger = logging.getLogger(__name__)

# In-memory rate limit records
# Layout: { "ip_address": deque([timestamp1, timestamp2, ...]) }
# Note: a multi-process deployment needs a shared store (Redis); one process is fine in memory
_request_records = defaultdict(deque)

# Sweep idle IPs once this many are tracked
_SWEEP_THRESHOLD = 1000


def _sweep_idle_clients(cutoff: float) -> None:
    """Forget clients whose newest attempt is older than cutoff"""
    idle = [ip for ip, history in _request_records.items() if not history or history[-1] < cutoff]
    for ip in idle:
        del _request_records[ip]


async def verify_rate_limiter(request: Request):
    """
    Rate limit dependency for the redeem endpoint
    Slows down PIN brute forcing
    """
    settings = get_settings()
    window = settings.redeem_rate_window_seconds
    max_attempts = settings.redeem_rate_max_attempts

    client_ip = request.client.host if request.client else "unknown"

    now = time.time()
    cutoff = now - window
    if len(_request_records) >= _SWEEP_THRESHOLD:
        _sweep_idle_clients(cutoff)

    history = _request_records[client_ip]

    # 1. Drop records that fell out of the window
    while history and history[0] < cutoff:
        history.popleft()

    # 2. Over the limit?
    if len(history) >= max_attempts:
        logger.warning(f"Rate limit tripped on card redemption from {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Too many attempts, please wait {window} seconds and try again"
        )

    # 3. Record this attempt
    history.append(now)
    return True


# --- Admin authentication ---

security = HTTPBasic()


def get_current_admin(credentials: HTTPBasicCredentials = Depends(security)):
    """
    Admin authentication dependency
    Uses HTTP Basic Auth
    """
    settings = get_settings()

    # compare_digest guards against timing attacks
    is_username_correct = secrets.compare_digest(
        credentials.username.encode("utf-8"), settings.admin_username.encode("utf-8")
    )
    is_password_correct = secrets.compare_digest(
        credentials.password.encode("utf-8"), settings.admin_password.encode("utf-8")
    )

    if not (is_username_correct and is_password_correct):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin authentication failed",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username
