"""
FastAPI dependency לאימות נציגים ב-API של השיחות והתשלומים

שימוש:
    @router.post("/conversations/{conversation_id}/send")
    async def send(
        conversation_id: int,
        agent: TokenPayload = Depends(get_current_agent),
        db: AsyncSession = Depends(get_db),
    ):
        tenant_id = agent.tenant_id
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from indexplus.core.auth import verify_token, TokenPayload
from indexplus.core.logging import get_logger

logger = get_logger(__name__)

security = HTTPBearer()

AGENT_ROLES = frozenset({"agent", "admin", "owner"})


async def get_current_agent(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> TokenPayload:
    """
    אימות JWT ווידוא שלמשתמש יש תפקיד של נציג.

    זורק 401 אם הטוקן לא תקין, 403 אם התפקיד לא מורשה.
    """
    token_data = verify_token(credentials.credentials)
    if not token_data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="טוקן לא תקין או פג תוקף",
        )

    if token_data.role not in AGENT_ROLES:
        logger.warning(
            "Agent API access denied — wrong role in token",
            extra_data={"user_id": token_data.user_id, "role": token_data.role},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="אין הרשאה — טוקן לא מתאים לנציג",
        )

    return token_data
