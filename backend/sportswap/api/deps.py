"""
Shared FastAPI dependencies.

WHAT: The authenticated user id for a request
WHY: Authentication happens upstream; the core only consumes a stable user id
HOW: Read the X-User-Id header, 401 when absent
"""

from fastapi import Header, HTTPException, status


async def get_current_user_id(x_user_id: str = Header(None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header"
        )
    return x_user_id.strip()
