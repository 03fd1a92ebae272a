import hmac

from fastapi import Depends, Header, HTTPException, status

from settlement import Settlement, get_settlement


async def require_admin(
    x_admin_key: str | None = Header(default=None),
    settlement: Settlement = Depends(get_settlement),
) -> str:
    expected = settlement.admin_api_key
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key is not configured",
        )

    if not x_admin_key or not hmac.compare_digest(expected, x_admin_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )

    return "admin"
