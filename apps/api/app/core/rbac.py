from collections.abc import Callable

from fastapi import Depends, HTTPException, status

from app.core.auth import AuthUser, require_principal


def has_permission(user: AuthUser, permission: str) -> bool:
    return permission in user.roles or "admin" in user.roles


def require_permissions(*permissions: str) -> Callable[[AuthUser], AuthUser]:
    async def checker(user: AuthUser = Depends(require_principal)) -> AuthUser:
        missing_permissions = [permission for permission in permissions if not has_permission(user, permission)]
        if missing_permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(missing_permissions)}",
            )
        return user

    return checker
