from fastapi import APIRouter, Depends

from fluxstudio.models.subscription import Account
from fluxstudio.security.deps import get_current_account

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


@router.get("/user")
async def get_user(account: Account = Depends(get_current_account)):
    """The signed-in account, created as a free-tier account on first call."""
    return account.to_dict()
