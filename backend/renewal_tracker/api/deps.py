from functools import lru_cache

from fastapi import Header, HTTPException, status

from ..services.pipeline import ContractPipeline


@lru_cache
def get_pipeline() -> ContractPipeline:
    """Shared pipeline instance; overridden in tests."""
    return ContractPipeline()


async def get_current_user_id(x_user_id: str = Header(...)) -> str:
    """Caller identity, set by the authentication layer in front of the API."""
    if not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user identity")
    return x_user_id.strip()
