from fastapi import APIRouter
from smsrelay.api.public import relay

router = APIRouter()
router.include_router(relay.router, prefix="/relay", tags=["Public"])
