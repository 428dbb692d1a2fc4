from fastapi import APIRouter
from smsrelay.api.operator import credentials, feed, requests

router = APIRouter()
router.include_router(requests.router, prefix="/requests", tags=["Operator"])
router.include_router(credentials.router, prefix="/credentials", tags=["Operator"])
router.include_router(feed.router, prefix="/feed", tags=["OperatorFeed"])
