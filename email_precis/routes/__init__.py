from fastapi import APIRouter

from email_precis.routes.email_router import router as email_router
from email_precis.routes.queue_router import router as queue_router

router = APIRouter()
router.include_router(queue_router)
router.include_router(email_router)
