from fastapi import APIRouter
from app.api.routes.auth import router as auth_router
from app.api.routes.payments import router as payments_router
from app.api.routes.refunds import router as refunds_router

api_router = APIRouter(prefix="/api")
api_router.include_router(auth_router)
api_router.include_router(payments_router)
api_router.include_router(refunds_router)
