from fastapi import APIRouter

from chatrelay.api.routes import conversations, delivery, messages, utils

api_router = APIRouter()
api_router.include_router(utils.router)
api_router.include_router(messages.router)
api_router.include_router(conversations.router)
api_router.include_router(delivery.router)
