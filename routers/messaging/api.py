from fastapi import APIRouter

from . import direct, events, stream_chat

router = APIRouter()
# Stream and event routes first: "/messages/{partner_id}" would shadow them
router.include_router(stream_chat.router)
router.include_router(events.router)
router.include_router(direct.router)
