from fastapi import APIRouter
from app.api.v2 import (
    computed_properties,
    events,
    segments,
    user_properties,
)

api_router = APIRouter()

# Include all v2 routers
api_router.include_router(segments.router, prefix="/segments", tags=["segments"])
api_router.include_router(user_properties.router, prefix="/user-properties", tags=["user-properties"])
api_router.include_router(computed_properties.router, prefix="/computed-properties", tags=["computed-properties"])
api_router.include_router(events.router, prefix="/events", tags=["events"])
