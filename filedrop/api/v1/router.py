"""API v1 router module."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from filedrop.api.v1.status import router as status_router
from filedrop.api.v1.upload import router as upload_router

router = APIRouter(default_response_class=JSONResponse)

router.include_router(status_router)
router.include_router(upload_router)
