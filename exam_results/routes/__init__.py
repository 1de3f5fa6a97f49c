"""
exam_results/routes/__init__.py
Route registration
"""
from fastapi import APIRouter
from exam_results.routes import results

router = APIRouter()

router.include_router(results.router)
