# app/api/router.py
from fastapi import APIRouter
from app.api import routes_blood_transfusion

api_router = APIRouter()

api_router.include_router(routes_blood_transfusion.router)
