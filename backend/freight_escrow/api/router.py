from fastapi import APIRouter

from freight_escrow.api.routes import carriers, health, loads, payments, sweeps

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(payments.router)
api_router.include_router(loads.router)
api_router.include_router(carriers.router)
api_router.include_router(sweeps.router)
