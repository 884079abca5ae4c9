from fastapi import APIRouter

from courierhub.api.routes import disputes, orders, policies, settlements

api_router = APIRouter()
api_router.include_router(orders.router)
api_router.include_router(settlements.router)
api_router.include_router(disputes.router)
api_router.include_router(policies.router)
