from app.api.routes.leases import router as leases_router
from app.api.routes.signing import router as signing_router
from app.api.routes.payments import router as payments_router

__all__ = [
    "leases_router",
    "signing_router",
    "payments_router",
]
