from ajo.routes.payment import router as payment_router
from ajo.routes.webhook import router as webhook_router
from ajo.routes.group import router as group_router
from ajo.routes.admin import router as admin_router

__all__ = ["payment_router", "webhook_router", "group_router", "admin_router"]
