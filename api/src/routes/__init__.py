from api.src.routes.health import router as health_router
from api.src.routes.ci import router as ci_router
from api.src.routes.webhooks import router as webhooks_router

__all__ = ["health_router", "ci_router", "webhooks_router"]
