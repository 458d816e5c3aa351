"""
API v1 Routers

Version 1 of the Travel Planner Privacy API.
"""

from api.v1.compliance import router as compliance_router
from api.v1.internal import router as internal_router

__all__ = ["compliance_router", "internal_router"]
