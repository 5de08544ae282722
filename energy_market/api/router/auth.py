"""
Authentication API router - delegates to the auth controller.
"""

from energy_market.api.controller.auth.auth_controller import router as auth_controller_router

# Re-export the controller router
router = auth_controller_router

__all__ = ['router']
