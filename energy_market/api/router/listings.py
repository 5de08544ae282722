"""
Listing API router - delegates to the listing controller.
"""

from energy_market.api.controller.ledger.listing_controller import router as listing_controller_router

router = listing_controller_router

__all__ = ['router']
