"""
Transaction API router - delegates to the transaction controller.
"""

from energy_market.api.controller.ledger.transaction_controller import router as transaction_controller_router

router = transaction_controller_router

__all__ = ['router']
